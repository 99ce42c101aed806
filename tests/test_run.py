"""Tests for the command-line runner and its settings loader."""

from __future__ import annotations

from pathlib import Path

import pytest

import goi_run
from goi_io import read_export
from goi_run import RunSettings, load_run_settings, main

ENEMIES = """\
2
3 4
0 0 0 0
0 1 2 0
0 0 0 0
0
"""


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("THREADS", "EVALUATOR", "PRINT_GENERATIONS", "EXPORT_PATH",
                 "STATS_PATH", "LOG_LEVEL"):
        monkeypatch.delenv(goi_run.ENV_PREFIX + name, raising=False)


@pytest.fixture
def world_file(tmp_path: Path) -> Path:
    path = tmp_path / "world.in"
    path.write_text(ENEMIES, encoding="utf-8")
    return path


class TestSettings:
    def test_defaults(self):
        settings = load_run_settings(["in.txt", "out.txt"], env={})
        assert settings == RunSettings(Path("in.txt"), Path("out.txt"))

    def test_positional_threads(self):
        assert load_run_settings(["a", "b", "6"], env={}).n_threads == 6

    def test_env_overrides_take_effect(self):
        env = {
            "GOI_THREADS": "4",
            "GOI_EVALUATOR": "cell",
            "GOI_PRINT_GENERATIONS": "yes",
            "GOI_EXPORT_PATH": "gens.txt",
            "GOI_LOG_LEVEL": "debug",
        }
        settings = load_run_settings(["a", "b"], env=env)
        assert settings.n_threads == 4
        assert settings.evaluator == "cell"
        assert settings.print_generations is True
        assert settings.export_path == Path("gens.txt")
        assert settings.stats_path is None
        assert settings.log_level == "DEBUG"

    def test_cli_overrides_env(self):
        env = {"GOI_THREADS": "4", "GOI_EVALUATOR": "cell"}
        settings = load_run_settings(["a", "b", "2", "--evaluator", "vector"], env=env)
        assert settings.n_threads == 2
        assert settings.evaluator == "vector"

    def test_invalid_env_threads(self):
        with pytest.raises(ValueError, match="N_THREADS must be an integer"):
            load_run_settings(["a", "b"], env={"GOI_THREADS": "many"})

    def test_invalid_env_bool(self):
        with pytest.raises(ValueError, match="PRINT_GENERATIONS"):
            load_run_settings(["a", "b"], env={"GOI_PRINT_GENERATIONS": "maybe"})

    def test_thread_count_must_be_positive(self):
        with pytest.raises(ValueError, match="N_THREADS must be >= 1"):
            load_run_settings(["a", "b", "0"], env={})

    def test_unknown_env_evaluator(self):
        with pytest.raises(ValueError, match="EVALUATOR"):
            load_run_settings(["a", "b"], env={"GOI_EVALUATOR": "gpu"})


class TestMain:
    def test_writes_death_toll(self, clean_env, world_file, tmp_path, capsys):
        out = tmp_path / "toll.out"
        assert main([str(world_file), str(out), "2"]) == 0
        assert out.read_text() == "2\n"
        assert "Death toll: 2" in capsys.readouterr().out

    def test_export_and_stats(self, clean_env, world_file, tmp_path):
        out = tmp_path / "toll.out"
        gens = tmp_path / "gens.txt"
        stats = tmp_path / "stats.csv"
        assert main([str(world_file), str(out), "--export", str(gens),
                     "--stats", str(stats)]) == 0
        assert [g for g, _ in read_export(gens)] == [0, 1, 2]
        assert len(stats.read_text().splitlines()) == 4

    def test_print_generations(self, clean_env, world_file, tmp_path, capsys):
        assert main([str(world_file), str(tmp_path / "o"), "--print"]) == 0
        printed = capsys.readouterr().out
        assert "=== WORLD 0 ===" in printed
        assert "=== WORLD 2 ===" in printed

    def test_malformed_input(self, clean_env, tmp_path, capsys):
        bad = tmp_path / "bad.in"
        bad.write_text("1\n2 2\n0 0\n", encoding="utf-8")
        out = tmp_path / "toll.out"
        assert main([str(bad), str(out)]) == 1
        assert "bad.in" in capsys.readouterr().err
        assert not out.exists()

    def test_oversized_cell_value(self, clean_env, tmp_path, capsys):
        bad = tmp_path / "huge.in"
        bad.write_text("1\n1 2\n0 99999999999999999999\n0\n", encoding="utf-8")
        out = tmp_path / "toll.out"
        assert main([str(bad), str(out)]) == 1
        assert "huge.in" in capsys.readouterr().err
        assert not out.exists()

    def test_faction_out_of_range(self, clean_env, tmp_path, capsys):
        bad = tmp_path / "range.in"
        bad.write_text("1\n1 2\n0 300\n0\n", encoding="utf-8")
        assert main([str(bad), str(tmp_path / "o")]) == 1
        assert "goi:" in capsys.readouterr().err

    def test_missing_input(self, clean_env, tmp_path):
        assert main([str(tmp_path / "nope.in"), str(tmp_path / "o")]) == 1

    def test_bad_settings(self, clean_env, world_file, tmp_path, capsys):
        assert main([str(world_file), str(tmp_path / "o"), "0"]) == 2
        assert "N_THREADS" in capsys.readouterr().err

    def test_allocation_failure(self, clean_env, world_file, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr(goi_run, "simulate", lambda *a, **k: goi_run.ALLOCATION_FAILURE)
        out = tmp_path / "toll.out"
        assert main([str(world_file), str(out)]) == 1
        assert "out of memory" in capsys.readouterr().err
        assert not out.exists()
