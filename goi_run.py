#!/usr/bin/env python3
"""
Run a GOI simulation from an input file and write the death toll.

Usage:
  python3 goi_run.py world.in toll.out              # sequential
  python3 goi_run.py world.in toll.out 8            # 8 worker threads
  python3 goi_run.py world.in toll.out 4 --print    # dump every generation
  python3 goi_run.py world.in toll.out --export gens.txt --stats stats.csv

Every option can also come from the environment (GOI_THREADS,
GOI_EVALUATOR, GOI_PRINT_GENERATIONS, GOI_EXPORT_PATH, GOI_STATS_PATH,
GOI_LOG_LEVEL); command-line flags win over the environment.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping, Sequence

from goi import ALLOCATION_FAILURE, EVALUATORS, simulate
from goi_io import (
    StatsLogger,
    WorldExporter,
    WorldPrinter,
    broadcast,
    read_input,
    write_death_toll,
)

logger = logging.getLogger("goi_run")

ENV_PREFIX = "GOI_"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(frozen=True)
class RunSettings:
    input_path: Path
    output_path: Path
    n_threads: int = 1
    evaluator: str = "vector"
    print_generations: bool = False
    export_path: Path | None = None
    stats_path: Path | None = None
    log_level: str = "WARNING"

    def validate(self) -> RunSettings:
        if self.n_threads < 1:
            raise ValueError(f"N_THREADS must be >= 1, got {self.n_threads}")
        if self.evaluator not in EVALUATORS:
            raise ValueError(
                f"EVALUATOR must be one of {sorted(EVALUATORS)}, got {self.evaluator!r}"
            )
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {LOG_LEVELS}, got {self.log_level!r}")
        return self


def _normalize_bool(value: str, name: str) -> bool:
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off", ""}:
        return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


def _collect_env_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if (raw := env.get(ENV_PREFIX + "THREADS")) is not None:
        try:
            overrides["n_threads"] = int(raw)
        except ValueError:
            raise ValueError(f"N_THREADS must be an integer, got {raw!r}") from None
    if (raw := env.get(ENV_PREFIX + "EVALUATOR")) is not None:
        overrides["evaluator"] = raw.strip().lower()
    if (raw := env.get(ENV_PREFIX + "PRINT_GENERATIONS")) is not None:
        overrides["print_generations"] = _normalize_bool(raw, "PRINT_GENERATIONS")
    if raw := env.get(ENV_PREFIX + "EXPORT_PATH"):
        overrides["export_path"] = Path(raw)
    if raw := env.get(ENV_PREFIX + "STATS_PATH"):
        overrides["stats_path"] = Path(raw)
    if (raw := env.get(ENV_PREFIX + "LOG_LEVEL")) is not None:
        overrides["log_level"] = raw.strip().upper()
    return overrides


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Simulate a multi-faction Game of Life with invasions"
    )
    parser.add_argument("input", type=Path, help="Input world file")
    parser.add_argument("output", type=Path, help="File to write the death toll to")
    parser.add_argument("threads", type=int, nargs="?", default=None,
                        help="Worker threads (default: 1)")
    parser.add_argument("--evaluator", choices=sorted(EVALUATORS), default=None,
                        help="Rule evaluator: numpy row blocks or per-cell reference")
    parser.add_argument("--print", dest="print_generations", action="store_true",
                        default=None, help="Print every generation to stdout")
    parser.add_argument("--export", dest="export_path", type=Path, default=None,
                        help="Write every generation to this file")
    parser.add_argument("--stats", dest="stats_path", type=Path, default=None,
                        help="Write per-generation stats CSV to this file")
    parser.add_argument("--log-level", type=str.upper, choices=LOG_LEVELS, default=None,
                        help="Logging level (default: WARNING)")
    return parser


def load_run_settings(
    args: Sequence[str] | None = None, env: Mapping[str, str] | None = None
) -> RunSettings:
    """Defaults, then environment, then command line."""
    ns = build_parser().parse_args(args)
    settings = RunSettings(input_path=ns.input, output_path=ns.output)
    settings = replace(settings, **_collect_env_overrides(os.environ if env is None else env))

    cli: dict[str, Any] = {
        "n_threads": ns.threads,
        "evaluator": ns.evaluator,
        "print_generations": ns.print_generations,
        "export_path": ns.export_path,
        "stats_path": ns.stats_path,
        "log_level": ns.log_level,
    }
    settings = replace(settings, **{k: v for k, v in cli.items() if v is not None})
    return settings.validate()


def run(settings: RunSettings) -> int:
    """Run one simulation per the settings. Returns the death toll."""
    data = read_input(settings.input_path)

    exporter = WorldExporter(settings.export_path) if settings.export_path else None
    stats = StatsLogger(settings.stats_path) if settings.stats_path else None
    printer = WorldPrinter() if settings.print_generations else None

    if exporter is not None:
        exporter.open()
    if stats is not None:
        stats.open()
    try:
        return simulate(
            data.start_world,
            data.invasion_times,
            data.invasion_plans,
            data.n_generations,
            n_threads=settings.n_threads,
            sink=broadcast(printer, exporter, stats),
            evaluator=settings.evaluator,
        )
    finally:
        if exporter is not None:
            exporter.close()
        if stats is not None:
            stats.close()


def main(argv: Sequence[str] | None = None) -> int:
    try:
        settings = load_run_settings(argv)
    except ValueError as exc:
        print(f"goi: {exc}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.debug("settings: %s", settings)

    t0 = time.perf_counter()
    try:
        death_toll = run(settings)
    except (OSError, ValueError) as exc:
        print(f"goi: {exc}", file=sys.stderr)
        return 1
    elapsed = time.perf_counter() - t0

    if death_toll == ALLOCATION_FAILURE:
        print("goi: out of memory", file=sys.stderr)
        return 1

    write_death_toll(settings.output_path, death_toll)
    print(f"Death toll: {death_toll}  ({elapsed:.3f}s, {settings.n_threads} threads)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
