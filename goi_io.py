"""
Reading and writing GOI worlds.

Input files are whitespace-separated integers:

    n_generations
    n_rows n_cols
    <n_rows lines of n_cols faction ids>
    n_invasions
    <per invasion: its generation, then an n_rows x n_cols plan>

The output file holds the death toll on a single line. Generations can also
be printed or exported as ``=== WORLD <gen> ===`` blocks, and logged as
per-generation stats to CSV.
"""

from __future__ import annotations

import logging
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, ClassVar

import numpy as np
from numpy.typing import NDArray

from goi import (
    DEAD_FACTION,
    LIVE_FACTIONS,
    MAX_FACTIONS,
    WORLD_DTYPE,
    Snapshot,
    SnapshotSink,
    faction_populations,
)

logger = logging.getLogger(__name__)

WORLD_HEADER = "=== WORLD {} ==="
_INT64 = np.iinfo(np.int64)


class InputFormatError(ValueError):
    """An input or export file does not follow the expected layout."""


# ═══════════════════════════════════════════════════════════════════════
#  Input
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationInput:
    n_generations: int
    start_world: NDArray[np.int64]
    invasion_times: list[int] = field(default_factory=list)
    invasion_plans: list[NDArray[np.int64]] = field(default_factory=list)

    @property
    def shape(self) -> tuple[int, int]:
        return self.start_world.shape


def _fits_int64(token: str) -> bool:
    try:
        value = int(token)
    except ValueError:
        return False
    return _INT64.min <= value <= _INT64.max


class _TokenReader:
    def __init__(self, text: str, source: str) -> None:
        self._tokens = text.split()
        self._pos = 0
        self._source = source

    def _fail(self, what: str, got: str) -> InputFormatError:
        return InputFormatError(
            f"{self._source}: expected {what} at token {self._pos + 1}, got {got}"
        )

    def integer(self, what: str, minimum: int = 0) -> int:
        if self._pos >= len(self._tokens):
            raise self._fail(what, "end of file")
        token = self._tokens[self._pos]
        try:
            value = int(token)
        except ValueError:
            raise self._fail(what, repr(token)) from None
        if value < minimum:
            raise self._fail(f"{what} >= {minimum}", str(value))
        self._pos += 1
        return value

    def grid(self, n_rows: int, n_cols: int, what: str) -> NDArray[np.int64]:
        n = n_rows * n_cols
        chunk = self._tokens[self._pos : self._pos + n]
        if len(chunk) < n:
            self._pos += len(chunk)
            raise self._fail(f"{n} cells of {what}", "end of file")
        try:
            values = np.array(chunk, dtype=np.int64)
        except (ValueError, OverflowError):
            bad = next((t for t in chunk if not _fits_int64(t)), chunk[0])
            raise self._fail(f"a faction id in {what}", repr(bad)) from None
        self._pos += n
        return values.reshape(n_rows, n_cols)

    def finish(self) -> None:
        if self._pos < len(self._tokens):
            raise self._fail("end of file", repr(self._tokens[self._pos]))


def parse_input(text: str, source: str = "<input>") -> SimulationInput:
    reader = _TokenReader(text, source)
    n_generations = reader.integer("generation count")
    n_rows = reader.integer("row count")
    n_cols = reader.integer("column count")
    world = reader.grid(n_rows, n_cols, "the start world")

    n_invasions = reader.integer("invasion count")
    times: list[int] = []
    plans: list[NDArray[np.int64]] = []
    for i in range(n_invasions):
        times.append(reader.integer(f"generation of invasion {i}"))
        plans.append(reader.grid(n_rows, n_cols, f"invasion plan {i}"))
    reader.finish()
    return SimulationInput(n_generations, world, times, plans)


def read_input(path: str | Path) -> SimulationInput:
    path = Path(path)
    return parse_input(path.read_text(), str(path))


def write_death_toll(path: str | Path, death_toll: int) -> None:
    Path(path).write_text(f"{death_toll}\n")


# ═══════════════════════════════════════════════════════════════════════
#  World blocks
# ═══════════════════════════════════════════════════════════════════════

def format_world(world: NDArray, generation: int) -> str:
    lines = [WORLD_HEADER.format(generation)]
    lines.extend(" ".join(str(v) for v in row) for row in world.tolist())
    return "\n".join(lines) + "\n"


def parse_export(text: str, source: str = "<export>") -> list[tuple[int, NDArray[np.int8]]]:
    """Split an export back into (generation, world) pairs."""
    frames: list[tuple[int, NDArray[np.int8]]] = []
    generation: int | None = None
    rows: list[list[int]] = []

    def flush() -> None:
        if generation is None:
            return
        widths = {len(r) for r in rows}
        if len(widths) > 1:
            raise InputFormatError(f"{source}: ragged rows in world {generation}")
        n_cols = widths.pop() if widths else 0
        bad = [v for r in rows for v in r if not DEAD_FACTION <= v < MAX_FACTIONS]
        if bad:
            raise InputFormatError(f"{source}: unknown faction id {bad[0]} in world {generation}")
        world = np.array(rows, dtype=WORLD_DTYPE).reshape(len(rows), n_cols)
        frames.append((generation, world))

    for lineno, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line:
            continue
        if line.startswith("==="):
            flush()
            try:
                generation = int(line.strip("= ").split()[-1])
            except (ValueError, IndexError):
                raise InputFormatError(f"{source}:{lineno}: bad header {line!r}") from None
            rows = []
        elif generation is None:
            raise InputFormatError(f"{source}:{lineno}: cells before the first header")
        else:
            try:
                rows.append([int(v) for v in line.split()])
            except ValueError:
                raise InputFormatError(f"{source}:{lineno}: bad row {line!r}") from None
    flush()
    return frames


def read_export(path: str | Path) -> list[tuple[int, NDArray[np.int8]]]:
    path = Path(path)
    return parse_export(path.read_text(), str(path))


# ═══════════════════════════════════════════════════════════════════════
#  Snapshot sinks
# ═══════════════════════════════════════════════════════════════════════

class WorldPrinter:
    """Prints every generation to a text stream."""

    def __init__(self, stream: IO[str] | None = None) -> None:
        self._stream = stream

    def __call__(self, snap: Snapshot) -> None:
        stream = self._stream if self._stream is not None else sys.stdout
        stream.write("\n" + format_world(snap.world, snap.generation))


class WorldExporter:
    """Appends every generation to a file, readable with read_export()."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._fh: IO[str] | None = None
        self.frames_written: int = 0

    def open(self) -> None:
        self._fh = open(self.path, "w")

    def __enter__(self) -> WorldExporter:
        self.open()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __call__(self, snap: Snapshot) -> None:
        if self._fh is None:
            raise RuntimeError("WorldExporter used before open()")
        self._fh.write(format_world(snap.world, snap.generation))
        self.frames_written += 1

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


class StatsLogger:
    """Writes per-generation telemetry to CSV for post-hoc analysis."""

    HEADER: ClassVar[str] = (
        "gen,time_s,population,fights,death_toll,invasion,"
        + ",".join(f"faction_{f}" for f in LIVE_FACTIONS)
        + "\n"
    )

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh: IO[str] | None = None
        self._t0: float = time.monotonic()

    def open(self) -> None:
        try:
            self._fh = open(self._path, "w")
            self._fh.write(self.HEADER)
            self._fh.flush()
        except OSError as exc:
            logger.warning("stats disabled, cannot write %s: %s", self._path, exc)
            self._fh = None

    def __enter__(self) -> StatsLogger:
        self.open()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def log(
        self,
        gen: int,
        populations: NDArray,
        fights: int,
        death_toll: int,
        invasion: bool = False,
    ) -> None:
        if self._fh is None:
            return
        t = time.monotonic() - self._t0
        live = populations[1:].tolist()
        self._fh.write(
            f"{gen},{t:.3f},{sum(live)},{fights},{death_toll},{int(invasion)},"
            + ",".join(str(p) for p in live)
            + "\n"
        )
        # Flush on invasions or periodically
        if invasion or gen % 50 == 0:
            self._fh.flush()

    def __call__(self, snap: Snapshot) -> None:
        self.log(
            gen=snap.generation,
            populations=faction_populations(snap.world),
            fights=snap.fights,
            death_toll=snap.death_toll,
            invasion=snap.invaded,
        )

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


def broadcast(*sinks: SnapshotSink | None) -> SnapshotSink | None:
    """One sink feeding every non-None sink in order, or None if there are none."""
    active = [s for s in sinks if s is not None]
    if not active:
        return None
    if len(active) == 1:
        return active[0]

    def sink(snap: Snapshot) -> None:
        for s in active:
            s(snap)

    return sink
