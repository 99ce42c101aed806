#!/usr/bin/env python3
"""
  G O I  --  game of invasions
  A multi-faction Game of Life on a finite grid.

  Every live cell belongs to one of nine factions. Dead cells are born to a
  faction with exactly three neighbours of that faction; live cells survive
  on two or three friends, but any hostile neighbour kills them outright.
  Invasions are scheduled overlays that stamp factions onto the grid for a
  single generation, overriding the rules.

  The engine counts every death caused by fighting. Each generation is
  evaluated in row blocks, optionally on a thread pool, and the result is
  identical to a sequential run for any worker count.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy.ndimage import convolve

logger = logging.getLogger(__name__)

# ── Factions ────────────────────────────────────────────────────────────
# Including the dead "faction" 0. Tallies are fixed arrays of this length.
MAX_FACTIONS = 10
DEAD_FACTION = 0
LIVE_FACTIONS = range(DEAD_FACTION + 1, MAX_FACTIONS)

# Returned by value_at() for coordinates beyond the grid edge
OUT_OF_BOUNDS = -1

# Returned by simulate() when a buffer could not be allocated
ALLOCATION_FAILURE = -1

WORLD_DTYPE = np.int8

# ── Convolution kernel (Moore neighbourhood, self excluded) ─────────────
NEIGHBOR_KERNEL: NDArray = np.array([[1, 1, 1], [1, 0, 1], [1, 1, 1]], dtype=np.int16)


class WorldError(ValueError):
    """A world grid has the wrong shape or holds values outside the faction range."""


class InvasionScheduleError(ValueError):
    """The invasion times and plans do not form a valid schedule."""


# ═══════════════════════════════════════════════════════════════════════
#  Rules
# ═══════════════════════════════════════════════════════════════════════
# Written with `|` and comparisons so they apply to ints and arrays alike.

def is_birthable(n):
    """Neighbours of one faction needed for a dead cell to be born to it."""
    return n == 3


def is_survivable(n):
    """Friendly neighbours needed for a live cell to stay alive."""
    return (n == 2) | (n == 3)


def will_fight(n):
    """Hostile neighbours needed for a live cell to die fighting."""
    return n > 0


# ═══════════════════════════════════════════════════════════════════════
#  Grid helpers
# ═══════════════════════════════════════════════════════════════════════

def as_world(values: ArrayLike, what: str = "world") -> NDArray[np.int8]:
    """View ``values`` as a 2D world grid without copying where possible."""
    arr = np.asarray(values)
    if arr.ndim != 2:
        raise WorldError(f"{what} must be 2-dimensional, got shape {arr.shape}")
    if arr.size and not np.issubdtype(arr.dtype, np.integer):
        raise WorldError(f"{what} must hold integer faction ids, got {arr.dtype}")
    return arr


def check_factions(world: NDArray, what: str = "world") -> None:
    if world.size == 0:
        return
    lo, hi = int(world.min()), int(world.max())
    if lo < DEAD_FACTION or hi >= MAX_FACTIONS:
        raise WorldError(
            f"{what} holds faction ids in [{lo}, {hi}], "
            f"expected [{DEAD_FACTION}, {MAX_FACTIONS - 1}]"
        )


def new_world(n_rows: int, n_cols: int) -> NDArray[np.int8]:
    return np.zeros((n_rows, n_cols), dtype=WORLD_DTYPE)


def copy_world(world: ArrayLike) -> NDArray[np.int8]:
    """Owned, C-contiguous copy in the engine's dtype."""
    return np.array(world, dtype=WORLD_DTYPE, order="C", copy=True)


def value_at(world: NDArray, row: int, col: int) -> int:
    n_rows, n_cols = world.shape
    if 0 <= row < n_rows and 0 <= col < n_cols:
        return int(world[row, col])
    return OUT_OF_BOUNDS


def set_value_at(world: NDArray, row: int, col: int, value: int) -> None:
    n_rows, n_cols = world.shape
    if not (0 <= row < n_rows and 0 <= col < n_cols):
        raise IndexError(f"cell ({row}, {col}) outside {n_rows}x{n_cols} world")
    world[row, col] = value


def faction_populations(world: NDArray) -> NDArray[np.int64]:
    """Cell count per faction id, index 0 being the dead cells."""
    return np.bincount(world.ravel(), minlength=MAX_FACTIONS)


def row_blocks(n_rows: int, n_blocks: int) -> list[tuple[int, int]]:
    """Split ``range(n_rows)`` into at most ``n_blocks`` contiguous ranges."""
    n_blocks = max(1, min(n_blocks, n_rows))
    base, extra = divmod(n_rows, n_blocks)
    blocks: list[tuple[int, int]] = []
    start = 0
    for i in range(n_blocks):
        stop = start + base + (1 if i < extra else 0)
        if stop > start:
            blocks.append((start, stop))
        start = stop
    return blocks


# ═══════════════════════════════════════════════════════════════════════
#  Transition rule
# ═══════════════════════════════════════════════════════════════════════

def next_state(
    world: NDArray, invaders: NDArray | None, row: int, col: int
) -> tuple[int, bool]:
    """
    Next faction of the cell at (row, col) and whether it died fighting.

    An invader always takes the cell; that only counts as a fighting death
    when it lands on a live cell of another faction. Otherwise a dead cell is
    born to the highest faction with exactly three neighbours, and a live
    cell dies fighting if any neighbour is hostile, else follows the usual
    survival rule.
    """
    cell = value_at(world, row, col)

    if invaders is not None:
        invader = value_at(invaders, row, col)
        if invader != DEAD_FACTION:
            return invader, cell != DEAD_FACTION and cell != invader

    counts = [0] * MAX_FACTIONS
    for dr in (-1, 0, 1):
        for dc in (-1, 0, 1):
            if dr == 0 and dc == 0:
                continue
            faction = value_at(world, row + dr, col + dc)
            if faction != OUT_OF_BOUNDS:
                counts[faction] += 1

    if cell == DEAD_FACTION:
        born = DEAD_FACTION
        # Ascending scan; the highest qualifying faction wins ties
        for faction in LIVE_FACTIONS:
            if is_birthable(counts[faction]):
                born = faction
        return born, False

    hostile = sum(counts[f] for f in LIVE_FACTIONS if f != cell)
    if will_fight(hostile):
        return DEAD_FACTION, True
    if is_survivable(counts[cell]):
        return cell, False
    return DEAD_FACTION, False


def evaluate_cells(
    world: NDArray,
    invaders: NDArray | None,
    row_start: int,
    row_stop: int,
    out: NDArray,
) -> int:
    """Reference evaluator: next_state() for every cell of the row range."""
    fights = 0
    n_cols = world.shape[1]
    for row in range(row_start, row_stop):
        for col in range(n_cols):
            state, fought = next_state(world, invaders, row, col)
            out[row, col] = state
            if fought:
                fights += 1
    return fights


def neighbor_counts(world: NDArray, row_start: int, row_stop: int) -> NDArray[np.int16]:
    """
    Per-faction neighbour tallies for rows [row_start, row_stop).

    Returns an array of shape (MAX_FACTIONS, rows, cols); plane 0 is left at
    zero. One halo row on each side is convolved with the block so that the
    zero padding only ever stands in for cells beyond the real grid edge.
    """
    n_rows, n_cols = world.shape
    lo = max(0, row_start - 1)
    hi = min(n_rows, row_stop + 1)
    window = world[lo:hi]
    top = row_start - lo
    height = row_stop - row_start

    counts = np.zeros((MAX_FACTIONS, height, n_cols), dtype=np.int16)
    tally = np.empty(window.shape, dtype=np.int16)
    for faction in np.unique(window).tolist():
        if faction == DEAD_FACTION:
            continue
        plane = (window == faction).astype(np.int16)
        convolve(plane, NEIGHBOR_KERNEL, output=tally, mode="constant", cval=0)
        counts[faction] = tally[top : top + height]
    return counts


def evaluate_block(
    world: NDArray,
    invaders: NDArray | None,
    row_start: int,
    row_stop: int,
    out: NDArray,
) -> int:
    """
    Vectorised evaluator: same rules as next_state(), applied to a row block.

    Reads only ``world`` and ``invaders``, writes only
    ``out[row_start:row_stop]``, and returns the block's fighting deaths.
    """
    if row_stop <= row_start:
        return 0
    counts = neighbor_counts(world, row_start, row_stop)
    cur = world[row_start:row_stop]

    friendly = np.take_along_axis(counts, cur.astype(np.intp)[np.newaxis], axis=0)[0]
    hostile = counts.sum(axis=0, dtype=np.int16) - friendly

    alive = cur != DEAD_FACTION
    fight = alive & will_fight(hostile)
    survive = alive & ~fight & is_survivable(friendly)

    born = np.zeros_like(cur)
    for faction in LIVE_FACTIONS:
        # Later writes win: highest qualifying faction
        born[is_birthable(counts[faction])] = faction

    nxt = np.where(alive, np.where(survive, cur, DEAD_FACTION), born)

    if invaders is not None:
        inv = invaders[row_start:row_stop]
        landed = inv != DEAD_FACTION
        nxt = np.where(landed, inv, nxt)
        fight = np.where(landed, alive & (cur != inv), fight)

    out[row_start:row_stop] = nxt
    return int(np.count_nonzero(fight))


Evaluator = Callable[..., int]

EVALUATORS: dict[str, Evaluator] = {
    "vector": evaluate_block,
    "cell": evaluate_cells,
}


# ═══════════════════════════════════════════════════════════════════════
#  Invasions
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Invasion:
    generation: int
    plan: NDArray


class InvasionSchedule:
    """
    Ordered invasions, consumed one generation at a time.

    Plans are held by reference and never written to; overlay_for() hands out
    a fresh copy of the plan for the generation it targets.
    """

    def __init__(
        self,
        times: Sequence[int],
        plans: Sequence[ArrayLike],
        shape: tuple[int, int],
        n_generations: int | None = None,
    ) -> None:
        times = [int(t) for t in times]
        if len(times) != len(plans):
            raise InvasionScheduleError(
                f"{len(times)} invasion times but {len(plans)} invasion plans"
            )
        invasions: list[Invasion] = []
        previous = 0
        for i, (t, plan) in enumerate(zip(times, plans)):
            if t <= previous:
                raise InvasionScheduleError(
                    f"invasion {i} at generation {t}: times must be strictly "
                    f"increasing and start at 1"
                )
            if n_generations is not None and t > n_generations:
                raise InvasionScheduleError(
                    f"invasion {i} at generation {t} is beyond the last "
                    f"generation ({n_generations})"
                )
            try:
                grid = as_world(plan, f"invasion plan {i}")
                check_factions(grid, f"invasion plan {i}")
            except WorldError as exc:
                raise InvasionScheduleError(str(exc)) from exc
            if grid.shape != tuple(shape):
                raise InvasionScheduleError(
                    f"invasion plan {i} has shape {grid.shape}, world is {tuple(shape)}"
                )
            invasions.append(Invasion(t, grid))
            previous = t

        self.shape = tuple(shape)
        self._invasions = invasions
        self._next = 0

    @classmethod
    def empty(cls, shape: tuple[int, int]) -> InvasionSchedule:
        return cls([], [], shape)

    def __len__(self) -> int:
        return len(self._invasions)

    @property
    def remaining(self) -> int:
        return len(self._invasions) - self._next

    def overlay_for(self, generation: int) -> NDArray[np.int8] | None:
        """Copy of the plan scheduled for ``generation``, or None."""
        if self._next >= len(self._invasions):
            return None
        invasion = self._invasions[self._next]
        if invasion.generation != generation:
            return None
        try:
            return copy_world(invasion.plan)
        finally:
            self._next += 1

    def requeue(self) -> None:
        """Put the last overlay handed out back at the head of the queue."""
        if self._next > 0:
            self._next -= 1

    def reset(self) -> None:
        self._next = 0


# ═══════════════════════════════════════════════════════════════════════
#  Death toll
# ═══════════════════════════════════════════════════════════════════════

class DeathToll:
    """Fighting-death counter shared by the workers of a run."""

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def add(self, n: int) -> None:
        if n:
            with self._lock:
                self._value += n

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


# ═══════════════════════════════════════════════════════════════════════
#  Stepper
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Snapshot:
    """What a sink sees after each generation.

    ``world`` is a read-only view of the engine's buffer and is reused two
    generations later; sinks that keep it must copy it.
    """

    generation: int
    world: NDArray[np.int8]
    fights: int
    death_toll: int
    invaded: bool


SnapshotSink = Callable[[Snapshot], None]


class GenerationStepper:
    """
    Advances a private copy of a world one generation at a time.

    Two buffers swap roles every generation: the current one is only read
    while the other is filled. Rows are split into one block per worker;
    with more than one worker the blocks run on a thread pool. Their partial
    fight counts are added to the shared toll once every block has finished;
    a step that raises leaves the generation, toll and schedule untouched.
    """

    def __init__(
        self,
        start_world: ArrayLike,
        schedule: InvasionSchedule | None = None,
        n_threads: int = 1,
        evaluator: str = "vector",
    ) -> None:
        if n_threads < 1:
            raise ValueError(f"n_threads must be >= 1, got {n_threads}")
        if evaluator not in EVALUATORS:
            raise ValueError(
                f"unknown evaluator {evaluator!r}, expected one of {sorted(EVALUATORS)}"
            )

        world = as_world(start_world, "start world")
        self.n_rows, self.n_cols = world.shape
        self.world: NDArray[np.int8] = copy_world(world)
        self._spare: NDArray[np.int8] = np.empty_like(self.world)

        if schedule is None:
            schedule = InvasionSchedule.empty(world.shape)
        elif schedule.shape != world.shape:
            raise InvasionScheduleError(
                f"schedule is for a {schedule.shape} world, start world is {world.shape}"
            )
        self.schedule = schedule

        self.generation: int = 0
        self.death_toll = DeathToll()
        self.last_fights: int = 0
        self.last_invaded: bool = False

        self.evaluator = evaluator
        self._evaluate = EVALUATORS[evaluator]
        self._blocks = row_blocks(self.n_rows, n_threads)
        self.n_threads = n_threads
        self._pool: ThreadPoolExecutor | None = None
        if len(self._blocks) > 1:
            self._pool = ThreadPoolExecutor(
                max_workers=len(self._blocks), thread_name_prefix="goi-worker"
            )

    # ── Lifecycle ───────────────────────────────────────────────────

    def __enter__(self) -> GenerationStepper:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None

    @property
    def n_workers(self) -> int:
        return len(self._blocks) if self._pool is not None else 1

    # ── Simulation ──────────────────────────────────────────────────

    def _run_block(self, overlay: NDArray | None, block: tuple[int, int]) -> int:
        start, stop = block
        return self._evaluate(self.world, overlay, start, stop, self._spare)

    def step(self) -> int:
        """Advance one generation. Returns the fighting deaths it caused."""
        generation = self.generation + 1

        # Materialised before any cell is evaluated
        overlay = self.schedule.overlay_for(generation)
        if overlay is not None:
            logger.debug(
                "generation %d: invasion of %d cells",
                generation, int(np.count_nonzero(overlay)),
            )

        try:
            if self._pool is None:
                fights = sum(self._run_block(overlay, b) for b in self._blocks)
            else:
                futures = [self._pool.submit(self._run_block, overlay, b) for b in self._blocks]
                wait(futures)
                fights = sum(f.result() for f in futures)
        except BaseException:
            if overlay is not None:
                self.schedule.requeue()
            raise

        self.death_toll.add(fights)
        self.world, self._spare = self._spare, self.world
        self.generation = generation
        self.last_fights = fights
        self.last_invaded = overlay is not None
        return fights

    def snapshot(self) -> Snapshot:
        view = self.world.view()
        view.flags.writeable = False
        return Snapshot(
            generation=self.generation,
            world=view,
            fights=self.last_fights,
            death_toll=self.death_toll.value,
            invaded=self.last_invaded,
        )

    def run(self, n_generations: int, sink: SnapshotSink | None = None) -> int:
        """
        Advance ``n_generations`` generations and return the total death toll.

        The sink, if given, sees the starting grid (when nothing has been
        stepped yet) and then every generation in order.
        """
        if n_generations < 0:
            raise ValueError(f"n_generations must be >= 0, got {n_generations}")
        if sink is not None and self.generation == 0:
            sink(self.snapshot())
        for _ in range(n_generations):
            self.step()
            if sink is not None:
                sink(self.snapshot())
        return self.death_toll.value


def simulate(
    start_world: ArrayLike,
    invasion_times: Sequence[int],
    invasion_plans: Sequence[ArrayLike],
    n_generations: int,
    n_threads: int = 1,
    sink: SnapshotSink | None = None,
    evaluator: str = "vector",
) -> int:
    """
    Run a whole simulation and return the number of deaths due to fighting.

    None of the inputs are modified. Returns ALLOCATION_FAILURE if the run
    ran out of memory; malformed worlds and schedules raise ValueError
    subclasses before anything is simulated.
    """
    if n_generations < 0:
        raise ValueError(f"n_generations must be >= 0, got {n_generations}")
    world = as_world(start_world, "start world")
    check_factions(world, "start world")
    schedule = InvasionSchedule(invasion_times, invasion_plans, world.shape, n_generations)

    try:
        with GenerationStepper(world, schedule, n_threads, evaluator) as stepper:
            logger.info("Number of threads used for parallel: %d", stepper.n_workers)
            return stepper.run(n_generations, sink)
    except MemoryError:
        logger.error(
            "out of memory simulating a %dx%d world; run aborted", *world.shape
        )
        return ALLOCATION_FAILURE
