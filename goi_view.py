#!/usr/bin/env python3
"""
Terminal replay of an exported GOI run.

Each terminal character shows two grid rows with half-blocks, one colour per
faction. Produce the input with ``goi_run.py ... --export gens.txt``.

  Controls:
    q         quit               SPACE     pause / resume
    +/-       speed              n / p     next / previous generation
    arrows    pan                r         restart from generation 0

Usage:
  python3 goi_view.py gens.txt
"""

from __future__ import annotations

import argparse
import curses
import sys
import time
from dataclasses import dataclass, field

import numpy as np
from numpy.typing import NDArray

from goi import DEAD_FACTION, LIVE_FACTIONS, faction_populations
from goi_io import InputFormatError, read_export

# ── Palette ─────────────────────────────────────────────────────────────
# xterm-256 colour per live faction, index 0 unused (dead = background)
FACTION_COLORS: list[int] = [-1, 196, 46, 33, 226, 201, 51, 208, 129, 250]

# ── Half-block characters ───────────────────────────────────────────────
UPPER_HALF = "\u2580"  # ▀  top pixel alive
LOWER_HALF = "\u2584"  # ▄  bottom pixel alive

MIN_DELAY_MS = 10
MAX_DELAY_MS = 2000


# ═══════════════════════════════════════════════════════════════════════
#  Color management
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class ColorMap:
    """Manages curses color pairs for half-block dual-color rendering."""

    _fg_pairs: dict[int, int] = field(default_factory=dict)
    _dual_pairs: dict[tuple[int, int], int] = field(default_factory=dict)

    def setup(self) -> None:
        curses.start_color()
        curses.use_default_colors()

        max_pairs = curses.COLOR_PAIRS - 1
        n_colors = curses.COLORS
        pair_id = 1

        def color(faction: int) -> int:
            c = FACTION_COLORS[faction]
            # 8-colour terminals: fall back to the basic palette
            return c if c < n_colors else 1 + (faction - 1) % 7

        for f in LIVE_FACTIONS:
            if pair_id > max_pairs:
                break
            curses.init_pair(pair_id, color(f), -1)
            self._fg_pairs[f] = pair_id
            pair_id += 1

        for top in LIVE_FACTIONS:
            for bot in LIVE_FACTIONS:
                if pair_id > max_pairs:
                    break
                curses.init_pair(pair_id, color(top), color(bot))
                self._dual_pairs[(top, bot)] = pair_id
                pair_id += 1

    def fg(self, faction: int) -> int:
        return self._fg_pairs.get(faction, 0)

    def dual(self, top: int, bot: int) -> int:
        return self._dual_pairs.get((top, bot), 0)


# ═══════════════════════════════════════════════════════════════════════
#  Replay state
# ═══════════════════════════════════════════════════════════════════════

class Replay:
    """Cursor over the exported generations plus the viewport."""

    def __init__(self, frames: list[tuple[int, NDArray[np.int8]]]) -> None:
        if not frames:
            raise ValueError("nothing to replay: no generations in export")
        self.frames = frames
        self.index: int = 0
        self.paused: bool = False
        self.delay: float = 200.0
        self.cam_y: int = 0
        self.cam_x: int = 0

    @property
    def generation(self) -> int:
        return self.frames[self.index][0]

    @property
    def world(self) -> NDArray[np.int8]:
        return self.frames[self.index][1]

    @property
    def at_end(self) -> bool:
        return self.index == len(self.frames) - 1

    def advance(self) -> None:
        if not self.at_end:
            self.index += 1

    def back(self) -> None:
        if self.index > 0:
            self.index -= 1

    def restart(self) -> None:
        self.index = 0

    def pan(self, dy: int, dx: int, view_h: int, view_w: int) -> None:
        n_rows, n_cols = self.world.shape
        self.cam_y = max(0, min(self.cam_y + dy, max(0, n_rows - view_h)))
        self.cam_x = max(0, min(self.cam_x + dx, max(0, n_cols - view_w)))


# ═══════════════════════════════════════════════════════════════════════
#  Rendering
# ═══════════════════════════════════════════════════════════════════════

def render(stdscr: curses.window, replay: Replay, cmap: ColorMap) -> None:
    """Half-block rendering of the visible window plus a status bar."""
    max_y, max_x = stdscr.getmaxyx()
    world = replay.world
    view = world[replay.cam_y : replay.cam_y + (max_y - 1) * 2,
                 replay.cam_x : replay.cam_x + max_x]

    # Pad to an even number of rows so top/bottom pairs line up
    if view.shape[0] % 2:
        view = np.vstack([view, np.zeros((1, view.shape[1]), dtype=view.dtype)])
    top = view[0::2]
    bot = view[1::2]

    active_ys, active_xs = np.nonzero((top != DEAD_FACTION) | (bot != DEAD_FACTION))
    ys = active_ys.tolist()
    xs = active_xs.tolist()
    tf = top[active_ys, active_xs].tolist()
    bf = bot[active_ys, active_xs].tolist()

    _addstr = stdscr.addstr
    _color_pair = curses.color_pair
    _BOLD = curses.A_BOLD

    for y, x, t, b in zip(ys, xs, tf, bf):
        try:
            if t and b:
                _addstr(y, x, UPPER_HALF, _color_pair(cmap.dual(t, b)) | _BOLD)
            elif t:
                _addstr(y, x, UPPER_HALF, _color_pair(cmap.fg(t)) | _BOLD)
            else:
                _addstr(y, x, LOWER_HALF, _color_pair(cmap.fg(b)) | _BOLD)
        except curses.error:
            pass

    # ── Status bar ──────────────────────────────────────────────────
    pops = faction_populations(world)
    counts = "  ".join(f"{f}:{pops[f]}" for f in LIVE_FACTIONS if pops[f])
    state = "paused" if replay.paused else f"{replay.delay:.0f}ms"
    left = (f"  gen {replay.generation:,} ({replay.index + 1}/{len(replay.frames)})"
            f"  {counts or 'extinct'}")
    right = f"{state}  q spc +/- n p r arrows  "
    status = left + " " * max(1, max_x - len(left) - len(right)) + right
    try:
        stdscr.addstr(max_y - 1, 0, status[: max_x - 1], curses.A_DIM)
    except curses.error:
        pass


# ═══════════════════════════════════════════════════════════════════════
#  Main loop
# ═══════════════════════════════════════════════════════════════════════

def main(stdscr: curses.window, frames: list[tuple[int, NDArray[np.int8]]]) -> None:
    curses.curs_set(0)
    stdscr.nodelay(True)
    stdscr.timeout(0)

    cmap = ColorMap()
    cmap.setup()
    replay = Replay(frames)

    while True:
        try:
            key = stdscr.getch()
        except curses.error:
            key = -1

        max_y, max_x = stdscr.getmaxyx()
        view_h, view_w = (max_y - 1) * 2, max_x

        if key in (ord("q"), ord("Q")):
            break
        elif key == ord(" "):
            replay.paused = not replay.paused
        elif key in (ord("+"), ord("=")):
            replay.delay = max(MIN_DELAY_MS, replay.delay / 1.5)
        elif key in (ord("-"), ord("_")):
            replay.delay = min(MAX_DELAY_MS, replay.delay * 1.5)
        elif key in (ord("n"), ord("N")):
            replay.paused = True
            replay.advance()
        elif key in (ord("p"), ord("P")):
            replay.paused = True
            replay.back()
        elif key in (ord("r"), ord("R")):
            replay.restart()
        elif key == curses.KEY_UP:
            replay.pan(-4, 0, view_h, view_w)
        elif key == curses.KEY_DOWN:
            replay.pan(4, 0, view_h, view_w)
        elif key == curses.KEY_LEFT:
            replay.pan(0, -8, view_h, view_w)
        elif key == curses.KEY_RIGHT:
            replay.pan(0, 8, view_h, view_w)

        stdscr.erase()
        render(stdscr, replay, cmap)
        stdscr.refresh()

        if not replay.paused:
            if replay.at_end:
                replay.paused = True
            else:
                replay.advance()
        time.sleep(replay.delay / 1000.0)


def cli(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Replay an exported GOI run")
    parser.add_argument("export", help="File written by goi_run.py --export")
    args = parser.parse_args(argv)

    try:
        frames = read_export(args.export)
    except (OSError, InputFormatError) as exc:
        print(f"goi_view: {exc}", file=sys.stderr)
        return 1
    if not frames:
        print(f"goi_view: {args.export} holds no generations", file=sys.stderr)
        return 1

    try:
        curses.wrapper(main, frames)
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(cli())
