"""
CHIP-8 Peripheral / Device Layer
=================================
The machine state that is not part of the register file:

  FrameBuffer  64x32 monochrome pixels, XOR sprite blitter
  Keypad       16-key input latch (keys 0x0-0xF)
  Timers       delay and sound countdown timers, 60 Hz

The interpreter in chip8.py owns one of each.  Hosts read the frame
buffer and write the keypad between cycles; the timers are only touched
by the interpreter.
"""

from __future__ import annotations
import time
from typing import Callable, Optional, Sequence

SCREEN_W = 64
SCREEN_H = 32
NUM_KEYS = 16
TIMER_HZ = 60


# ---------------------------------------------------------------------------
#  Device base class
# ---------------------------------------------------------------------------

class Device:
    """Abstract peripheral."""

    def __init__(self, name: str):
        self.name = name

    def reset(self):
        """Return to power-on state."""
        pass


# ---------------------------------------------------------------------------
#  Frame buffer
# ---------------------------------------------------------------------------

class FrameBuffer(Device):
    """64x32 boolean pixel grid, indexed ``pixels[y][x]``."""

    def __init__(self, width: int = SCREEN_W, height: int = SCREEN_H):
        super().__init__("FrameBuffer")
        self.width = width
        self.height = height
        self.pixels: list[list[bool]] = []
        self.clear()

    def reset(self):
        self.clear()

    def clear(self):
        self.pixels = [[False] * self.width for _ in range(self.height)]

    def pixel(self, x: int, y: int) -> bool:
        return self.pixels[y][x]

    def rows(self) -> list[list[bool]]:
        """Copy of the grid, safe to hand to another thread."""
        return [list(row) for row in self.pixels]

    def lit_count(self) -> int:
        return sum(sum(row) for row in self.pixels)

    def draw_sprite(self, x: int, y: int, sprite: bytes | bytearray,
                    wrap: bool = False) -> bool:
        """XOR an 8-pixel-wide sprite onto the screen at (x, y).

        Each byte of *sprite* is one row, MSB leftmost.  Returns True if
        any lit pixel was switched off.

        With ``wrap=False`` nothing is drawn when (x, y) is off screen and
        the parts of the sprite past the right/bottom edge are clipped.
        With ``wrap=True`` the start position is taken modulo the screen
        size and pixels wrap around to the opposite edge.
        """
        w, h = self.width, self.height
        if wrap:
            x %= w
            y %= h
        elif x >= w or y >= h:
            return False

        collided = False
        for row_index, bits in enumerate(sprite):
            py = y + row_index
            if py >= h:
                if not wrap:
                    break
                py %= h
            row = self.pixels[py]
            for col in range(8):
                if not bits & (0x80 >> col):
                    continue
                px = x + col
                if px >= w:
                    if not wrap:
                        break
                    px %= w
                if row[px]:
                    collided = True
                row[px] = not row[px]
        return collided


# ---------------------------------------------------------------------------
#  Keypad
# ---------------------------------------------------------------------------
# Hex keypad layout of the original machine:
#   1 2 3 C
#   4 5 6 D
#   7 8 9 E
#   A 0 B F

class Keypad(Device):
    """Sixteen key-down flags, written by the host."""

    def __init__(self):
        super().__init__("Keypad")
        self.keys: list[bool] = [False] * NUM_KEYS

    def reset(self):
        self.clear()

    def clear(self):
        self.keys = [False] * NUM_KEYS

    def set(self, key: int, down: bool):
        if not 0 <= key < NUM_KEYS:
            raise ValueError(f"Key index out of range: {key}")
        self.keys[key] = bool(down)

    def press(self, key: int):
        self.set(key, True)

    def release(self, key: int):
        self.set(key, False)

    def is_pressed(self, key: int) -> bool:
        return self.keys[key & 0xF]

    def snapshot(self) -> tuple[bool, ...]:
        return tuple(self.keys)


def first_pressed(keys: Sequence[bool]) -> Optional[int]:
    """Lowest-indexed key that is down in a keypad snapshot, or None."""
    for key, down in enumerate(keys):
        if down:
            return key
    return None


# ---------------------------------------------------------------------------
#  Timers
# ---------------------------------------------------------------------------

class Timers(Device):
    """Delay and sound timers counting down at a fixed real-time rate.

    ``tick()`` reads the clock once.  For every full period elapsed since
    the last decrement, each non-zero counter drops by one.  The number
    of instructions executed in between does not matter.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic,
                 hz: int = TIMER_HZ):
        super().__init__("Timers")
        self.clock = clock
        self.hz = hz
        self.period = 1.0 / hz
        self.delay: int = 0
        self.sound: int = 0
        self._last = clock()

    def reset(self):
        self.delay = 0
        self.sound = 0
        self._last = self.clock()

    def tick(self):
        """Apply every timer period elapsed since the last decrement."""
        now = self.clock()
        periods = int((now - self._last) * self.hz)
        if periods <= 0:
            return
        self._last += periods * self.period
        self.delay = max(0, self.delay - periods)
        self.sound = max(0, self.sound - periods)

    @property
    def sound_active(self) -> bool:
        return self.sound > 0
