"""
CHIP-8 Frame Buffer Display
============================
Presents the interpreter's 64x32 frame buffer in a pygame window and
feeds host key presses into the 16-key keypad.  Runs in a background
thread so it doesn't block the emulation loop.

Host keyboard layout (left-hand block, like most CHIP-8 emulators):

    1 2 3 4        1 2 3 C
    Q W E R   ->   4 5 6 D
    A S D F        7 8 9 E
    Z X C V        A 0 B F

Usage (programmatic):
    from display import FramebufferDisplay
    disp = FramebufferDisplay(sys_emu)
    disp.start()       # launches background thread
    ...                 # run emulator normally
    disp.stop()         # clean shutdown

Usage (CLI):
    python cli.py pong.ch8 --scale 10
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Optional

import numpy as np

from devices import FrameBuffer

if TYPE_CHECKING:
    from system import Chip8System

# Host key name (as understood by pygame.key.key_code) -> CHIP-8 key
KEYMAP = {
    "1": 0x1, "2": 0x2, "3": 0x3, "4": 0xC,
    "q": 0x4, "w": 0x5, "e": 0x6, "r": 0xD,
    "a": 0x7, "s": 0x8, "d": 0x9, "f": 0xE,
    "z": 0xA, "x": 0x0, "c": 0xB, "v": 0xF,
}

FG_COLOR = (255, 255, 255)
BG_COLOR = (0, 0, 0)


# ── Frame conversion ──────────────────────────────────────────────────


def frame_to_array(fb: FrameBuffer) -> np.ndarray:
    """Frame buffer as a (height, width) bool array."""
    return np.array(fb.rows(), dtype=bool)


def frame_to_rgb(fb: FrameBuffer, fg=FG_COLOR, bg=BG_COLOR) -> np.ndarray:
    """Frame buffer as a (width, height, 3) uint8 array.

    Axis order matches pygame.surfarray (x first).
    """
    lit = frame_to_array(fb).T
    rgb = np.empty((fb.width, fb.height, 3), dtype=np.uint8)
    rgb[:] = bg
    rgb[lit] = fg
    return rgb


def render_text(fb: FrameBuffer, on: str = "x", off: str = " ") -> str:
    """Render the frame buffer as text, one line per pixel row."""
    return "\n".join("".join(on if p else off for p in row)
                     for row in fb.rows())


def keypad_index(key_name: str) -> Optional[int]:
    """CHIP-8 key for a host key name, or None if unmapped."""
    return KEYMAP.get(key_name.lower())


# ── pygame window ─────────────────────────────────────────────────────


class FramebufferDisplay:
    """Background-threaded pygame display for the CHIP-8 frame buffer."""

    def __init__(self, sys_emu: "Chip8System", scale: int = 10,
                 title: str = "CHIP-8"):
        self.sys = sys_emu
        self.scale = max(1, scale)
        self.title = title
        self.fps = 60
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._started = threading.Event()

    # -- public API -------------------------------------------------------

    def start(self):
        """Start the display thread.  Returns once the window is open."""
        self._stop_event.clear()
        self._started.clear()
        self._thread = threading.Thread(target=self._run, daemon=True,
                                        name="chip8-display")
        self._thread.start()
        self._started.wait(timeout=5.0)
        if self._stop_event.is_set():
            self._thread.join(timeout=3.0)

    def stop(self):
        """Signal the display thread to shut down and wait for it."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=3.0)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -- internals --------------------------------------------------------

    def _run(self):
        """Main display loop (runs in background thread)."""
        import pygame

        cpu = self.sys.cpu
        fb = cpu.fb
        win_w = fb.width * self.scale
        win_h = fb.height * self.scale
        tone = False

        try:
            pygame.init()
            pygame.display.set_caption(self.title)
            screen = pygame.display.set_mode((win_w, win_h))
            clock = pygame.time.Clock()
            fb_surface = pygame.Surface((fb.width, fb.height))
            key_codes = self._key_codes(pygame)
            self._started.set()

            while not self._stop_event.is_set():
                for event in pygame.event.get():
                    if event.type == pygame.QUIT:
                        self._stop_event.set()
                        return
                    elif event.type == pygame.KEYDOWN:
                        if event.key == pygame.K_ESCAPE:
                            self._stop_event.set()
                            return
                        if event.key in key_codes:
                            cpu.keypad.press(key_codes[event.key])
                    elif event.type == pygame.KEYUP:
                        if event.key in key_codes:
                            cpu.keypad.release(key_codes[event.key])

                pygame.surfarray.blit_array(fb_surface, frame_to_rgb(fb))
                pygame.transform.scale(fb_surface, (win_w, win_h), screen)
                pygame.display.flip()

                if cpu.timers.sound_active != tone:
                    tone = cpu.timers.sound_active
                    pygame.display.set_caption(
                        f"{self.title}  [tone]" if tone else self.title)

                clock.tick(self.fps)

        except Exception as e:
            self._stop_event.set()
            print(f"\n[display] error: {e}")
        finally:
            self.sys.quit()
            pygame.quit()
            # wake start() even when the window never opened
            self._started.set()

    @staticmethod
    def _key_codes(pygame) -> dict[int, int]:
        """pygame key code -> CHIP-8 key."""
        return {pygame.key.key_code(name): key for name, key in KEYMAP.items()}


class HeadlessDisplay:
    """No-op display for tests; records frame buffer snapshots."""

    def __init__(self, sys_emu: "Chip8System"):
        self.sys = sys_emu
        self.snapshots: list[np.ndarray] = []

    def start(self):
        pass

    def stop(self):
        pass

    def snapshot(self) -> np.ndarray:
        """Capture the current frame as a (height, width) bool array."""
        data = frame_to_array(self.sys.cpu.fb)
        self.snapshots.append(data)
        return data

    def text(self) -> str:
        return render_text(self.sys.cpu.fb)

    @property
    def running(self) -> bool:
        return False
