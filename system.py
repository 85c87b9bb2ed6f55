"""
CHIP-8 System Emulator
=======================
Wires the interpreter (chip8.py) to a host:

  - loads ROM images from bytes or files
  - paces execution as a number of cycles per 60 Hz host frame
  - turns the interpreter's fatal exceptions into a StopReason

The display / keyboard side lives in display.py; this module has no
window or terminal dependencies.
"""

from __future__ import annotations
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from chip8 import Chip8, Chip8Error, HaltError, DecodeError, StackError
from devices import TIMER_HZ

# Instructions per second.  The original machine had no fixed rate;
# 500-1000 is what most programs are written against.
DEFAULT_CPU_HZ = 700
FRAME_HZ = TIMER_HZ


class StopReason(Enum):
    HALT = 'HALT'          # 0x0000 stop word
    ILLEGAL = 'ILLEGAL'    # undecodable instruction word
    STACK = 'STACK'        # call stack overflow / underflow
    QUIT = 'QUIT'          # host asked to stop (window closed)
    LIMIT = 'LIMIT'        # frame / cycle budget used up


class Chip8System:
    """One interpreter plus the host-side pacing around it.

    Usage:
        sys_emu = Chip8System(cpu_hz=700)
        sys_emu.load_rom_file('pong.ch8')
        while sys_emu.run_frame() is None:
            ...present sys_emu.cpu.fb, update sys_emu.cpu.keypad...
    """

    def __init__(self, cpu_hz: int = DEFAULT_CPU_HZ,
                 clock: Callable[[], float] = time.monotonic,
                 seed: Optional[int] = None,
                 wrap_sprites: bool = False):
        if cpu_hz <= 0:
            raise ValueError(f"cpu_hz must be positive, got {cpu_hz}")
        self.cpu_hz = cpu_hz
        self.cpu = Chip8(clock=clock, seed=seed, wrap_sprites=wrap_sprites)
        self.rom: bytes = b""
        self.rom_path: Optional[str] = None
        self.stop_reason: Optional[StopReason] = None
        self.error: Optional[Chip8Error] = None
        self.frame_count: int = 0

    @property
    def cycles_per_frame(self) -> int:
        return max(1, round(self.cpu_hz / FRAME_HZ))

    @property
    def stopped(self) -> bool:
        return self.stop_reason is not None

    # -----------------------------------------------------------------
    #  Loading
    # -----------------------------------------------------------------

    def load_rom(self, data: bytes | bytearray):
        """Reset the machine and load a program image at 0x200."""
        self.cpu.load_program(data)
        self.rom = bytes(data)
        self.rom_path = None
        self.stop_reason = None
        self.error = None
        self.frame_count = 0

    def load_rom_file(self, path: str | Path) -> int:
        """Load a ROM image from disk.  Returns its size in bytes."""
        data = Path(path).read_bytes()
        self.load_rom(data)
        self.rom_path = str(path)
        return len(data)

    def reset(self):
        """Cold restart of the currently loaded ROM."""
        self.load_rom(self.rom)

    # -----------------------------------------------------------------
    #  Execution
    # -----------------------------------------------------------------

    def step(self) -> Optional[StopReason]:
        """Execute one cycle.  Returns StopReason if the program stopped."""
        if self.stop_reason is not None:
            return self.stop_reason
        try:
            self.cpu.cycle()
        except HaltError as e:
            return self._stop(StopReason.HALT, e)
        except DecodeError as e:
            return self._stop(StopReason.ILLEGAL, e)
        except StackError as e:
            return self._stop(StopReason.STACK, e)
        return None

    def run_frame(self) -> Optional[StopReason]:
        """Execute one host frame worth of cycles."""
        for _ in range(self.cycles_per_frame):
            reason = self.step()
            if reason is not None:
                return reason
        self.frame_count += 1
        return None

    def run(self, max_frames: int = 1_000) -> StopReason:
        """Run frames back to back (no real-time pacing) until stopped."""
        for _ in range(max_frames):
            reason = self.run_frame()
            if reason is not None:
                return reason
        return StopReason.LIMIT

    def run_realtime(self, keep_running: Callable[[], bool],
                     sleep: Callable[[float], None] = time.sleep,
                     clock: Callable[[], float] = time.monotonic) -> StopReason:
        """Run one frame every 1/60 s while *keep_running()* is true."""
        period = 1.0 / FRAME_HZ
        deadline = clock()
        while keep_running():
            reason = self.run_frame()
            if reason is not None:
                return reason
            deadline += period
            delay = deadline - clock()
            if delay > 0:
                sleep(delay)
            else:
                # fell behind; don't try to catch up with a burst of frames
                deadline = clock()
        self.quit()
        return StopReason.QUIT

    def quit(self):
        if self.stop_reason is None:
            self.stop_reason = StopReason.QUIT

    def _stop(self, reason: StopReason, error: Chip8Error) -> StopReason:
        self.stop_reason = reason
        self.error = error
        return reason

    def dump_state(self) -> str:
        lines = [f"ROM: {self.rom_path or '<bytes>'} ({len(self.rom)} bytes)",
                 f"Frames: {self.frame_count}  Cycles: {self.cpu.cycle_count}"]
        if self.stop_reason is not None:
            lines.append(f"Stopped: {self.stop_reason.value}"
                         + (f" ({self.error})" if self.error else ""))
        lines.append(self.cpu.dump_regs())
        return "\n".join(lines)
