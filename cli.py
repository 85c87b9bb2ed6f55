#!/usr/bin/env python3
"""
CHIP-8 Emulator / CLI
======================
Command-line entry point: loads a ROM image and runs it either in a
pygame window (default) or headless for a fixed number of frames.

Usage:
  python cli.py ROM [--hz N] [--scale N] [--wrap] [--seed N]
                    [--headless] [--frames N] [--text]

Exit status: 0 when the program halts or the window is closed, 1 on an
illegal instruction or stack fault, 2 when the ROM can't be loaded.
"""

from __future__ import annotations
import argparse
import sys
from typing import Optional

from chip8 import decode
from system import Chip8System, StopReason, DEFAULT_CPU_HZ
from display import FramebufferDisplay, render_text


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chip8",
        description="CHIP-8 virtual machine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Keys:  1 2 3 4 / Q W E R / A S D F / Z X C V map to the\n"
            "       hex keypad 1 2 3 C / 4 5 6 D / 7 8 9 E / A 0 B F.\n"
            "       Esc closes the window."
        ),
    )
    parser.add_argument("rom", help="Program image to load at 0x200")
    parser.add_argument("--hz", type=int, default=DEFAULT_CPU_HZ, metavar="N",
                        help=f"Instructions per second (default: {DEFAULT_CPU_HZ})")
    parser.add_argument("--scale", type=int, default=10, metavar="N",
                        help="Window pixels per CHIP-8 pixel (default: 10)")
    parser.add_argument("--wrap", action="store_true",
                        help="Wrap sprites around the screen edges instead of clipping")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed for the RND instruction")
    parser.add_argument("--headless", action="store_true",
                        help="Run without a window (use with --frames)")
    parser.add_argument("--frames", type=int, default=600, metavar="N",
                        help="Frames to run in headless mode (default: 600)")
    parser.add_argument("--text", action="store_true",
                        help="Print the final frame buffer as text")
    return parser


def report(sys_emu: Chip8System, reason: StopReason) -> int:
    """Print the stop condition.  Returns the process exit status."""
    if reason in (StopReason.ILLEGAL, StopReason.STACK):
        cpu = sys_emu.cpu
        print(f"Error: {sys_emu.error}", file=sys.stderr)
        if reason == StopReason.STACK:
            print(f"  {cpu.pc:#05x}: {decode(cpu.fetch()).mnemonic()}",
                  file=sys.stderr)
        print(cpu.dump_regs(), file=sys.stderr)
        return 1
    if reason == StopReason.HALT:
        print(f"Program halted after {sys_emu.cpu.cycle_count} cycles.")
    elif reason == StopReason.LIMIT:
        print(f"Stopped after {sys_emu.frame_count} frames.")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        sys_emu = Chip8System(cpu_hz=args.hz, seed=args.seed,
                              wrap_sprites=args.wrap)
        size = sys_emu.load_rom_file(args.rom)
    except (OSError, ValueError) as e:
        print(f"Error loading '{args.rom}': {e}", file=sys.stderr)
        return 2
    print(f"Loaded {size} bytes from '{args.rom}' at 0x200")

    if args.headless:
        reason = sys_emu.run(max_frames=args.frames)
    else:
        try:
            import pygame  # noqa: F401
        except ImportError as e:
            print(f"[display] pygame not available: {e}", file=sys.stderr)
            print("[display] Install with: pip install pygame",
                  file=sys.stderr)
            return 2
        display = FramebufferDisplay(sys_emu, scale=args.scale)
        display.start()
        if not display.running:
            print("[display] could not open a window", file=sys.stderr)
            return 2
        print(f"[display] window opened (scale={args.scale}x)")
        try:
            reason = sys_emu.run_realtime(lambda: display.running)
        except KeyboardInterrupt:
            print("\nInterrupted.")
            reason = StopReason.QUIT
        finally:
            display.stop()

    if args.text:
        print(render_text(sys_emu.cpu.fb))
    return report(sys_emu, reason)


if __name__ == "__main__":
    sys.exit(main())
