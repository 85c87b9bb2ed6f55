"""
Pytest configuration for the CHIP-8 test suite.

    python -m pytest                 # everything
    python -m pytest -m "not display" # skip the pygame-backed tests

pygame tests run against SDL's dummy video driver, so no window opens
and no display server is needed.
"""

import os


def pytest_configure(config):
    """Register markers and point SDL at the dummy drivers."""
    config.addinivalue_line("markers",
        "display: tests that need pygame (dummy SDL video driver)")

    os.environ.setdefault("SDL_VIDEODRIVER", "dummy")
    os.environ.setdefault("SDL_AUDIODRIVER", "dummy")
    os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")
