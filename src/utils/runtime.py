"""Runtime environment detection for dev vs bundled mode."""

import sys


def is_bundled() -> bool:
    """Return True when running from a frozen (PyInstaller-style) bundle."""
    return getattr(sys, "frozen", False)
