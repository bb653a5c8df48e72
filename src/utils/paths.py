"""Production file path resolution using platformdirs.

In dev mode (not bundled), paths resolve relative to the project root.
In bundled mode, paths use platform-appropriate directories:
  macOS: ~/Library/Application Support/dreamie-exchange/
  Linux: ~/.local/share/dreamie-exchange/
"""

from pathlib import Path

import platformdirs

from src.utils.runtime import is_bundled

APP_NAME = "dreamie-exchange"


def get_data_dir() -> Path:
    """Return the directory for persistent data (DB).

    In dev mode: project root.
    In bundled mode: platform user data dir.
    """
    if is_bundled():
        return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))
    return Path(__file__).resolve().parent.parent.parent


def get_default_db_path() -> Path:
    """Return the default SQLite database file path."""
    return get_data_dir() / "dreamie.db"
