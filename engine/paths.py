"""Filesystem locations for the SQLite store and log files.

Containers keep state under ``/data`` and ``/logs``; local checkouts use
``<repo>/data``. ``MUSICFORGE_*`` variables override either.
"""

import os
from dataclasses import dataclass
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
LOG_FILE_NAME = "musicforge.log"


def _in_container():
    return os.path.exists("/.dockerenv") or os.path.isdir("/data")


def _env_path(name, default):
    raw = (os.environ.get(name) or "").strip()
    return Path(raw or default).resolve()


if _in_container():
    DATA_DIR = _env_path("MUSICFORGE_DATA_DIR", "/data")
    LOG_DIR = _env_path("MUSICFORGE_LOG_DIR", "/logs")
else:
    DATA_DIR = _env_path("MUSICFORGE_DATA_DIR", PROJECT_ROOT / "data")
    LOG_DIR = _env_path("MUSICFORGE_LOG_DIR", DATA_DIR / "logs")
DB_PATH = _env_path("MUSICFORGE_DB_PATH", DATA_DIR / "musicforge.sqlite")


@dataclass(frozen=True)
class EnginePaths:
    log_dir: str
    db_path: str

    @property
    def log_file(self):
        return os.path.join(self.log_dir, LOG_FILE_NAME)


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def build_engine_paths(db_path=None):
    """Resolve paths for this process and create their parent directories."""
    resolved_db = Path(db_path).resolve() if db_path else DB_PATH
    ensure_dir(resolved_db.parent)
    ensure_dir(LOG_DIR)
    return EnginePaths(log_dir=str(LOG_DIR), db_path=str(resolved_db))
