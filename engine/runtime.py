import os
import platform

import fastapi
import openai
import redis
from yt_dlp.version import __version__ as ytdlp_version


def get_runtime_info():
    """Library and interpreter versions reported by ``/health``."""
    return {
        "app_version": os.environ.get("MUSICFORGE_VERSION", "1.0.0"),
        "python_version": platform.python_version(),
        "fastapi_version": fastapi.__version__,
        "openai_version": openai.__version__,
        "redis_py_version": redis.__version__,
        "yt_dlp_version": ytdlp_version,
    }
