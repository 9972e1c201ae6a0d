from .paths import EnginePaths, build_engine_paths
from .runtime import get_runtime_info

__all__ = [
    "EnginePaths",
    "build_engine_paths",
    "get_runtime_info",
]
