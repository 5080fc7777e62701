from __future__ import annotations

import importlib.util
import os


def resolve_engine_script(path_or_module: str) -> str:
    """Resolve the engine entry point to a script path.

    - If ``path_or_module`` points to an existing .py file, use it as is.
    - Otherwise treat it as a module path and locate its source file.
    """
    if os.path.exists(path_or_module) and path_or_module.endswith(".py"):
        return os.path.abspath(path_or_module)
    try:
        spec = importlib.util.find_spec(path_or_module)
    except (ImportError, ValueError) as exc:
        raise FileNotFoundError(f"Unable to locate engine script: {path_or_module}") from exc
    if spec is None or spec.origin is None or not spec.origin.endswith(".py"):
        raise FileNotFoundError(f"Unable to locate engine script: {path_or_module}")
    return spec.origin
