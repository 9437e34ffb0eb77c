"""
Path helpers for resolving tag paths inside an app directory.
"""

from __future__ import annotations

from pathlib import Path


def safe_join(base: str | Path, relative: str) -> Path:
    """
    Join a model-supplied relative path onto base.

    Raises:
        ValueError: If the result would escape base (absolute paths, '..').
    """
    base_path = Path(base).resolve()
    candidate = (base_path / relative).resolve()
    if candidate != base_path and base_path not in candidate.parents:
        raise ValueError(f"Unsafe path outside of app directory: {relative}")
    return candidate


__all__ = ["safe_join"]
