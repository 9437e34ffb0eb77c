"""
Path predicates for Supabase edge functions.

Layout: supabase/functions/{name}/... holds one function; supabase/functions/_shared/
holds code imported by any function.
"""

from __future__ import annotations

import re

FUNCTIONS_PREFIX = "supabase/functions/"
SHARED_PREFIX = "supabase/functions/_shared/"

_FUNCTION_NAME = re.compile(r"^supabase/functions/([^/]+)")


def is_server_function(file_path: str) -> bool:
    """A path inside a function directory (shared modules excluded)."""
    return file_path.startswith(FUNCTIONS_PREFIX) and not file_path.startswith(SHARED_PREFIX)


def is_shared_server_module(file_path: str) -> bool:
    return file_path.startswith(SHARED_PREFIX)


def extract_function_name_from_path(file_path: str) -> str:
    """
    "supabase/functions/hello/lib/utils.ts" -> "hello".

    Raises:
        ValueError: If the path is not under a function directory, or the
            directory name starts with "_".
    """
    normalized = file_path.replace("\\", "/")
    match = _FUNCTION_NAME.match(normalized)
    if not match:
        raise ValueError(
            f"Invalid Supabase function path: {file_path}. "
            "Expected format: supabase/functions/{functionName}/..."
        )
    name = match.group(1)
    if name.startswith("_"):
        raise ValueError(
            f'Invalid Supabase function path: {file_path}. '
            'Function names starting with "_" are reserved for special directories.'
        )
    return name


__all__ = [
    "FUNCTIONS_PREFIX",
    "SHARED_PREFIX",
    "extract_function_name_from_path",
    "is_server_function",
    "is_shared_server_module",
]
