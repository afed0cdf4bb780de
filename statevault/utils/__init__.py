"""Shared helpers for statevault."""

from .concurrency import map_with_concurrency
from .paths import PathTraversalError, safe_path, assert_safe_remote_name, make_tmp_dir

__all__ = [
    'map_with_concurrency',
    'PathTraversalError',
    'safe_path',
    'assert_safe_remote_name',
    'make_tmp_dir'
]
