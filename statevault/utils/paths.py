"""
Path safety helpers.

Every name that comes from a manifest, a remote listing or an API caller is
resolved through these functions before it touches the filesystem or an
external process argument list.
"""

import os
import tempfile


class PathTraversalError(ValueError):
    """Raised when a path or remote name escapes its base directory."""
    pass


def safe_path(base: str, relative: str) -> str:
    """
    Resolve `relative` against `base` and verify it stays inside `base`.

    The check uses a path separator boundary, so `/data/base-evil` is not
    accepted as a descendant of `/data/base`.

    Args:
        base: Base directory
        relative: Caller-supplied relative name

    Returns:
        Absolute resolved path (equal to base or strictly under it)

    Raises:
        PathTraversalError: If the resolved path escapes base
    """
    if '\0' in relative:
        raise PathTraversalError(f'Path traversal detected: "{relative!r}" contains a NUL byte')

    resolved_base = os.path.abspath(base)
    resolved_path = os.path.abspath(os.path.join(resolved_base, relative))

    if resolved_path != resolved_base and not resolved_path.startswith(resolved_base + os.sep):
        raise PathTraversalError(f'Path traversal detected: "{relative}" escapes "{base}"')

    return resolved_path


def assert_safe_remote_name(remote_name: str) -> None:
    """
    Reject remote names that are unsafe to hand to an external tool.

    Forward slashes are allowed since they separate the hostname directory
    from the file name.

    Raises:
        PathTraversalError: If the name is empty, absolute, contains a `..`
            segment, a backslash or a NUL byte
    """
    if (
        not remote_name
        or remote_name.startswith('/')
        or '..' in remote_name.split('/')
        or '\\' in remote_name
        or '\0' in remote_name
    ):
        raise PathTraversalError(f'Unsafe remote name rejected: "{remote_name!r}"')


def make_tmp_dir(prefix: str, base_dir: str = None) -> str:
    """
    Create a private temporary directory (mode 0o700).

    Decrypted archives and staged manifests live here, so other local users
    must not be able to read them.
    """
    path = tempfile.mkdtemp(prefix=prefix, dir=base_dir)
    os.chmod(path, 0o700)
    return path
