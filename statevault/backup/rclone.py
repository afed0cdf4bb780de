"""
rclone-backed storage provider.

Supports any remote rclone can reach (S3, Google Drive, B2, SFTP, ...).
Each operation runs one rclone process with a hard timeout. Remote names are
validated before they are interpolated into the argument list, because rclone
receives the full remote string verbatim.
"""

import logging
import re
import subprocess
import sys
from typing import Dict, Any, List, Optional

from statevault.utils.paths import assert_safe_remote_name
from .storage import (
    StorageError,
    ProviderOperationError,
    ProviderNotFoundError,
    is_backup_file,
    sort_newest_first
)

logger = logging.getLogger(__name__)

RCLONE_BINARY = 'rclone'
RCLONE_TIMEOUT_SECONDS = 2 * 60

# rclone exit codes: 3 = directory not found, 4 = file not found
RCLONE_NOT_FOUND_CODES = (3, 4)

_VERSION_RE = re.compile(r'rclone v([\d.]+)')


class RcloneError(StorageError):
    """Raised when an rclone process cannot be run or exits non-zero."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ''):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


def get_install_hint() -> str:
    if sys.platform == 'darwin':
        return 'brew install rclone'
    return 'sudo apt install rclone'


def run_rclone(args: List[str], timeout: int = RCLONE_TIMEOUT_SECONDS) -> str:
    """
    Run rclone with the given arguments.

    Args:
        args: Arguments after the binary name
        timeout: Hard timeout in seconds

    Returns:
        Captured stdout

    Raises:
        RcloneError: If rclone is missing, times out or exits non-zero
    """
    command = args[0] if args else 'command'

    try:
        result = subprocess.run(
            [RCLONE_BINARY] + list(args),
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False
        )
    except FileNotFoundError as e:
        raise RcloneError(f"rclone {command} failed: rclone executable not found ({e})")
    except subprocess.TimeoutExpired:
        raise RcloneError(f"rclone {command} timed out after {timeout}s")
    except OSError as e:
        raise RcloneError(f"rclone {command} failed to start: {e}")

    if result.returncode != 0:
        stderr = (result.stderr or '').strip()
        detail = f": {stderr}" if stderr else ''
        raise RcloneError(
            f"rclone {command} failed (exit {result.returncode}){detail}",
            returncode=result.returncode,
            stderr=stderr
        )

    return result.stdout


def _is_not_found(error: RcloneError) -> bool:
    if error.returncode in RCLONE_NOT_FOUND_CODES:
        return True
    return 'not found' in error.stderr.lower()


def _parse_list_output(stdout: str) -> List[str]:
    return [line.strip() for line in stdout.splitlines() if line.strip()]


class RcloneStorage:
    """
    Provider that shells out to rclone.

    Layout: {remote}{hostname}/{filename}, plus legacy {remote}{filename}
    """

    def __init__(self, remote: str, hostname: str, name: str):
        """
        Initialize rclone storage provider.

        Args:
            remote: rclone remote including the trailing path,
                e.g. "gdrive:statevault-backups/"
            hostname: Host subdirectory used by list()
            name: Destination name
        """
        self.name = name
        self.hostname = hostname
        self.remote_base = remote if remote.endswith(('/', ':')) else f"{remote}/"

    def _target(self, remote_name: str) -> str:
        assert_safe_remote_name(remote_name)
        return f"{self.remote_base}{remote_name}"

    def push(self, local_path: str, remote_name: str):
        """Upload a file with `rclone copyto`."""
        target = self._target(remote_name)
        try:
            run_rclone(['copyto', local_path, target])
        except RcloneError as e:
            raise ProviderOperationError(self.name, 'Push', remote_name, str(e))

    def pull(self, remote_name: str, local_path: str):
        """
        Download a file with `rclone copyto`.

        Raises:
            ProviderNotFoundError: If the remote object does not exist
        """
        target = self._target(remote_name)
        try:
            run_rclone(['copyto', target, local_path])
        except RcloneError as e:
            if _is_not_found(e):
                raise ProviderNotFoundError(f"Pull failed: {remote_name} not found in {self.remote_base}: {e}")
            raise ProviderOperationError(self.name, 'Pull', remote_name, str(e))

    def _lsf(self, args: List[str]) -> List[str]:
        """List files, treating a missing directory as empty."""
        try:
            return _parse_list_output(run_rclone(['lsf'] + args))
        except RcloneError as e:
            if _is_not_found(e):
                return []
            raise ProviderOperationError(self.name, 'List', args[0], str(e))

    def list(self) -> List[str]:
        """List this host's backups plus legacy root-level backups, newest first."""
        hosted_base = f"{self.remote_base}{self.hostname}/"

        hosted = [
            f"{self.hostname}/{f}"
            for f in self._lsf([hosted_base, '--files-only'])
            if is_backup_file(f)
        ]
        root = [
            f for f in self._lsf([self.remote_base, '--files-only'])
            if '/' not in f and is_backup_file(f)
        ]
        return sort_newest_first(hosted + root)

    def list_all(self) -> List[str]:
        """List backups of every host subdirectory plus the root, newest first."""
        names = self._lsf([self.remote_base, '--recursive', '--files-only', '--max-depth', '2'])
        return sort_newest_first(n for n in names if is_backup_file(n) and n.count('/') <= 1)

    def delete(self, remote_name: str):
        """
        Delete a file with `rclone deletefile`.

        Raises:
            ProviderNotFoundError: If the remote object does not exist
        """
        target = self._target(remote_name)
        try:
            run_rclone(['deletefile', target])
        except RcloneError as e:
            if _is_not_found(e):
                raise ProviderNotFoundError(f"Delete failed: {remote_name} not found in {self.remote_base}: {e}")
            raise ProviderOperationError(self.name, 'Delete', remote_name, str(e))

    def check(self) -> Dict[str, Any]:
        """Check that the remote can be listed."""
        try:
            run_rclone(['lsd', self.remote_base])
            return {'available': True}
        except RcloneError as e:
            return {'available': False, 'error': str(e)}


def check_rclone_installed() -> Dict[str, Any]:
    """
    Check whether rclone is installed.

    Returns:
        Prerequisite check dict with 'name', 'available' and optionally
        'version', 'error' and 'install_hint'
    """
    try:
        stdout = run_rclone(['version'])
    except RcloneError as e:
        return {
            'name': 'rclone',
            'available': False,
            'error': str(e),
            'install_hint': get_install_hint()
        }

    check = {'name': 'rclone', 'available': True, 'install_hint': get_install_hint()}
    match = _VERSION_RE.search(stdout)
    if match:
        check['version'] = match.group(1)
    return check
