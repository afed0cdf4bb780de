"""
Cross-process backup lock.

A single lockfile under the state directory holds the PID and start time of
the process running a backup. The file is created exclusively, so only one
invocation on this host can hold it. A lock left behind by a crashed process
is reclaimed once its owner is gone and the record is old enough.
"""

import json
import logging
import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

LOCK_FILENAME = '.backup.lock'

# Auto-expire after a crash
LOCK_STALE_AFTER = timedelta(minutes=30)


class LockError(Exception):
    """Base class for lock failures."""
    pass


class LockContention(LockError):
    """Raised when another live (or racing) process holds the lock."""
    pass


class LockIOError(LockError):
    """Raised when the lock path cannot be created or read."""
    pass


def _build_record() -> Dict[str, Any]:
    return {
        'pid': os.getpid(),
        'startedAt': datetime.now(timezone.utc).isoformat()
    }


def _create_lock_file(lock_path: str, record: Dict[str, Any]):
    """
    Create the lockfile with its content in one step.

    The record is written to a private temp file in the same directory and
    hard-linked into place. `os.link` fails with FileExistsError if the lock
    already exists, so readers never observe an empty or partial lockfile.
    """
    directory = os.path.dirname(lock_path)
    fd, tmp_path = tempfile.mkstemp(prefix='.backup.lock.', dir=directory)
    try:
        with os.fdopen(fd, 'w') as f:
            json.dump(record, f)
        os.link(tmp_path, lock_path)
    finally:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass


def _read_lock_bytes(lock_path: str) -> Optional[bytes]:
    try:
        with open(lock_path, 'rb') as f:
            return f.read()
    except FileNotFoundError:
        return None
    except OSError:
        return None


def _read_lock_record(lock_path: str) -> Optional[Dict[str, Any]]:
    """
    Read the current lock record.

    Returns:
        Parsed record, or None if the content is missing or corrupt
    """
    try:
        with open(lock_path, 'r') as f:
            raw = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError):
        return None

    if not isinstance(raw, dict):
        return None
    pid = raw.get('pid')
    started_at = raw.get('startedAt')
    if not isinstance(pid, int) or isinstance(pid, bool) or not isinstance(started_at, str):
        return None

    try:
        started = datetime.fromisoformat(started_at.replace('Z', '+00:00'))
    except ValueError:
        return None
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)

    return {'pid': pid, 'startedAt': started}


def is_process_alive(pid: int) -> bool:
    """
    Check a PID with signal 0.

    A PermissionError means the process exists but belongs to another user,
    which still counts as alive. Only ProcessLookupError means dead.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def is_lock_stale(lock_path: str, now: datetime = None) -> bool:
    """
    Decide whether an existing lock can be reclaimed.

    A lock is stale when its content is corrupt, or when its owner is dead
    and the record is at least LOCK_STALE_AFTER old.
    """
    record = _read_lock_record(lock_path)
    if record is None:
        return True

    if is_process_alive(record['pid']):
        return False

    now = now or datetime.now(timezone.utc)
    return now - record['startedAt'] >= LOCK_STALE_AFTER


def get_lock_path(state_dir: str) -> str:
    """Return the lockfile path inside a state directory."""
    return os.path.join(state_dir, LOCK_FILENAME)


class LockHandle:
    """
    Handle to an acquired backup lock.

    Usable as a context manager so the lock is released on every exit path.
    """

    def __init__(self, lock_path: str, pid: int):
        self.lock_path = lock_path
        self.pid = pid
        self.released = False

    def release(self):
        """Remove the lockfile. Best effort, never raises."""
        if self.released:
            return
        self.released = True
        try:
            os.unlink(self.lock_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to release backup lock {self.lock_path}: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    def __repr__(self):
        return f'<LockHandle {self.lock_path} pid={self.pid}>'


def _claim_stale_lock(lock_path: str, observed: Optional[bytes], contention_msg: str):
    """
    Remove a lock judged stale, but only if it is still the same lock.

    The lockfile is renamed to a private claim path first, so no other
    acquirer can touch it. If the claimed content differs from what was
    judged stale, someone reclaimed it in between: the file is linked back
    and LockContention is raised.
    """
    claim_path = f"{lock_path}.claim.{os.getpid()}.{uuid.uuid4().hex}"
    try:
        os.rename(lock_path, claim_path)
    except FileNotFoundError:
        return
    except OSError as e:
        raise LockIOError(f"Cannot remove stale backup lock at {lock_path}: {e}")

    try:
        if _read_lock_bytes(claim_path) == observed:
            return
        try:
            os.link(claim_path, lock_path)
        except FileExistsError:
            logger.warning(f"Backup lock at {lock_path} was recreated while restoring a claimed lock")
        except OSError as e:
            raise LockIOError(f"Cannot restore backup lock at {lock_path}: {e}")
        raise LockContention(contention_msg)
    finally:
        try:
            os.unlink(claim_path)
        except FileNotFoundError:
            pass


def acquire_lock(lock_path: Optional[str] = None) -> LockHandle:
    """
    Acquire the exclusive backup lock.

    At most two creation attempts are made: the initial one, and one retry
    after reclaiming a stale lock. If the retry also finds a lock, another
    process won the reclaim race and LockContention is raised.

    Args:
        lock_path: Path of the lockfile (default: the configured state dir)

    Returns:
        LockHandle for the acquired lock

    Raises:
        LockContention: If another backup holds the lock
        LockIOError: If the lock path cannot be created
    """
    if lock_path is None:
        from statevault.config import Config
        lock_path = get_lock_path(Config.STATE_DIR)

    try:
        os.makedirs(os.path.dirname(lock_path), exist_ok=True)
    except OSError as e:
        raise LockIOError(f"Cannot create backup lock directory for {lock_path}: {e}")

    record = _build_record()
    contention_msg = (
        f"Another backup is already running. "
        f"If not, delete {lock_path} manually and retry."
    )

    try:
        _create_lock_file(lock_path, record)
        return LockHandle(lock_path, record['pid'])
    except FileExistsError:
        pass
    except OSError as e:
        raise LockIOError(f"Cannot create backup lock at {lock_path}: {e}")

    observed = _read_lock_bytes(lock_path)
    if not is_lock_stale(lock_path):
        raise LockContention(contention_msg)

    logger.warning(f"Reclaiming stale backup lock at {lock_path}")
    _claim_stale_lock(lock_path, observed, contention_msg)

    try:
        _create_lock_file(lock_path, record)
    except FileExistsError:
        raise LockContention(contention_msg)
    except OSError as e:
        raise LockIOError(f"Cannot create backup lock at {lock_path}: {e}")

    return LockHandle(lock_path, record['pid'])
