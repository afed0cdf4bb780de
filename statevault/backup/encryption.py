"""
age encryption helpers.

Archives are encrypted by streaming the plaintext tarball through an
`age -e -r <recipient>` process. Only the recipient public key is needed for
encryption; the identity file is needed for decryption during restore.
"""

import hashlib
import logging
import os
import shutil
import subprocess
import sys
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, Any, IO, List, Optional

logger = logging.getLogger(__name__)

AGE_BINARY = 'age'
AGE_KEYGEN_BINARY = 'age-keygen'

ENCRYPT_TIMEOUT_SECONDS = 5 * 60
KEY_FILE_PERMISSIONS = 0o600


class EncryptionError(Exception):
    """Raised when a key cannot be read or an age operation fails."""
    pass


class SubprocessSpawnError(EncryptionError):
    """Raised when an external tool cannot be started."""
    pass


class EncryptionProcessError(SubprocessSpawnError):
    """Raised when the age process fails at the process level (spawn or I/O)."""
    pass


class SubprocessExitError(EncryptionError):
    """Raised when an external tool exits with a non-zero code."""

    def __init__(self, message: str, returncode: Optional[int], stderr: str = ''):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


def get_install_hint() -> str:
    if sys.platform == 'darwin':
        return 'brew install age'
    return 'sudo apt install age'


def parse_public_key(text: str) -> Optional[str]:
    """
    Find the age public key in key-file content or age-keygen output.

    Accepts both "# public key: age1..." (key file comment) and
    "Public key: age1..." (age-keygen diagnostic line).
    """
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith('# public key: '):
            return stripped[len('# public key: '):].strip() or None
        if stripped.startswith('Public key: '):
            return stripped[len('Public key: '):].strip() or None
    return None


def read_public_key(key_path: str) -> str:
    """
    Read the recipient public key from an age key file.

    Raises:
        EncryptionError: If the file is unreadable or has no public key
    """
    try:
        with open(key_path, 'r') as f:
            content = f.read()
    except OSError as e:
        raise EncryptionError(f"Failed to read key file {key_path}: {e}")

    public_key = parse_public_key(content)
    if not public_key:
        raise EncryptionError(f"No public key found in key file: {key_path}")
    return public_key


def get_key_id(key_path: str) -> str:
    """Return the first 16 hex characters of the SHA-256 of the public key."""
    public_key = read_public_key(key_path)
    return hashlib.sha256(public_key.encode()).hexdigest()[:16]


class EncryptStream:
    """
    A running `age -e` process exposed as two byte channels and a completion.

    Write plaintext into `stdin`, read ciphertext from `stdout`, and always
    call `wait()` (or check `completion`): a clean pipe does not mean the
    encryption succeeded. `completion` is resolved exactly once, after the
    process exit status is known.
    """

    def __init__(self, process: Optional[subprocess.Popen], timeout: float = ENCRYPT_TIMEOUT_SECONDS):
        self.process = process
        self.stdin = process.stdin if process else None
        self.stdout = process.stdout if process else None
        self.completion = Future()
        self.timed_out = False
        self.timeout = timeout

        if process is None:
            return

        self._timer = threading.Timer(timeout, self._kill)
        self._timer.daemon = True
        self._timer.start()

        self._waiter = threading.Thread(target=self._wait_for_exit, name='age-waiter', daemon=True)
        self._waiter.start()

    @classmethod
    def spawn_failed(cls, error: OSError) -> 'EncryptStream':
        """Stream for an age process that never started. Its completion is already failed."""
        stream = cls(None)
        stream.completion.set_exception(EncryptionProcessError(f"age encryption process error: {error}"))
        return stream

    def _kill(self):
        self.timed_out = True
        logger.error(f"age encryption timed out after {self.timeout}s, killing pid {self.process.pid}")
        self.process.kill()

    def _wait_for_exit(self):
        try:
            stderr = self.process.stderr.read() if self.process.stderr else b''
            returncode = self.process.wait()
        except OSError as e:
            self.completion.set_exception(EncryptionProcessError(f"age encryption process error: {e}"))
            return
        finally:
            self._timer.cancel()

        stderr_text = stderr.decode('utf-8', errors='replace').strip()

        if returncode == 0:
            self.completion.set_result(None)
            return

        detail = f": {stderr_text}" if stderr_text else ''
        if self.timed_out:
            message = f"age encryption timed out after {self.timeout}s (exit {returncode}){detail}"
        else:
            message = f"age encryption failed (exit {returncode}){detail}"
        self.completion.set_exception(SubprocessExitError(message, returncode, stderr_text))

    def wait(self, timeout: Optional[float] = None):
        """
        Block until age exits.

        Raises:
            SubprocessExitError: If age exited non-zero or was killed
            EncryptionProcessError: If waiting on the process failed
        """
        return self.completion.result(timeout)


def create_encrypt_stream(key_path: str, timeout: float = ENCRYPT_TIMEOUT_SECONDS) -> EncryptStream:
    """
    Spawn `age -e -r <public key>` reading plaintext from stdin.

    Args:
        key_path: Path to the age key file (its public key comment is used)
        timeout: Hard timeout in seconds after which age is killed

    Returns:
        EncryptStream wrapping the process

    Raises:
        EncryptionError: If the key file is unreadable or has no public key

    If age cannot be started, the returned stream has no channels and its
    completion fails with EncryptionProcessError.
    """
    public_key = read_public_key(key_path)

    try:
        process = subprocess.Popen(
            [AGE_BINARY, '-e', '-r', public_key],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE
        )
    except OSError as e:
        logger.error(f"Failed to start age: {e}")
        return EncryptStream.spawn_failed(e)

    return EncryptStream(process, timeout=timeout)


def encrypt_to_file(key_path: str, output_path: str, write_plaintext: Callable[[IO[bytes]], None]):
    """
    Encrypt a plaintext stream into `output_path`.

    `write_plaintext` receives age's stdin and writes the plaintext into it.
    Ciphertext is copied to the output file on a separate thread so neither
    pipe can fill up and deadlock the pipeline.

    Raises:
        EncryptionError: If age fails (the partial output file is removed)
    """
    stream = create_encrypt_stream(key_path)
    if stream.process is None:
        stream.wait()
    write_error = None

    try:
        with open(output_path, 'wb') as out, ThreadPoolExecutor(max_workers=1) as copier:
            copy_future = copier.submit(shutil.copyfileobj, stream.stdout, out)
            try:
                write_plaintext(stream.stdin)
            except BrokenPipeError as e:
                # age exited early; its exit status carries the real reason
                write_error = e
            finally:
                try:
                    stream.stdin.close()
                except BrokenPipeError:
                    pass
            copy_future.result()

        stream.wait()
        if write_error is not None:
            raise EncryptionError(f"age closed its input early: {write_error}")
    except BaseException:
        if stream.process.poll() is None:
            stream.process.kill()
        try:
            os.remove(output_path)
        except FileNotFoundError:
            pass
        raise


def _run(args: List[str], timeout: float) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(args, capture_output=True, text=True, timeout=timeout, check=False)
    except FileNotFoundError as e:
        raise SubprocessSpawnError(f"{args[0]} executable not found: {e}")
    except subprocess.TimeoutExpired:
        raise SubprocessExitError(f"{args[0]} timed out after {timeout}s", None)


def decrypt_file(input_path: str, output_path: str, key_path: str, timeout: float = ENCRYPT_TIMEOUT_SECONDS):
    """
    Decrypt `input_path` to `output_path` with the identity in `key_path`.

    Runs: age -d -i <key_path> -o <output_path> <input_path>

    Raises:
        SubprocessSpawnError: If age is not installed
        SubprocessExitError: If age exits non-zero
    """
    result = _run([AGE_BINARY, '-d', '-i', key_path, '-o', output_path, input_path], timeout)
    if result.returncode != 0:
        stderr = (result.stderr or '').strip()
        detail = f"\n  stderr: {stderr}" if stderr else ''
        raise SubprocessExitError(
            f"Failed to decrypt {input_path} (exit {result.returncode}){detail}",
            result.returncode,
            stderr
        )


def generate_key(key_path: str) -> str:
    """
    Generate a new age key pair at `key_path`.

    The key file is created exclusively with 0o600 permissions, so an existing
    key is never overwritten.

    Returns:
        The new public key

    Raises:
        EncryptionError: If the key cannot be generated or the file exists
    """
    key_dir = os.path.dirname(key_path)
    if key_dir:
        os.makedirs(key_dir, exist_ok=True)

    result = _run([AGE_KEYGEN_BINARY], ENCRYPT_TIMEOUT_SECONDS)
    if result.returncode != 0:
        raise SubprocessExitError(
            f"Failed to generate age key (exit {result.returncode}): {result.stderr.strip()}",
            result.returncode,
            result.stderr.strip()
        )

    public_key = parse_public_key(result.stdout) or parse_public_key(result.stderr or '')
    if not public_key:
        raise EncryptionError(f"age-keygen did not output a public key. stdout: {result.stdout}")

    try:
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, KEY_FILE_PERMISSIONS)
    except FileExistsError:
        raise EncryptionError(f"Key file already exists at {key_path}. Remove it first or choose a different path.")
    except OSError as e:
        raise EncryptionError(f"Failed to write key file {key_path}: {e}")

    with os.fdopen(fd, 'w') as f:
        f.write(result.stdout)

    return public_key


def check_age_installed() -> Dict[str, Any]:
    """
    Check whether the age CLI is installed.

    Returns:
        Prerequisite check dict with 'name', 'available' and optionally
        'version', 'error' and 'install_hint'
    """
    try:
        result = _run([AGE_BINARY, '--version'], 30)
    except EncryptionError as e:
        return {'name': 'age', 'available': False, 'error': str(e), 'install_hint': get_install_hint()}

    if result.returncode != 0:
        return {
            'name': 'age',
            'available': False,
            'error': (result.stderr or '').strip() or f"exit {result.returncode}",
            'install_hint': get_install_hint()
        }

    check = {'name': 'age', 'available': True}
    version = result.stdout.strip()
    if version:
        check['version'] = version
    return check
