"""
Storage providers for backup archives and manifest sidecars.

Supports:
- LocalStorage: Store in a local directory
- S3Storage: Store in an AWS S3 bucket
- RcloneStorage (see rclone.py): Any remote rclone can reach

Every provider stores files under a per-host subdirectory:
{hostname}/{BackupKey}.tar.gz[.age] and {hostname}/{BackupKey}.manifest.json

Files written by older versions sit flat at the provider root and are still
listed so both layouts stay visible.
"""

import logging
import os
import shutil
from typing import Dict, Any, Iterable, List, Optional, Protocol, runtime_checkable

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from statevault.utils.paths import safe_path, assert_safe_remote_name

logger = logging.getLogger(__name__)

BACKUP_EXTENSIONS = ('.tar.gz.age', '.tar.gz', '.manifest.json')


class StorageError(Exception):
    """Raised when a storage operation fails."""
    pass


class ProviderOperationError(StorageError):
    """Raised when push/pull/delete/list fails on a provider."""

    def __init__(self, provider: str, operation: str, target: str, detail: str):
        self.provider = provider
        self.operation = operation
        self.target = target
        super().__init__(f"{operation} failed for {target} on {provider}: {detail}")


class ProviderNotFoundError(StorageError):
    """Raised when the requested remote object does not exist."""
    pass


class VerificationError(StorageError):
    """Raised when a pushed file does not match its source."""
    pass


@runtime_checkable
class StorageProvider(Protocol):
    """Operations every storage backend implements."""

    name: str

    def push(self, local_path: str, remote_name: str) -> None:
        ...

    def pull(self, remote_name: str, local_path: str) -> None:
        ...

    def list(self) -> List[str]:
        ...

    def list_all(self) -> List[str]:
        ...

    def delete(self, remote_name: str) -> None:
        ...

    def check(self) -> Dict[str, Any]:
        ...


def is_backup_file(filename: str) -> bool:
    """Check whether a file name carries one of the managed backup extensions."""
    return filename.endswith(BACKUP_EXTENSIONS)


def sort_newest_first(names: Iterable[str]) -> List[str]:
    """
    Deduplicate and sort remote names newest first.

    Names are ordered by their basename (the BackupKey plus extension), so
    current-layout (`host/key.ext`) and legacy (`key.ext`) names interleave
    chronologically. Ties are broken by the full name.
    """
    unique = set(names)
    return sorted(unique, key=lambda n: (n.rsplit('/', 1)[-1], n), reverse=True)


class LocalStorage:
    """
    Provider storing backups in a local directory.

    Layout: {base_path}/{hostname}/{filename}, plus legacy {base_path}/{filename}
    """

    def __init__(self, base_path: str, hostname: str, name: str = 'local'):
        """
        Initialize local storage provider.

        Args:
            base_path: Base directory for backups
            hostname: Host subdirectory used by list()
            name: Destination name
        """
        self.name = name
        self.base_path = os.path.abspath(os.path.expanduser(base_path))
        self.hostname = hostname

    def _resolve(self, remote_name: str) -> str:
        assert_safe_remote_name(remote_name)
        return safe_path(self.base_path, remote_name)

    def push(self, local_path: str, remote_name: str):
        """
        Copy a file into the storage directory.

        Raises:
            StorageError: If the source is missing or the copy fails
            VerificationError: If the copied size differs from the source
        """
        dest_path = self._resolve(remote_name)

        if not os.path.isfile(local_path):
            raise StorageError(f"Source file not found: {local_path}")

        try:
            os.makedirs(os.path.dirname(dest_path), exist_ok=True)
            shutil.copyfile(local_path, dest_path)
        except PermissionError as e:
            raise ProviderOperationError(self.name, 'Push', remote_name, f"permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise ProviderOperationError(self.name, 'Push', remote_name, str(e))

        src_size = os.path.getsize(local_path)
        dest_size = os.path.getsize(dest_path)
        if src_size != dest_size:
            raise VerificationError(
                f"Push verification failed for {remote_name}: "
                f"size mismatch (src={src_size}, dest={dest_size})"
            )

    def pull(self, remote_name: str, local_path: str):
        """
        Copy a file out of the storage directory.

        Raises:
            ProviderNotFoundError: If the file does not exist
        """
        src_path = self._resolve(remote_name)

        if not os.path.isfile(src_path):
            raise ProviderNotFoundError(f"Pull failed: {remote_name} not found in {self.base_path}")

        try:
            shutil.copyfile(src_path, local_path)
        except OSError as e:
            raise ProviderOperationError(self.name, 'Pull', remote_name, str(e))

    def _backup_files_in(self, directory: str) -> List[str]:
        try:
            entries = os.listdir(directory)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise ProviderOperationError(self.name, 'List', directory, f"cannot read directory: {e}")

        return [
            entry for entry in entries
            if is_backup_file(entry) and os.path.isfile(os.path.join(directory, entry))
        ]

    def list(self) -> List[str]:
        """List this host's backups plus legacy root-level backups, newest first."""
        hosted = [
            f"{self.hostname}/{entry}"
            for entry in self._backup_files_in(os.path.join(self.base_path, self.hostname))
        ]
        return sort_newest_first(hosted + self._backup_files_in(self.base_path))

    def list_all(self) -> List[str]:
        """List backups of every host subdirectory plus the root, newest first."""
        names = self._backup_files_in(self.base_path)

        try:
            entries = os.listdir(self.base_path)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise ProviderOperationError(self.name, 'List', self.base_path, f"cannot read directory: {e}")

        for entry in entries:
            sub_dir = os.path.join(self.base_path, entry)
            if os.path.isdir(sub_dir):
                names.extend(f"{entry}/{f}" for f in self._backup_files_in(sub_dir))

        return sort_newest_first(names)

    def delete(self, remote_name: str):
        """
        Delete a file from the storage directory.

        Raises:
            ProviderNotFoundError: If the file does not exist
        """
        file_path = self._resolve(remote_name)

        if not os.path.isfile(file_path):
            raise ProviderNotFoundError(f"Delete failed: {remote_name} not found in {self.base_path}")

        try:
            os.unlink(file_path)
        except OSError as e:
            raise ProviderOperationError(self.name, 'Delete', remote_name, str(e))

    def check(self) -> Dict[str, Any]:
        """Check that the storage directory is writable."""
        if os.path.isdir(self.base_path) and os.access(self.base_path, os.W_OK):
            return {'available': True}
        return {
            'available': False,
            'error': f"Storage path not accessible: {self.base_path}"
        }


class S3Storage:
    """
    Provider storing backups in an AWS S3 bucket.

    Keys: {prefix}{hostname}/{filename}, plus legacy {prefix}{filename}
    """

    def __init__(
        self,
        bucket_name: str,
        hostname: str,
        name: str = 's3',
        prefix: str = '',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = 'us-east-1'
    ):
        """
        Initialize S3 storage provider.

        Args:
            bucket_name: S3 bucket name
            hostname: Host subdirectory used by list()
            name: Destination name
            prefix: Key prefix inside the bucket (e.g. "backups/")
            access_key: AWS access key ID (default credential chain if omitted)
            secret_key: AWS secret access key
            region: AWS region (default: us-east-1)
        """
        self.name = name
        self.bucket_name = bucket_name
        self.hostname = hostname
        self.region = region
        self.prefix = prefix if not prefix or prefix.endswith('/') else f"{prefix}/"

        client_kwargs = {'region_name': region}
        if access_key and secret_key:
            client_kwargs['aws_access_key_id'] = access_key
            client_kwargs['aws_secret_access_key'] = secret_key

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def _key(self, remote_name: str) -> str:
        assert_safe_remote_name(remote_name)
        return f"{self.prefix}{remote_name}"

    @staticmethod
    def _is_missing(error: ClientError) -> bool:
        code = error.response.get('Error', {}).get('Code', '')
        return code in ('404', 'NoSuchKey', 'NotFound')

    def _object_size(self, key: str) -> Optional[int]:
        try:
            response = self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if self._is_missing(e):
                return None
            raise
        return response['ContentLength']

    def push(self, local_path: str, remote_name: str):
        """
        Upload a file and verify the stored object size.

        Raises:
            StorageError: If the source is missing or the upload fails
            VerificationError: If the stored size differs from the source
        """
        key = self._key(remote_name)

        if not os.path.isfile(local_path):
            raise StorageError(f"Source file not found: {local_path}")

        src_size = os.path.getsize(local_path)

        try:
            self.s3_client.upload_file(local_path, self.bucket_name, key)
            dest_size = self._object_size(key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise ProviderOperationError(self.name, 'Push', remote_name, f"S3 error ({error_code}): {e}")
        except BotoCoreError as e:
            raise ProviderOperationError(self.name, 'Push', remote_name, str(e))

        if dest_size != src_size:
            raise VerificationError(
                f"Push verification failed for {remote_name}: "
                f"size mismatch (src={src_size}, dest={dest_size})"
            )

    def pull(self, remote_name: str, local_path: str):
        """
        Download a file.

        Raises:
            ProviderNotFoundError: If the object does not exist
        """
        key = self._key(remote_name)

        try:
            self.s3_client.download_file(self.bucket_name, key, local_path)
        except ClientError as e:
            if self._is_missing(e):
                raise ProviderNotFoundError(f"Pull failed: {remote_name} not found in s3://{self.bucket_name}/{self.prefix}")
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise ProviderOperationError(self.name, 'Pull', remote_name, f"S3 error ({error_code}): {e}")
        except BotoCoreError as e:
            raise ProviderOperationError(self.name, 'Pull', remote_name, str(e))

    def _list_keys(self) -> List[str]:
        names = []
        paginator = self.s3_client.get_paginator('list_objects_v2')

        try:
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self.prefix):
                for obj in page.get('Contents', []):
                    names.append(obj['Key'][len(self.prefix):])
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise ProviderOperationError(self.name, 'List', self.bucket_name, f"S3 error ({error_code}): {e}")
        except BotoCoreError as e:
            raise ProviderOperationError(self.name, 'List', self.bucket_name, str(e))

        return names

    def list(self) -> List[str]:
        """List this host's backups plus legacy root-level backups, newest first."""
        host_prefix = f"{self.hostname}/"
        names = [
            n for n in self._list_keys()
            if is_backup_file(n) and ('/' not in n or (n.startswith(host_prefix) and n.count('/') == 1))
        ]
        return sort_newest_first(names)

    def list_all(self) -> List[str]:
        """List backups of every host prefix plus the root, newest first."""
        names = [n for n in self._list_keys() if is_backup_file(n) and n.count('/') <= 1]
        return sort_newest_first(names)

    def delete(self, remote_name: str):
        """
        Delete an object.

        Raises:
            ProviderNotFoundError: If the object does not exist
        """
        key = self._key(remote_name)

        try:
            if self._object_size(key) is None:
                raise ProviderNotFoundError(f"Delete failed: {remote_name} not found in s3://{self.bucket_name}/{self.prefix}")
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise ProviderOperationError(self.name, 'Delete', remote_name, f"S3 error ({error_code}): {e}")
        except BotoCoreError as e:
            raise ProviderOperationError(self.name, 'Delete', remote_name, str(e))

    def check(self) -> Dict[str, Any]:
        """Check bucket access."""
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return {'available': True}
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                return {'available': False, 'error': f"Bucket does not exist: {self.bucket_name}"}
            elif error_code == '403':
                return {'available': False, 'error': f"Access denied to bucket: {self.bucket_name}"}
            return {'available': False, 'error': f"S3 connection test failed ({error_code}): {e}"}
        except BotoCoreError as e:
            return {'available': False, 'error': f"Failed to connect to S3: {e}"}
