"""
Build storage providers from the configured destinations.

Destination config (one entry per name):
- {"path": "/mnt/backups"}                      -> LocalStorage
- {"remote": "gdrive:statevault/"}              -> RcloneStorage
- {"bucket": "my-bucket", "prefix": "...", ...} -> S3Storage
"""

from typing import Dict, Any, List, Optional

from .storage import LocalStorage, S3Storage, StorageProvider
from .rclone import RcloneStorage


class UnknownDestinationError(ValueError):
    """Raised when a destination name is not configured."""
    pass


def build_provider(name: str, dest: Dict[str, Any], hostname: str) -> StorageProvider:
    """
    Create a single provider for a destination.

    Raises:
        ValueError: If the destination config names no backend
        TypeError: If the built object does not implement StorageProvider
    """
    if dest.get('path'):
        provider = LocalStorage(dest['path'], hostname=hostname, name=name)
    elif dest.get('remote'):
        provider = RcloneStorage(dest['remote'], hostname=hostname, name=name)
    elif dest.get('bucket'):
        provider = S3Storage(
            bucket_name=dest['bucket'],
            hostname=hostname,
            name=name,
            prefix=dest.get('prefix', ''),
            access_key=dest.get('access_key'),
            secret_key=dest.get('secret_key'),
            region=dest.get('region', 'us-east-1')
        )
    else:
        raise ValueError(f'Destination "{name}" has neither "path", "remote" nor "bucket" configured')

    if not isinstance(provider, StorageProvider):
        raise TypeError(f'Destination "{name}" does not implement the storage provider interface')

    return provider


def create_storage_providers(
    destinations: Dict[str, Dict[str, Any]],
    hostname: str,
    destination: Optional[str] = None
) -> List[StorageProvider]:
    """
    Create providers for the configured destinations.

    Args:
        destinations: Mapping of destination name to destination config
        hostname: Host subdirectory name for the current layout
        destination: Only build this destination (default: all)

    Returns:
        List of providers

    Raises:
        UnknownDestinationError: If `destination` is not configured
    """
    if destination is not None:
        if destination not in destinations:
            available = ', '.join(destinations.keys()) or '(none)'
            raise UnknownDestinationError(f'Destination "{destination}" not found in config. Available: {available}')
        return [build_provider(destination, destinations[destination], hostname)]

    return [build_provider(name, dest, hostname) for name, dest in destinations.items()]
