"""
Backup index.

Discovers backups across every configured provider by reading manifest
sidecars, merges backups that live on several providers into one entry and
caches the result on disk. The cache is derived data: it can be deleted at
any time and is rebuilt on the next read.

Each provider also keeps a remote index at its root, mapping every sidecar
name to its metadata. Sidecars listed there are not pulled again, so a
refresh of an unchanged provider costs one listing and one download.
"""

import json
import logging
import os
import shutil
from datetime import datetime, timedelta, timezone
from typing import List, Dict, Any, Optional

from statevault.utils import map_with_concurrency, make_tmp_dir, safe_path
from .manifest import MANIFEST_SUFFIX, backup_key_from_name, build_archive_name, parse_manifest_metadata
from .storage import ProviderNotFoundError, StorageProvider

logger = logging.getLogger(__name__)

INDEX_FILENAME = 'backup-index.json'
INDEX_CACHE_TTL = timedelta(minutes=5)

# Per-provider metadata of every sidecar, stored at the provider root
REMOTE_INDEX_NAME = 'statevault-index.json'

# Providers listed in parallel
PROVIDER_CONCURRENCY = 4


def get_index_path(state_dir: str) -> str:
    """Return the index cache path inside a state directory."""
    return os.path.join(state_dir, INDEX_FILENAME)


def _is_backup_index(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and isinstance(value.get('lastRefreshed'), str)
        and isinstance(value.get('entries'), list)
    )


def _is_metadata(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and isinstance(value.get('timestamp'), str)
        and isinstance(value.get('encrypted'), bool)
        and isinstance(value.get('fileCount'), int)
        and isinstance(value.get('size'), int)
        and (value.get('appVersion') is None or isinstance(value.get('appVersion'), str))
    )


def _parse_timestamp(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class IndexManager:
    """
    Builds and caches the merged backup index.

    Index format:
    {
        'lastRefreshed': ISO-8601,
        'entries': [
            {
                'key': '2024-01-15T12-30-00',
                'timestamp': ISO-8601,
                'filename': '2024-01-15T12-30-00.tar.gz.age',
                'encrypted': bool,
                'fileCount': int,
                'size': int,
                'appVersion': str or None,
                'providers': ['local', 'gdrive'],
                'locations': {'local': 'host/2024-...manifest.json', ...}
            },
            ...
        ],
        'errors': ['gdrive: listing failed ...']
    }
    """

    def __init__(self, cache_path: str, concurrency: int = 8):
        """
        Initialize index manager.

        Args:
            cache_path: Path of the index cache file
            concurrency: Maximum number of manifests read at once
        """
        self.cache_path = cache_path
        self.concurrency = concurrency

    def _list_provider(self, provider: StorageProvider, staging_dir: str) -> Dict[str, Any]:
        """List one provider's sidecars and load its remote index."""
        try:
            names = provider.list_all()
        except Exception as e:
            logger.warning(f"Failed to list backups on {provider.name}: {e}")
            return {'provider': provider, 'manifests': [], 'known': {}, 'error': f"{provider.name}: {e}"}

        return {
            'provider': provider,
            'manifests': [name for name in names if name.endswith(MANIFEST_SUFFIX)],
            'known': self._pull_remote_index(provider, staging_dir),
            'error': None
        }

    def _pull_remote_index(self, provider: StorageProvider, staging_dir: str) -> Dict[str, Dict[str, Any]]:
        """
        Pull the provider's remote index.

        Returns:
            Manifest metadata keyed by remote sidecar name; empty if the
            remote index is missing or unusable
        """
        local_path = safe_path(staging_dir, f"{provider.name}-{REMOTE_INDEX_NAME}")
        try:
            provider.pull(REMOTE_INDEX_NAME, local_path)
            with open(local_path, 'r') as f:
                raw = json.load(f)
        except ProviderNotFoundError:
            return {}
        except Exception as e:
            logger.debug(f"No usable remote index on {provider.name}: {e}")
            return {}

        manifests = raw.get('manifests') if isinstance(raw, dict) else None
        if not isinstance(manifests, dict):
            return {}
        return {
            name: data for name, data in manifests.items()
            if isinstance(name, str) and name.endswith(MANIFEST_SUFFIX) and _is_metadata(data)
        }

    def _read_manifest(self, provider: StorageProvider, remote_name: str, staging_dir: str) -> Optional[Dict[str, Any]]:
        """Pull one sidecar into the staging area and parse its metadata."""
        staged_name = f"{provider.name}-{remote_name.replace('/', '__')}"

        try:
            local_path = safe_path(staging_dir, staged_name)
            provider.pull(remote_name, local_path)
            with open(local_path, 'r') as f:
                raw = json.load(f)
        except Exception as e:
            logger.warning(f"Failed to read manifest {remote_name} from {provider.name}: {e}")
            return None

        metadata = parse_manifest_metadata(raw)
        if metadata is None:
            logger.warning(f"Ignoring corrupt manifest {remote_name} on {provider.name}")
        return metadata

    def _push_remote_index(self, provider: StorageProvider, manifests: Dict[str, Dict[str, Any]], staging_dir: str):
        """Upload a provider's remote index. Failures are logged, never raised."""
        local_path = safe_path(staging_dir, f"{provider.name}-push-{REMOTE_INDEX_NAME}")
        try:
            with open(local_path, 'w') as f:
                json.dump({
                    'lastRefreshed': datetime.now(timezone.utc).isoformat(),
                    'manifests': manifests
                }, f, indent=2)
            provider.push(local_path, REMOTE_INDEX_NAME)
        except Exception as e:
            logger.warning(f"Failed to push remote index to {provider.name}: {e}")

    def refresh_index(self, providers: List[StorageProvider]) -> Dict[str, Any]:
        """
        Rebuild the index from every provider and overwrite the cache.

        Each provider's remote index supplies metadata for sidecars it
        already knows; only sidecars missing from it are pulled. A provider
        whose remote index is out of date gets a new one pushed.

        A provider that cannot be listed is skipped and reported in
        'errors'; a manifest that cannot be pulled or parsed is left out of
        the index.

        Args:
            providers: Providers to scan

        Returns:
            The new index
        """
        staging_dir = make_tmp_dir('statevault-index-')

        try:
            listings = map_with_concurrency(
                providers,
                PROVIDER_CONCURRENCY,
                lambda provider: self._list_provider(provider, staging_dir)
            )

            targets = [
                (listing['provider'], name)
                for listing in listings
                for name in listing['manifests']
                if name not in listing['known']
            ]
            fetched = map_with_concurrency(
                targets,
                self.concurrency,
                lambda target: self._read_manifest(target[0], target[1], staging_dir)
            )
            fetched_by_target = {
                (provider.name, name): data for (provider, name), data in zip(targets, fetched)
            }

            results = []
            for listing in listings:
                provider = listing['provider']
                current = {}
                for name in listing['manifests']:
                    data = listing['known'].get(name) or fetched_by_target.get((provider.name, name))
                    results.append(((provider, name), data))
                    if data is not None:
                        current[name] = data

                if listing['error'] is None and current != listing['known']:
                    self._push_remote_index(provider, current, staging_dir)
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)

        entries = self._merge(results)

        index = {
            'lastRefreshed': datetime.now(timezone.utc).isoformat(),
            'entries': entries,
            'errors': [listing['error'] for listing in listings if listing['error']]
        }
        self._save(index)

        logger.info(f"Backup index refreshed: {len(entries)} backups across {len(providers)} providers")
        return index

    def _merge(self, results) -> List[Dict[str, Any]]:
        merged: Dict[str, Dict[str, Any]] = {}

        for (provider, remote_name), data in results:
            if data is None:
                continue

            key = backup_key_from_name(remote_name)
            if key is None:
                continue

            entry = merged.get(key)
            if entry is None:
                entry = {
                    'key': key,
                    'timestamp': data['timestamp'],
                    'filename': build_archive_name(key, data['encrypted']),
                    'encrypted': data['encrypted'],
                    'fileCount': data['fileCount'],
                    'size': data['size'],
                    'appVersion': data['appVersion'],
                    'providers': [],
                    'locations': {}
                }
                merged[key] = entry

            if provider.name in entry['locations']:
                logger.warning(
                    f"Backup {key} found twice on {provider.name} "
                    f"({entry['locations'][provider.name]} and {remote_name}); using the first"
                )
                continue

            entry['locations'][provider.name] = remote_name
            entry['providers'] = sorted(entry['locations'].keys())

        return sorted(merged.values(), key=lambda e: e['key'], reverse=True)

    def _save(self, index: Dict[str, Any]):
        directory = os.path.dirname(self.cache_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        fd = os.open(self.cache_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w') as f:
            json.dump(index, f, indent=2)

    def load_cached_index(self) -> Optional[Dict[str, Any]]:
        """
        Read the cached index.

        Returns:
            The cached index, or None if absent or malformed
        """
        try:
            with open(self.cache_path, 'r') as f:
                raw = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read index cache {self.cache_path}: {e}")
            return None

        if not _is_backup_index(raw):
            logger.warning(f"Index cache {self.cache_path} is malformed, ignoring")
            return None
        return raw

    def get_index(self, providers: List[StorageProvider], force_refresh: bool = False) -> Dict[str, Any]:
        """
        Return the index, from cache when it is younger than INDEX_CACHE_TTL.

        Args:
            providers: Providers to scan if a refresh is needed
            force_refresh: Ignore the cache

        Returns:
            Backup index
        """
        if not force_refresh:
            cached = self.load_cached_index()
            if cached is not None:
                refreshed = _parse_timestamp(cached['lastRefreshed'])
                if refreshed is not None and datetime.now(timezone.utc) - refreshed < INDEX_CACHE_TTL:
                    return cached

        return self.refresh_index(providers)

    def invalidate_cache(self):
        """Delete the cache file. A missing file counts as success; other errors are logged."""
        try:
            os.unlink(self.cache_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to invalidate index cache at {self.cache_path}: {e}")

