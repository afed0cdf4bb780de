"""
Retention policy enforcement for backups.

Keeps the newest N backups of the merged index and deletes the rest from
every provider that holds them. Pruning is best effort: a failure for one
backup is reported and never stops the others.
"""

import logging
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional

from statevault.utils import map_with_concurrency
from .index import IndexManager, get_index_path
from .manifest import build_archive_name
from .storage import StorageProvider

logger = logging.getLogger(__name__)

# Backups pruned in parallel
PRUNE_CONCURRENCY = 4


class PruneManager:
    """
    Applies a keep-count retention policy to the merged backup index.
    """

    def __init__(self, providers: List[StorageProvider], index_manager: IndexManager):
        """
        Initialize prune manager.

        Args:
            providers: Configured storage providers
            index_manager: Index used to find backups and invalidated afterwards
        """
        self.providers = {provider.name: provider for provider in providers}
        self.index_manager = index_manager
        self.logs = []

    def prune(self, count: int) -> Dict[str, Any]:
        """
        Keep the `count` newest backups and delete the rest.

        Args:
            count: Number of backups to keep (0 deletes everything)

        Returns:
            Dict with summary of cleanup operations:
            {
                'deleted': int,
                'kept': int,
                'errors': List[str],
                'logs': List[str]
            }

        Raises:
            ValueError: If count is negative
        """
        if count < 0:
            raise ValueError(f"Retention count must be zero or positive, got {count}")

        self._log(f"Starting prune, keeping newest {count} backups")

        index = self.index_manager.refresh_index(list(self.providers.values()))
        entries = index['entries']

        if not entries:
            self._log("No backups found, nothing to prune")
            return {'deleted': 0, 'kept': 0, 'errors': [], 'logs': self.logs}

        to_keep = entries[:count]
        to_delete = entries[count:]

        results = map_with_concurrency(to_delete, PRUNE_CONCURRENCY, self._delete_entry)

        errors = [error for result in results for error in result]
        deleted = sum(1 for result in results if not result)

        self.index_manager.invalidate_cache()

        self._log(
            f"Prune complete. "
            f"Deleted: {deleted}, "
            f"Kept: {len(to_keep)}, "
            f"Errors: {len(errors)}"
        )

        return {'deleted': deleted, 'kept': len(to_keep), 'errors': errors, 'logs': self.logs}

    def _delete_entry(self, entry: Dict[str, Any]) -> List[str]:
        """
        Delete one backup from every provider holding it.

        Returns:
            Error messages; empty if the backup is fully deleted
        """
        errors = []
        archive_name = build_archive_name(entry['key'], entry['encrypted'])

        for provider_name, manifest_name in sorted(entry['locations'].items()):
            provider = self.providers.get(provider_name)
            if provider is None:
                continue

            host_prefix = manifest_name.rsplit('/', 1)[0] + '/' if '/' in manifest_name else ''
            archive_remote = f"{host_prefix}{archive_name}"

            try:
                provider.delete(archive_remote)
                provider.delete(manifest_name)
                self._log(f"Deleted {archive_remote} from {provider_name}")
            except Exception as e:
                error_msg = f"Failed to delete {archive_remote} from {provider_name}: {e}"
                self._log(error_msg)
                errors.append(error_msg)

        return errors

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def prune_backups(
    providers: List[StorageProvider],
    count: int,
    index_manager: Optional[IndexManager] = None
) -> Dict[str, Any]:
    """
    Prune backups across all providers, keeping the newest `count`.

    Args:
        providers: Configured storage providers
        count: Number of backups to keep
        index_manager: Index to use (default: the cache in the configured state dir)

    Returns:
        Summary dict from PruneManager.prune()
    """
    if index_manager is None:
        from statevault.config import Config
        index_manager = IndexManager(get_index_path(Config.STATE_DIR))

    manager = PruneManager(providers, index_manager)
    return manager.prune(count)
