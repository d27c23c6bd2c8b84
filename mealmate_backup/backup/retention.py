"""
Retention policy enforcement for backups.

Deletes artifacts in the backup directory older than the retention window and
prunes history entries older than the same cutoff. The two prunings are
independent: a file may be gone while its history entry lingers (or the other
way round) until the next pass.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional

from .compression import artifact_pattern
from .history import HistoryStore
from .settings import BackupConfig
from .storage import LocalStorage, StorageError


logger = logging.getLogger(__name__)


class RetentionCleanupError(Exception):
    """Raised when part of a retention pass fails. Never leaves cleanup()."""
    pass


class RetentionManager:
    """
    Enforces the retention window on the backup directory and history ledger.
    """

    def __init__(self, config: BackupConfig, history: HistoryStore):
        self.config = config
        self.history = history

    def cleanup(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Run one retention pass. Never raises.

        Args:
            now: Reference time (default: current UTC time)

        Returns:
            Dict with summary of cleanup operations:
            {
                'cutoff': datetime,
                'files_deleted': int,
                'records_pruned': int,
                'errors': List[str]
            }
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=self.config.retention_days)

        logger.info(
            f"Starting backup cleanup (retention_days={self.config.retention_days}, "
            f"cutoff={cutoff.isoformat()})"
        )

        summary = {
            'cutoff': cutoff,
            'files_deleted': 0,
            'records_pruned': 0,
            'errors': []
        }

        try:
            summary['files_deleted'] = self._cleanup_files(cutoff, now, summary['errors'])
        except Exception as e:
            error_msg = f"File cleanup failed: {e}"
            logger.error(error_msg)
            summary['errors'].append(error_msg)

        try:
            summary['records_pruned'] = self._cleanup_history(cutoff)
        except Exception as e:
            error_msg = f"History cleanup failed: {e}"
            logger.error(error_msg)
            summary['errors'].append(error_msg)

        logger.info(
            f"Backup cleanup completed. "
            f"Files deleted: {summary['files_deleted']}, "
            f"History pruned: {summary['records_pruned']}, "
            f"Remaining backups: {self.history.count()}, "
            f"Errors: {len(summary['errors'])}"
        )

        return summary

    def _cleanup_files(self, cutoff: datetime, now: datetime, errors: list) -> int:
        """
        Delete artifacts with a modification time before cutoff.

        Per-file failures are recorded in errors and do not stop the pass.

        Raises:
            RetentionCleanupError: If the backup directory cannot be listed
        """
        try:
            local_storage = LocalStorage(self.config.backup_path)
            files = local_storage.list_files(artifact_pattern(self.config.file_prefix))
        except StorageError as e:
            raise RetentionCleanupError(f"Failed to list backup directory: {e}")

        deleted_count = 0
        for file_info in files:
            if file_info['modified'] >= cutoff:
                continue

            try:
                local_storage.delete(file_info['name'])
                deleted_count += 1
                age_days = (now - file_info['modified']).days
                logger.debug(f"Deleted old backup file: {file_info['name']} (age: {age_days} days)")
            except StorageError as e:
                error_msg = f"Failed to delete {file_info['name']}: {e}"
                logger.error(error_msg)
                errors.append(error_msg)

        return deleted_count

    def _cleanup_history(self, cutoff: datetime) -> int:
        try:
            return self.history.prune_before(cutoff)
        except OSError as e:
            raise RetentionCleanupError(f"Failed to rewrite history manifest: {e}")
