"""
Backup manager - the API surface of the backup subsystem.

Owns the current configuration, the history ledger, and the single-flight
guard that keeps at most one backup pipeline in flight.
"""

import logging
import threading
from typing import Optional, List, Callable, Union, Dict, Any

from .encryption import ArtifactCipher
from .executor import BackupExecutor, ConcurrencyError
from .history import HistoryStore, BackupRecord, BackupStats
from .restore import RestoreExecutor
from .retention import RetentionManager
from .settings import BackupConfig, validate_config, ensure_backup_directory
from .snapshot import SnapshotTool, PgSnapshotTool
from .storage import RemoteUploader


logger = logging.getLogger(__name__)


class BackupManager:
    """
    Entry point for creating, restoring, and inspecting backups.

    Constructed once by the application factory and shared with the
    scheduler and the HTTP routes.
    """

    def __init__(
        self,
        config: BackupConfig,
        database_url: Union[str, Callable[[], Optional[str]], None],
        snapshot_tool: Optional[SnapshotTool] = None,
        cipher_factory: Callable[[str], ArtifactCipher] = ArtifactCipher,
        uploader_factory: Callable = RemoteUploader
    ):
        """
        Args:
            config: Initial validated configuration
            database_url: Connection string, or a callable returning it
            snapshot_tool: External dump/restore utility (default: pg_dump/pg_restore)
            cipher_factory: Builds the artifact cipher from the encryption key
            uploader_factory: Builds the remote uploader from the remote config
        """
        self._config = config
        self._database_url = database_url
        self.snapshot_tool = snapshot_tool or PgSnapshotTool()
        self.cipher_factory = cipher_factory
        self.uploader_factory = uploader_factory
        self._run_lock = threading.Lock()

        backup_dir = ensure_backup_directory(config)
        self.history = HistoryStore(backup_dir)
        logger.info(f"Backup directory initialized: {backup_dir}")

    @property
    def database_url(self) -> Optional[str]:
        if callable(self._database_url):
            return self._database_url()
        return self._database_url

    def create_backup(self, **overrides) -> BackupRecord:
        """
        Run one backup pipeline.

        Args:
            **overrides: Per-run configuration overrides (e.g. compression=False);
                the stored configuration is not changed

        Returns:
            BackupRecord (status 'success' or 'failed')

        Raises:
            ConcurrencyError: If a backup is already in progress
            ConfigError: If the overrides are invalid
        """
        run_config = validate_config(overrides, base=self._config) if overrides else self._config

        if not self._run_lock.acquire(blocking=False):
            raise ConcurrencyError("Backup is already in progress")

        try:
            executor = BackupExecutor(
                run_config,
                self.history,
                self.snapshot_tool,
                self.database_url,
                cipher_factory=self.cipher_factory,
                uploader_factory=self.uploader_factory
            )
            return executor.execute()
        finally:
            self._run_lock.release()

    def restore_backup(self, backup_path: str, target_database: Optional[str] = None,
                       expected_checksum: Optional[str] = None):
        """
        Restore an artifact into the target database.

        Raises:
            MissingKeyError: If the artifact is encrypted and no key is configured
            RestoreError: If any stage fails
        """
        executor = RestoreExecutor(
            self._config,
            self.snapshot_tool,
            self.database_url,
            cipher_factory=self.cipher_factory
        )
        executor.restore(backup_path, target_database, expected_checksum)

    def cleanup(self) -> Dict[str, Any]:
        """Run a retention pass outside of the backup pipeline."""
        return RetentionManager(self._config, self.history).cleanup()

    def get_history(self, status: Optional[str] = None, limit: Optional[int] = None,
                    offset: int = 0) -> List[BackupRecord]:
        return self.history.get_history(status=status, limit=limit, offset=offset)

    def get_backup(self, backup_id: str) -> Optional[BackupRecord]:
        return self.history.get(backup_id)

    def get_stats(self) -> BackupStats:
        return self.history.get_stats()

    def get_config(self) -> BackupConfig:
        return self._config

    def update_config(self, changes: Dict[str, Any]) -> BackupConfig:
        """
        Replace the configuration with a validated merge of changes.

        Raises:
            ConfigError: If the merged configuration is invalid
            ConcurrencyError: If backup_path changes while a backup is in progress
        """
        new_config = validate_config(changes, base=self._config)

        if new_config.backup_path != self._config.backup_path:
            # An in-flight run appends to the current ledger
            if not self._run_lock.acquire(blocking=False):
                raise ConcurrencyError("Cannot change backup_path while a backup is in progress")
            try:
                backup_dir = ensure_backup_directory(new_config)
                self.history = HistoryStore(backup_dir)
                self._config = new_config
            finally:
                self._run_lock.release()
            logger.info(f"Backup directory changed to {backup_dir}")

        self._config = new_config
        logger.info(f"Backup configuration updated: {new_config.to_dict()}")
        return new_config

    def is_backup_running(self) -> bool:
        return self._run_lock.locked()
