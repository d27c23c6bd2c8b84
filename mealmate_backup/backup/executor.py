"""
Backup executor - orchestrates the complete backup pipeline.

Workflow:
1. Dump the database to {backup_path}/{prefix}_backup_{date}_{time}.dump
2. Compress (if configured) -> .dump.gz, remove the uncompressed dump
3. Encrypt (if configured) -> .enc, remove the previous intermediate
4. Compute the checksum of the final artifact
5. Upload off-site (best-effort, if configured)
6. Append the BackupRecord to the history ledger
7. Enforce the retention policy (failures are logged, never raised)

A failure in steps 1-4 removes every intermediate produced so far and yields
a failed BackupRecord instead of raising.
"""

import os
import time
import uuid
import logging
from datetime import datetime, timezone
from typing import Optional, Callable, List

from .checksum import calculate_checksum
from .compression import (
    compress_file,
    generate_backup_filename,
    get_artifact_size,
    DUMP_EXTENSION,
    GZIP_EXTENSION,
    ENCRYPTED_EXTENSION,
)
from .encryption import ArtifactCipher
from .history import BackupRecord, HistoryStore, RemoteUploadResult, STATUS_SUCCESS, STATUS_FAILED
from .retention import RetentionManager
from .settings import BackupConfig, ConfigError, ensure_backup_directory
from .snapshot import SnapshotTool, parse_database_url, DumpError
from .storage import RemoteUploader


logger = logging.getLogger(__name__)


class ConcurrencyError(Exception):
    """Raised when a backup is requested while another one is in flight."""
    pass


def generate_backup_id() -> str:
    return f"backup_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


class BackupExecutor:
    """
    Runs one backup pipeline for a configuration snapshot.
    """

    def __init__(
        self,
        config: BackupConfig,
        history: HistoryStore,
        snapshot_tool: SnapshotTool,
        database_url: Optional[str],
        cipher_factory: Callable[[str], ArtifactCipher] = ArtifactCipher,
        uploader_factory: Callable = RemoteUploader
    ):
        """
        Initialize backup executor.

        Args:
            config: Configuration snapshot used for the whole run
            history: Ledger the resulting record is appended to
            snapshot_tool: Produces the database snapshot
            database_url: Connection string of the database to dump
            cipher_factory: Builds the cipher from the encryption key
            uploader_factory: Builds the remote uploader from the remote config
        """
        self.config = config
        self.history = history
        self.snapshot_tool = snapshot_tool
        self.database_url = database_url
        self.cipher_factory = cipher_factory
        self.uploader_factory = uploader_factory
        self.backup_id = generate_backup_id()
        self.artifact_path = None
        self._intermediates: List[str] = []

    def execute(self) -> BackupRecord:
        """
        Execute the backup pipeline.

        Returns:
            BackupRecord with status 'success' or 'failed'
        """
        started = time.monotonic()
        timestamp = datetime.now(timezone.utc)

        logger.info(f"Starting database backup {self.backup_id} ({timestamp.isoformat()})")

        try:
            record = self._execute_workflow(timestamp, started)
        except Exception as e:
            duration = self._elapsed_ms(started)
            self._discard_intermediates()

            record = BackupRecord(
                id=self.backup_id,
                timestamp=timestamp,
                filename='',
                file_path='',
                size=0,
                compressed=False,
                encrypted=False,
                duration=duration,
                checksum='',
                status=STATUS_FAILED,
                error=str(e)
            )
            self._record_history(record)

            logger.error(f"Database backup {self.backup_id} failed after {duration} ms: {e}")
            return record

        self._record_history(record)
        self._cleanup_old_backups()

        logger.info(
            f"Database backup {self.backup_id} completed successfully "
            f"(file={record.filename}, size={record.size}, duration={record.duration} ms, "
            f"compressed={record.compressed}, encrypted={record.encrypted})"
        )
        return record

    def _execute_workflow(self, timestamp: datetime, started: float) -> BackupRecord:
        """Run the staging steps and build the success record."""
        backup_dir = ensure_backup_directory(self.config)

        # Step 1: Dump
        dump_path = self._unique_dump_path(backup_dir, timestamp)
        self._track(dump_path)
        params = parse_database_url(self.database_url, DumpError)
        self.artifact_path = self.snapshot_tool.produce_snapshot(params, dump_path)
        dump_size = get_artifact_size(self.artifact_path)
        logger.debug(f"Dump created: {os.path.basename(dump_path)} ({dump_size} bytes)")

        # Step 2: Compress
        compressed = False
        if self.config.compression:
            self._track(f"{self.artifact_path}{GZIP_EXTENSION}")
            self.artifact_path = compress_file(self.artifact_path)
            compressed = True

        # Step 3: Encrypt
        encrypted = False
        if self.config.encryption_enabled:
            if not self.config.encryption_key:
                raise ConfigError("Encryption is enabled but no encryption key is configured")
            cipher = self.cipher_factory(self.config.encryption_key)
            self._track(f"{self.artifact_path}{ENCRYPTED_EXTENSION}")
            self.artifact_path = cipher.encrypt_file(self.artifact_path)
            encrypted = True

        # Step 4: Checksum
        checksum = calculate_checksum(self.artifact_path)
        size = get_artifact_size(self.artifact_path)

        if compressed and size:
            logger.info(f"Backup {self.backup_id} compression ratio: {dump_size / size:.2f}")

        # Step 5: Remote upload (best-effort)
        remote_upload = None
        if self.config.remote_upload.enabled:
            remote_upload = self._upload_remote()

        return BackupRecord(
            id=self.backup_id,
            timestamp=timestamp,
            filename=os.path.basename(self.artifact_path),
            file_path=self.artifact_path,
            size=size,
            compressed=compressed,
            encrypted=encrypted,
            duration=self._elapsed_ms(started),
            checksum=checksum,
            status=STATUS_SUCCESS,
            remote_upload=remote_upload
        )

    def _unique_dump_path(self, backup_dir: str, timestamp: datetime) -> str:
        """Dump path that does not collide with an earlier artifact of the same second."""
        filename = generate_backup_filename(self.config.file_prefix, timestamp)
        stem = filename[:-len(DUMP_EXTENSION)]

        candidate = stem
        suffix = 1
        while any(name.startswith(f"{candidate}{DUMP_EXTENSION}") for name in os.listdir(backup_dir)):
            candidate = f"{stem}_{suffix}"
            suffix += 1

        return os.path.join(backup_dir, f"{candidate}{DUMP_EXTENSION}")

    def _upload_remote(self) -> RemoteUploadResult:
        try:
            uploader = self.uploader_factory(self.config.remote_upload)
            return uploader.upload(self.artifact_path)
        except Exception as e:
            logger.warning(f"Remote upload failed for backup {self.backup_id}: {e}")
            return RemoteUploadResult(uploaded=False, error=str(e))

    def _record_history(self, record: BackupRecord):
        try:
            self.history.append(record)
        except OSError as e:
            logger.error(f"Failed to write history entry for backup {self.backup_id}: {e}")

    def _cleanup_old_backups(self):
        try:
            RetentionManager(self.config, self.history).cleanup()
        except Exception as e:
            logger.error(f"Backup cleanup failed: {e}")

    def _track(self, path: str):
        self._intermediates.append(path)

    def _discard_intermediates(self):
        """Remove every file produced by this run."""
        for path in self._intermediates:
            if os.path.exists(path):
                try:
                    os.remove(path)
                    logger.debug(f"Removed intermediate file {path}")
                except OSError as e:
                    logger.warning(f"Failed to remove intermediate file {path}: {e}")

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
