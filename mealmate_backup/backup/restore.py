"""
Restore executor - reverses the staging pipeline and loads a snapshot.

Workflow:
1. Decrypt (if the artifact ends in .enc) - requires the configured key
2. Decompress (if the artifact, minus .enc, ends in .gz)
3. pg_restore with --clean --if-exists into the target database

Decrypted/decompressed intermediates live in a temporary directory that is
removed on every exit path.
"""

import os
import logging
import tempfile
from typing import Optional, Callable

from .checksum import verify_checksum, ChecksumError
from .compression import (
    decompress_file,
    is_encrypted_artifact,
    is_compressed_artifact,
    CompressionError,
    ENCRYPTED_EXTENSION,
    GZIP_EXTENSION,
)
from .encryption import ArtifactCipher, DecryptionError, MissingKeyError
from .settings import BackupConfig
from .snapshot import SnapshotTool, parse_database_url, RestoreError


logger = logging.getLogger(__name__)


class RestoreExecutor:
    """Restores one artifact into a database."""

    def __init__(
        self,
        config: BackupConfig,
        snapshot_tool: SnapshotTool,
        database_url: Optional[str],
        cipher_factory: Callable[[str], ArtifactCipher] = ArtifactCipher
    ):
        self.config = config
        self.snapshot_tool = snapshot_tool
        self.database_url = database_url
        self.cipher_factory = cipher_factory

    def restore(self, backup_path: str, target_database: Optional[str] = None,
                expected_checksum: Optional[str] = None):
        """
        Restore an artifact.

        Args:
            backup_path: Path to the artifact (.dump[.gz][.enc])
            target_database: Database to restore into (default: the one in DATABASE_URL)
            expected_checksum: If given, the artifact is verified before anything else

        Raises:
            MissingKeyError: If the artifact is encrypted and no key is configured
            RestoreError: If any stage fails
        """
        if not os.path.isfile(backup_path):
            raise RestoreError(f"Backup file not found: {backup_path}")

        encrypted = is_encrypted_artifact(backup_path)
        if encrypted and not self.config.encryption_key:
            raise MissingKeyError("Encryption key required for encrypted backup")

        params = parse_database_url(self.database_url, RestoreError).with_database(target_database)

        logger.info(f"Starting database restore from {backup_path} into {params.database}")

        try:
            if expected_checksum:
                verify_checksum(backup_path, expected_checksum)

            with tempfile.TemporaryDirectory(prefix='mealmate_restore_') as work_dir:
                restore_path = self._prepare_artifact(backup_path, work_dir, encrypted)
                self.snapshot_tool.consume_snapshot(params, restore_path)

        except RestoreError as e:
            logger.error(f"Database restore from {backup_path} failed: {e}")
            raise
        except (ChecksumError, DecryptionError, CompressionError, OSError) as e:
            logger.error(f"Database restore from {backup_path} failed: {e}")
            raise RestoreError(f"Database restore failed: {e}") from e

        logger.info(f"Database restore completed successfully ({backup_path} -> {params.database})")

    def _prepare_artifact(self, backup_path: str, work_dir: str, encrypted: bool) -> str:
        """Decrypt/decompress into work_dir; returns the path handed to the snapshot tool."""
        restore_path = backup_path
        name = os.path.basename(backup_path)

        if encrypted:
            name = name[:-len(ENCRYPTED_EXTENSION)]
            cipher = self.cipher_factory(self.config.encryption_key)
            restore_path = cipher.decrypt_file(restore_path, os.path.join(work_dir, name))
            logger.debug(f"Decrypted {backup_path}")

        if is_compressed_artifact(name):
            name = name[:-len(GZIP_EXTENSION)]
            restore_path = decompress_file(restore_path, os.path.join(work_dir, name))
            logger.debug(f"Decompressed {backup_path}")

        return restore_path
