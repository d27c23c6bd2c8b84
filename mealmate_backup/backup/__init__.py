"""
Backup module for MealMate.

This module handles the backup-and-restore lifecycle including:
- Configuration validation
- Database snapshots (pg_dump / pg_restore)
- Compression and encryption staging
- Checksums
- Remote (S3) upload
- History ledger and statistics
- Retention policy enforcement
"""

from .settings import BackupConfig, RemoteUploadConfig, ConfigError, validate_config
from .history import BackupRecord, BackupStats, HistoryStore, RemoteUploadResult
from .executor import BackupExecutor, ConcurrencyError
from .restore import RestoreExecutor
from .retention import RetentionManager, RetentionCleanupError
from .snapshot import PgSnapshotTool, SnapshotTool, DumpError, RestoreError
from .encryption import ArtifactCipher, EncryptionError, DecryptionError, MissingKeyError
from .compression import CompressionError
from .storage import RemoteUploader, RemoteUploadError
from .manager import BackupManager

__all__ = [
    'BackupConfig',
    'RemoteUploadConfig',
    'ConfigError',
    'validate_config',
    'BackupRecord',
    'BackupStats',
    'HistoryStore',
    'RemoteUploadResult',
    'BackupExecutor',
    'ConcurrencyError',
    'RestoreExecutor',
    'RetentionManager',
    'RetentionCleanupError',
    'PgSnapshotTool',
    'SnapshotTool',
    'DumpError',
    'RestoreError',
    'ArtifactCipher',
    'EncryptionError',
    'DecryptionError',
    'MissingKeyError',
    'CompressionError',
    'RemoteUploader',
    'RemoteUploadError',
    'BackupManager'
]
