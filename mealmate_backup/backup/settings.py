"""
Backup configuration validation.

Normalizes partial overrides into a fully-populated, immutable BackupConfig.
Configuration is never mutated in place: every update produces a new object.
"""

import os
from dataclasses import dataclass, field, asdict, replace
from typing import Optional, Dict, Any, Mapping

from apscheduler.triggers.cron import CronTrigger


MIN_RETENTION_DAYS = 1
MAX_RETENTION_DAYS = 365


class ConfigError(Exception):
    """Raised when backup configuration is invalid or contradictory."""
    pass


@dataclass(frozen=True)
class RemoteUploadConfig:
    """Off-site (S3) upload settings."""
    enabled: bool = False
    bucket: Optional[str] = None
    region: str = 'us-east-1'
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    prefix: str = 'backups'


@dataclass(frozen=True)
class BackupConfig:
    """Validated backup configuration snapshot."""
    enabled: bool = True
    schedule: Optional[str] = None  # Cron expression, overrides interval_hours
    interval_hours: int = 24
    retention_days: int = 30
    backup_path: str = './backups'
    compression: bool = True
    encryption_enabled: bool = False
    encryption_key: Optional[str] = None
    file_prefix: str = 'mealmate'
    remote_upload: RemoteUploadConfig = field(default_factory=RemoteUploadConfig)

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        """
        Convert configuration to a plain dict.

        Args:
            include_secrets: If False, the encryption key and AWS secret are masked

        Returns:
            Dict representation
        """
        data = asdict(self)
        if not include_secrets:
            data['encryption_key'] = '***' if self.encryption_key else None
            remote = data['remote_upload']
            remote['secret_access_key'] = '***' if remote['secret_access_key'] else None
        return data


_BOOL_FIELDS = ('enabled', 'compression', 'encryption_enabled')
_REMOTE_BOOL_FIELDS = ('enabled',)
_OPTIONAL_STR_FIELDS = ('schedule', 'encryption_key')
_REMOTE_OPTIONAL_STR_FIELDS = ('bucket', 'access_key_id', 'secret_access_key')


def validate_config(
    overrides: Optional[Mapping[str, Any]] = None,
    base: Optional[BackupConfig] = None
) -> BackupConfig:
    """
    Merge overrides onto a base configuration and validate the result.

    Omitted fields keep the base value (or the default when no base is given).
    retention_days is clamped to [1, 365].

    Args:
        overrides: Partial configuration (nested 'remote_upload' may be a dict
            or a RemoteUploadConfig)
        base: Configuration to start from

    Returns:
        New BackupConfig instance

    Raises:
        ConfigError: If a key is unknown or a value has the wrong type
    """
    base = base or BackupConfig()
    overrides = dict(overrides or {})

    known = set(BackupConfig.__dataclass_fields__)
    unknown = set(overrides) - known
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {sorted(unknown)}")

    remote = _merge_remote(overrides.pop('remote_upload', None), base.remote_upload)

    for name in _BOOL_FIELDS:
        if name in overrides and not isinstance(overrides[name], bool):
            raise ConfigError(f"{name} must be a boolean")

    for name in _OPTIONAL_STR_FIELDS:
        value = overrides.get(name)
        if value is not None and not isinstance(value, str):
            raise ConfigError(f"{name} must be a string")
        if name in overrides and value == '':
            overrides[name] = None

    if overrides.get('schedule'):
        try:
            CronTrigger.from_crontab(overrides['schedule'], timezone='UTC')
        except ValueError as e:
            raise ConfigError(f"Invalid cron schedule {overrides['schedule']!r}: {e}")

    if 'retention_days' in overrides:
        overrides['retention_days'] = _clamp_retention(overrides['retention_days'])

    if 'interval_hours' in overrides:
        interval = overrides['interval_hours']
        if isinstance(interval, bool) or not isinstance(interval, int) or interval <= 0:
            raise ConfigError("interval_hours must be a positive integer")

    for name in ('backup_path', 'file_prefix'):
        if name in overrides:
            value = overrides[name]
            if not isinstance(value, (str, os.PathLike)) or not str(value).strip():
                raise ConfigError(f"{name} must be a non-empty string")
            overrides[name] = str(value)

    return replace(base, remote_upload=remote, **overrides)


def _merge_remote(value, base: RemoteUploadConfig) -> RemoteUploadConfig:
    """Merge remote upload overrides onto the base remote config."""
    if value is None:
        remote = base
    elif isinstance(value, RemoteUploadConfig):
        remote = value
    elif isinstance(value, Mapping):
        value = dict(value)
        unknown = set(value) - set(RemoteUploadConfig.__dataclass_fields__)
        if unknown:
            raise ConfigError(f"Unknown remote_upload keys: {sorted(unknown)}")

        for name in _REMOTE_BOOL_FIELDS:
            if name in value and not isinstance(value[name], bool):
                raise ConfigError(f"remote_upload.{name} must be a boolean")

        for name in _REMOTE_OPTIONAL_STR_FIELDS:
            if value.get(name) == '':
                value[name] = None

        remote = replace(base, **value)
    else:
        raise ConfigError("remote_upload must be a mapping")

    if remote.enabled and not remote.bucket:
        raise ConfigError("remote_upload.bucket is required when remote upload is enabled")

    return remote


def _clamp_retention(value) -> int:
    if isinstance(value, bool):
        raise ConfigError("retention_days must be an integer")
    try:
        days = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"retention_days must be an integer, got {value!r}")
    if days != value and not isinstance(value, str):
        raise ConfigError(f"retention_days must be an integer, got {value!r}")
    return max(MIN_RETENTION_DAYS, min(MAX_RETENTION_DAYS, days))


def ensure_backup_directory(config: BackupConfig) -> str:
    """
    Create the backup directory if it does not exist.

    Returns:
        Absolute path of the backup directory

    Raises:
        ConfigError: If the directory cannot be created
    """
    path = os.path.abspath(config.backup_path)
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise ConfigError(f"Failed to create backup directory {path}: {e}")
    return path


def backup_config_from_mapping(settings: Mapping[str, Any]) -> BackupConfig:
    """
    Build a BackupConfig from Flask-style BACKUP_* settings.

    Args:
        settings: Mapping such as app.config

    Returns:
        Validated BackupConfig
    """
    overrides = {
        'enabled': settings.get('BACKUP_ENABLED', True),
        'schedule': settings.get('BACKUP_SCHEDULE'),
        'interval_hours': settings.get('BACKUP_INTERVAL_HOURS', 24),
        'retention_days': settings.get('BACKUP_RETENTION_DAYS', 30),
        'backup_path': settings.get('BACKUP_PATH', './backups'),
        'compression': settings.get('BACKUP_COMPRESSION', True),
        'encryption_enabled': settings.get('BACKUP_ENCRYPTION', False),
        'encryption_key': settings.get('BACKUP_ENCRYPTION_KEY'),
        'file_prefix': settings.get('BACKUP_FILE_PREFIX', 'mealmate'),
        'remote_upload': {
            'enabled': settings.get('BACKUP_S3_ENABLED', False),
            'bucket': settings.get('BACKUP_S3_BUCKET'),
            'region': settings.get('BACKUP_S3_REGION') or 'us-east-1',
            'access_key_id': settings.get('BACKUP_S3_ACCESS_KEY_ID'),
            'secret_access_key': settings.get('BACKUP_S3_SECRET_ACCESS_KEY'),
            'prefix': settings.get('BACKUP_S3_PREFIX') or 'backups',
        }
    }
    return validate_config(overrides)
