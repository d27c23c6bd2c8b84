"""
Backup history ledger.

Records are appended by the backup executor and pruned by the retention
manager. The ledger is persisted as a JSON-lines manifest inside the backup
directory and reloaded on startup.
"""

import os
import json
import logging
import threading
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional, List, Dict, Any


logger = logging.getLogger(__name__)

MANIFEST_FILENAME = 'backup_history.jsonl'

STATUS_SUCCESS = 'success'
STATUS_FAILED = 'failed'
VALID_STATUSES = (STATUS_SUCCESS, STATUS_FAILED)


@dataclass(frozen=True)
class RemoteUploadResult:
    """Outcome of the best-effort remote upload stage."""
    uploaded: bool
    key: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class BackupRecord:
    """Result of one backup run."""
    id: str
    timestamp: datetime
    filename: str
    file_path: str
    size: int
    compressed: bool
    encrypted: bool
    duration: int  # milliseconds
    checksum: str
    status: str
    error: Optional[str] = None
    remote_upload: Optional[RemoteUploadResult] = None

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupRecord':
        data = dict(data)
        data['timestamp'] = datetime.fromisoformat(data['timestamp'])
        remote = data.get('remote_upload')
        if remote is not None:
            data['remote_upload'] = RemoteUploadResult(**remote)
        return cls(**data)


@dataclass(frozen=True)
class BackupStats:
    """Aggregate statistics over the ledger."""
    total_backups: int
    successful_backups: int
    failed_backups: int
    total_size: int
    oldest_backup: Optional[datetime]
    newest_backup: Optional[datetime]
    average_duration: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_backups': self.total_backups,
            'successful_backups': self.successful_backups,
            'failed_backups': self.failed_backups,
            'total_size': self.total_size,
            'total_size_mb': round(self.total_size / 1024 / 1024, 2),
            'oldest_backup': self.oldest_backup.isoformat() if self.oldest_backup else None,
            'newest_backup': self.newest_backup.isoformat() if self.newest_backup else None,
            'average_duration': self.average_duration,
            'average_duration_minutes': round(self.average_duration / 60000, 2),
        }


class HistoryStore:
    """
    Append-only ledger of backup attempts, persisted as a manifest file.

    Insertion order is chronological.
    """

    def __init__(self, directory: Optional[str] = None):
        """
        Args:
            directory: Directory holding the manifest; None keeps the ledger in memory only
        """
        self._records: List[BackupRecord] = []
        self._lock = threading.Lock()
        self.manifest_path = os.path.join(directory, MANIFEST_FILENAME) if directory else None
        self._load()

    def _load(self):
        if not self.manifest_path or not os.path.exists(self.manifest_path):
            return

        # Lines are decoded one by one so a single bad byte only loses its own entry
        with open(self.manifest_path, 'rb') as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    self._records.append(BackupRecord.from_dict(json.loads(line.decode('utf-8'))))
                except (ValueError, TypeError, KeyError) as e:
                    logger.warning(
                        f"Skipping corrupt history entry at {self.manifest_path}:{line_number}: {e}"
                    )

        logger.info(f"Loaded {len(self._records)} history entries from {self.manifest_path}")

    def append(self, record: BackupRecord):
        """
        Persist a record, then add it to the ledger.

        Raises:
            OSError: If the manifest cannot be written; the record is not added
        """
        with self._lock:
            if self.manifest_path:
                with open(self.manifest_path, 'a', encoding='utf-8') as f:
                    f.write(json.dumps(record.to_dict()) + '\n')
            self._records.append(record)

    def prune_before(self, cutoff: datetime) -> int:
        """
        Drop records with a timestamp older than cutoff.

        Returns:
            Number of records removed
        """
        with self._lock:
            kept = [r for r in self._records if r.timestamp >= cutoff]
            removed = len(self._records) - len(kept)
            if removed:
                self._records = kept
                self._rewrite()
            return removed

    def _rewrite(self):
        if not self.manifest_path:
            return
        temp_path = f"{self.manifest_path}.tmp"
        with open(temp_path, 'w', encoding='utf-8') as f:
            for record in self._records:
                f.write(json.dumps(record.to_dict()) + '\n')
        os.replace(temp_path, self.manifest_path)

    def get(self, record_id: str) -> Optional[BackupRecord]:
        with self._lock:
            for record in self._records:
                if record.id == record_id:
                    return record
        return None

    def get_history(self, status: Optional[str] = None, limit: Optional[int] = None,
                    offset: int = 0) -> List[BackupRecord]:
        """
        Get history, newest first.

        Args:
            status: Only records with this status ('success' or 'failed')
            limit: Max number of records (None = all)
            offset: Number of records to skip

        Returns:
            List of BackupRecord
        """
        if status is not None and status not in VALID_STATUSES:
            raise ValueError(f"Invalid status filter: {status}")

        with self._lock:
            records = list(reversed(self._records))

        if status:
            records = [r for r in records if r.status == status]

        offset = max(offset, 0)
        end = None if limit is None else offset + max(limit, 0)
        return records[offset:end]

    def count(self, status: Optional[str] = None) -> int:
        with self._lock:
            if status is None:
                return len(self._records)
            return sum(1 for r in self._records if r.status == status)

    def get_stats(self) -> BackupStats:
        with self._lock:
            records = list(self._records)

        successful = [r for r in records if r.status == STATUS_SUCCESS]
        timestamps = [r.timestamp for r in records]

        return BackupStats(
            total_backups=len(records),
            successful_backups=len(successful),
            failed_backups=len(records) - len(successful),
            total_size=sum(r.size for r in successful),
            oldest_backup=min(timestamps) if timestamps else None,
            newest_backup=max(timestamps) if timestamps else None,
            average_duration=(
                sum(r.duration for r in successful) / len(successful) if successful else 0
            )
        )

    def __len__(self):
        return self.count()
