"""
Unit tests for the restore workflow (mealmate_backup/backup/restore.py).
"""

import os
import gzip
import subprocess
import tempfile
from unittest.mock import patch

import pytest

from mealmate_backup.backup.encryption import MissingKeyError
from mealmate_backup.backup.restore import RestoreExecutor
from mealmate_backup.backup.settings import validate_config
from mealmate_backup.backup.snapshot import PgSnapshotTool, RestoreError


@pytest.fixture
def restore_workdirs(monkeypatch):
    """Record the temporary work directories created during restore."""
    created = []
    real_temporary_directory = tempfile.TemporaryDirectory

    def tracking_temporary_directory(*args, **kwargs):
        work_dir = real_temporary_directory(*args, **kwargs)
        created.append(work_dir.name)
        return work_dir

    monkeypatch.setattr(
        'mealmate_backup.backup.restore.tempfile.TemporaryDirectory',
        tracking_temporary_directory
    )
    return created


class TestRestoreRoundTrip:
    """Test restoring artifacts produced by the backup pipeline."""

    def test_compressed_backup_without_key(self, manager, fake_tool, restore_workdirs):
        """Test a compression-only artifact restores without any key configured."""
        record = manager.create_backup()

        manager.restore_backup(record.file_path)

        assert len(fake_tool.consumed) == 1
        consumed = fake_tool.consumed[0]
        assert consumed['content'] == fake_tool.payload
        assert consumed['params'].database == 'mealmate'
        assert not consumed['path'].endswith('.gz')
        # Decompressed intermediate lived in the scoped work directory
        assert os.path.dirname(consumed['path']) == restore_workdirs[0]
        assert not os.path.exists(restore_workdirs[0])
        # The artifact itself is untouched
        assert os.path.exists(record.file_path)

    def test_encrypted_backup(self, make_manager, fake_tool, restore_workdirs):
        """Test an encrypted + compressed artifact is decrypted and decompressed."""
        manager = make_manager(encryption_enabled=True, encryption_key='kitchen-secret')
        record = manager.create_backup()

        manager.restore_backup(record.file_path)

        assert fake_tool.consumed[0]['content'] == fake_tool.payload
        assert not os.path.exists(restore_workdirs[0])

    def test_encrypted_backup_restores_with_encryption_disabled(self, make_manager, fake_tool):
        """Test the key alone (not the enabled flag) is needed to restore."""
        manager = make_manager(encryption_enabled=True, encryption_key='kitchen-secret')
        record = manager.create_backup()
        manager.update_config({'encryption_enabled': False})

        manager.restore_backup(record.file_path)

        assert fake_tool.consumed[0]['content'] == fake_tool.payload

    def test_plain_dump_passed_through(self, make_manager, fake_tool):
        """Test an uncompressed, unencrypted dump is handed over as is."""
        manager = make_manager(compression=False)
        record = manager.create_backup()

        manager.restore_backup(record.file_path)

        assert fake_tool.consumed[0]['path'] == record.file_path

    def test_target_database(self, manager, fake_tool):
        """Test restoring into another database keeps the other connection params."""
        record = manager.create_backup()

        manager.restore_backup(record.file_path, target_database='mealmate_staging')

        params = fake_tool.consumed[0]['params']
        assert params.database == 'mealmate_staging'
        assert params.host == 'db.example.com'

    def test_checksum_verified(self, manager, fake_tool):
        """Test a matching checksum lets the restore proceed."""
        record = manager.create_backup()

        manager.restore_backup(record.file_path, expected_checksum=record.checksum)

        assert len(fake_tool.consumed) == 1


class TestRestoreFailures:
    """Test restore error handling."""

    def test_encrypted_without_key(self, make_manager, fake_tool, restore_workdirs):
        """Test an encrypted artifact without a key raises MissingKeyError before any work."""
        manager = make_manager(encryption_enabled=True, encryption_key='kitchen-secret')
        record = manager.create_backup()
        manager.update_config({'encryption_key': None})

        with pytest.raises(MissingKeyError):
            manager.restore_backup(record.file_path)

        assert fake_tool.consumed == []
        assert restore_workdirs == []

    def test_wrong_key(self, make_manager, fake_tool, restore_workdirs):
        """Test a wrong key surfaces as RestoreError and cleans up."""
        manager = make_manager(encryption_enabled=True, encryption_key='kitchen-secret')
        record = manager.create_backup()
        manager.update_config({'encryption_key': 'pantry-secret'})

        with pytest.raises(RestoreError, match='wrong key or corrupted'):
            manager.restore_backup(record.file_path)

        assert fake_tool.consumed == []
        assert not os.path.exists(restore_workdirs[0])

    def test_missing_file(self, manager, tmp_path):
        """Test restoring a nonexistent artifact raises RestoreError."""
        with pytest.raises(RestoreError, match='Backup file not found'):
            manager.restore_backup(str(tmp_path / 'mealmate_backup_missing.dump.gz'))

    def test_checksum_mismatch(self, manager, fake_tool):
        """Test a tampered artifact is rejected before restoring."""
        record = manager.create_backup()
        with open(record.file_path, 'ab') as f:
            f.write(b'tampered')

        with pytest.raises(RestoreError, match='Checksum mismatch'):
            manager.restore_backup(record.file_path, expected_checksum=record.checksum)

        assert fake_tool.consumed == []

    def test_corrupt_archive(self, manager, fake_tool, backup_dir, restore_workdirs):
        """Test an undecompressable artifact raises RestoreError and cleans up."""
        corrupt = os.path.join(backup_dir, 'mealmate_backup_2024-01-15_02-00-00.dump.gz')
        with open(corrupt, 'wb') as f:
            f.write(b'definitely not gzip')

        with pytest.raises(RestoreError, match='decompression failed'):
            manager.restore_backup(corrupt)

        assert fake_tool.consumed == []
        assert not os.path.exists(restore_workdirs[0])

    def test_restore_tool_failure_cleans_up(self, manager, fake_tool, restore_workdirs):
        """Test a failing pg_restore still removes the temporary files."""
        record = manager.create_backup()
        fake_tool.fail_restore = 'pg_restore exited with status 1'

        with pytest.raises(RestoreError, match='exited with status 1'):
            manager.restore_backup(record.file_path)

        assert not os.path.exists(restore_workdirs[0])

    def test_missing_database_url(self, fake_tool, tmp_path):
        """Test restore requires DATABASE_URL."""
        artifact = tmp_path / 'a.dump'
        artifact.write_bytes(b'PGDMP')
        executor = RestoreExecutor(validate_config({'backup_path': str(tmp_path)}), fake_tool, None)

        with pytest.raises(RestoreError, match='DATABASE_URL'):
            executor.restore(str(artifact))

    def test_missing_key_reported_before_database_url(self, fake_tool, tmp_path):
        """Test an encrypted artifact without a key raises MissingKeyError even with no DATABASE_URL."""
        artifact = tmp_path / 'mealmate_backup_2024-01-15_02-00-00.dump.gz.enc'
        artifact.write_bytes(b'MMBK')
        executor = RestoreExecutor(validate_config({'backup_path': str(tmp_path)}), fake_tool, None)

        with pytest.raises(MissingKeyError):
            executor.restore(str(artifact))

        assert fake_tool.consumed == []

    def test_pg_restore_invocation(self, backup_dir, database_url, tmp_path):
        """Test the default tool runs pg_restore on the decompressed dump."""
        artifact = tmp_path / 'mealmate_backup_2024-01-15_02-00-00.dump.gz'
        with gzip.open(artifact, 'wb') as f:
            f.write(b'PGDMP')
        executor = RestoreExecutor(validate_config({'backup_path': backup_dir}), PgSnapshotTool(), database_url)

        with patch('mealmate_backup.backup.snapshot.subprocess.run') as mock_run:
            mock_run.return_value = subprocess.CompletedProcess(args=[], returncode=0, stdout='', stderr='')
            executor.restore(str(artifact))

        command = mock_run.call_args[0][0]
        assert command[0] == 'pg_restore'
        assert command[-1].endswith('mealmate_backup_2024-01-15_02-00-00.dump')
        assert '--clean' in command
