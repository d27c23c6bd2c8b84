"""
Backup routes - JSON API over the backup manager.
"""

import os
import time
import logging

from flask import Blueprint, jsonify, request, current_app, send_file

from mealmate_backup.backup.executor import ConcurrencyError
from mealmate_backup.backup.encryption import MissingKeyError
from mealmate_backup.backup.history import VALID_STATUSES
from mealmate_backup.backup.settings import ConfigError
from mealmate_backup.backup.snapshot import RestoreError


logger = logging.getLogger(__name__)

bp = Blueprint('backups', __name__, url_prefix='/api/backups')

UPDATABLE_CONFIG_KEYS = (
    'enabled', 'schedule', 'interval_hours', 'retention_days', 'compression',
    'encryption_enabled', 'encryption_key', 'remote_upload'
)


def _manager():
    return current_app.extensions['backup_manager']


def _scheduler():
    return current_app.extensions['backup_scheduler']


def _config_summary(config):
    return {
        'enabled': config.enabled,
        'schedule': config.schedule,
        'interval_hours': config.interval_hours,
        'retention_days': config.retention_days,
        'compression': config.compression,
        'encryption_enabled': config.encryption_enabled,
        'remote_upload': {
            'enabled': config.remote_upload.enabled,
            'bucket': config.remote_upload.bucket,
            'region': config.remote_upload.region
        }
    }


@bp.route('', methods=['POST'])
def create_backup():
    """
    Create a manual backup.

    JSON body (optional):
        - compression: bool, override for this run only
        - encryption: bool, override for this run only

    Returns:
        201 with the backup record, 500 with the failed record,
        409 if a backup is already running
    """
    data = request.get_json(silent=True) or {}

    overrides = {}
    if 'compression' in data:
        overrides['compression'] = data['compression']
    if 'encryption' in data:
        overrides['encryption_enabled'] = data['encryption']

    logger.info(f"Manual backup initiated (overrides={overrides})")

    try:
        record = _manager().create_backup(**overrides)
    except ConcurrencyError as e:
        return jsonify({'error': str(e)}), 409
    except ConfigError as e:
        return jsonify({'error': f'Invalid backup request: {e}'}), 400

    if not record.succeeded:
        return jsonify({'error': 'Backup failed', 'backup': record.to_dict()}), 500

    return jsonify({
        'message': 'Backup created successfully',
        'backup': record.to_dict()
    }), 201


@bp.route('', methods=['GET'])
def list_backups():
    """
    Get backup history with filtering and pagination.

    Query params:
        - status: Filter by status (success/failed)
        - limit: Max number of records (default: 20, max: 100)
        - offset: Number of records to skip (default: 0)
    """
    status_filter = request.args.get('status')
    limit = request.args.get('limit', 20, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    limit = max(1, min(limit, 100))
    if offset < 0:
        offset = 0

    if status_filter and status_filter not in VALID_STATUSES:
        return jsonify({'error': 'Invalid status filter'}), 400

    manager = _manager()
    total = manager.history.count(status_filter)
    records = manager.get_history(status=status_filter, limit=limit, offset=offset)

    return jsonify({
        'backups': [record.to_dict() for record in records],
        'pagination': {
            'limit': limit,
            'offset': offset,
            'total': total,
            'has_more': offset + limit < total
        }
    }), 200


@bp.route('/stats', methods=['GET'])
def backup_stats():
    """Get aggregate statistics, configuration summary, and runtime status."""
    manager = _manager()

    return jsonify({
        'statistics': manager.get_stats().to_dict(),
        'config': _config_summary(manager.get_config()),
        'status': {
            'is_running': manager.is_backup_running(),
            'scheduler_active': _scheduler().is_running
        }
    }), 200


@bp.route('/<backup_id>/download', methods=['GET'])
def download_backup(backup_id):
    """Stream a backup artifact."""
    record = _manager().get_backup(backup_id)

    if not record:
        return jsonify({'error': 'Backup not found'}), 404

    if not record.succeeded:
        return jsonify({'error': 'Cannot download failed backup'}), 400

    if not os.path.isfile(record.file_path):
        logger.error(f"Backup file not found: {record.file_path}")
        return jsonify({'error': 'Backup file not found'}), 404

    logger.info(f"Backup download initiated: {record.filename} ({record.size} bytes)")

    return send_file(
        os.path.abspath(record.file_path),
        mimetype='application/octet-stream',
        as_attachment=True,
        download_name=record.filename
    )


@bp.route('/restore', methods=['POST'])
def restore_backup():
    """
    Restore the database from a backup.

    JSON body:
        - backup_id: Restore a ledgered backup (checksum is verified first)
        - backup_path: Or restore an artifact by path
        - target_database: Optional database name (default: DATABASE_URL's)
    """
    data = request.get_json(silent=True) or {}
    backup_id = data.get('backup_id')
    backup_path = data.get('backup_path')
    target_database = data.get('target_database')
    expected_checksum = None

    manager = _manager()

    if backup_id:
        record = manager.get_backup(backup_id)
        if not record:
            return jsonify({'error': 'Backup not found'}), 404
        if not record.succeeded:
            return jsonify({'error': 'Cannot restore from failed backup'}), 400
        backup_path = record.file_path
        expected_checksum = record.checksum
    elif not backup_path:
        return jsonify({'error': 'Either backup_id or backup_path must be provided'}), 400

    logger.info(f"Database restore initiated (backup_id={backup_id}, path={backup_path})")

    started = time.monotonic()
    try:
        manager.restore_backup(backup_path, target_database, expected_checksum)
    except MissingKeyError as e:
        return jsonify({'error': str(e)}), 400
    except RestoreError as e:
        return jsonify({'error': str(e)}), 500

    return jsonify({
        'message': 'Database restored successfully',
        'backup_id': backup_id,
        'target_database': target_database or 'default',
        'duration': int((time.monotonic() - started) * 1000)
    }), 200


@bp.route('/config', methods=['GET'])
def get_config():
    """Get backup configuration and runtime status."""
    manager = _manager()

    return jsonify({
        'config': _config_summary(manager.get_config()),
        'status': {
            'is_running': manager.is_backup_running(),
            'scheduler_active': _scheduler().is_running
        }
    }), 200


@bp.route('/config', methods=['PUT'])
def update_config():
    """
    Update backup configuration.

    Schedule-related changes (enabled, schedule, interval_hours) restart the
    scheduler when it is running, or start it when backups get enabled.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({'error': 'JSON object required'}), 400

    changes = {key: value for key, value in data.items() if key in UPDATABLE_CONFIG_KEYS}
    ignored = sorted(set(data) - set(changes))
    if ignored:
        return jsonify({'error': f'Unsupported configuration keys: {ignored}'}), 400

    manager = _manager()
    scheduler = _scheduler()
    previous = manager.get_config()

    try:
        new_config = manager.update_config(changes)
    except ConfigError as e:
        return jsonify({'error': f'Invalid configuration: {e}'}), 400

    if new_config.enabled != previous.enabled:
        if new_config.enabled:
            scheduler.start()
        else:
            scheduler.stop()
    elif scheduler.is_running and (
        new_config.schedule != previous.schedule
        or new_config.interval_hours != previous.interval_hours
    ):
        scheduler.restart()

    return jsonify({
        'message': 'Backup configuration updated successfully',
        'config': _config_summary(new_config)
    }), 200
