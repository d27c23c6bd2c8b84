import os
import atexit
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask


def configure_logging(app):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'mealmate_backup.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure package logger
    package_logger = logging.getLogger('mealmate_backup')
    package_logger.setLevel(log_level)
    package_logger.handlers = [console_handler, file_handler]

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    app.logger.addHandler(console_handler)
    app.logger.addHandler(file_handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, config_overrides=None, snapshot_tool=None):
    """
    Flask application factory.

    Args:
        config_name: Key of the configuration class ('development', 'production', 'testing')
        config_overrides: Dict applied on top of the configuration class
        snapshot_tool: Replacement for the pg_dump/pg_restore tool
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from mealmate_backup.config import config
    app.config.from_object(config[config_name])
    if config_overrides:
        app.config.update(config_overrides)

    # Configure logging
    configure_logging(app)

    # Build the backup manager and scheduler once for this process
    from mealmate_backup.backup.manager import BackupManager
    from mealmate_backup.backup.settings import backup_config_from_mapping
    from mealmate_backup.backup.snapshot import PgSnapshotTool
    from mealmate_backup.scheduler import BackupScheduler

    backup_config = backup_config_from_mapping(app.config)
    manager = BackupManager(
        backup_config,
        database_url=lambda: app.config.get('DATABASE_URL'),
        snapshot_tool=snapshot_tool or PgSnapshotTool(timeout=app.config['BACKUP_COMMAND_TIMEOUT'])
    )
    backup_scheduler = BackupScheduler(manager)

    app.extensions['backup_manager'] = manager
    app.extensions['backup_scheduler'] = backup_scheduler

    # Register blueprints
    from mealmate_backup.routes import backup_routes
    app.register_blueprint(backup_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Only the designated worker runs the scheduler (SCHEDULER_WORKER=false disables it)
    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

    if app.config.get('SCHEDULER_ENABLED', True) and is_scheduler_worker:
        app.logger.info("Starting backup scheduler in this process...")
        backup_scheduler.start()

        # Stop scheduler on process shutdown
        atexit.register(backup_scheduler.stop)
    else:
        app.logger.info("Scheduler initialization skipped in this process")

    return app
