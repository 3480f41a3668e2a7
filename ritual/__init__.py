import os
import logging
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Optional

__version__ = '0.1.0'

logger = logging.getLogger(__name__)


def configure_logging(config):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    log_dir = config.logs_path
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    if config.DEBUG:
        log_level = logging.DEBUG
    else:
        log_level = logging.getLevelName(str(config.LOG_LEVEL).upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'ritual.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure package logger
    package_logger = logging.getLogger('ritual')
    package_logger.setLevel(log_level)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.addHandler(console_handler)
    package_logger.addHandler(file_handler)

    package_logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


@dataclass
class Services:
    """Storages, backup targets, retention engines and manifest store built from one Config."""
    config: object
    local_storage: object
    remote_storage: Optional[object]
    local_target: object
    remote_target: Optional[object]
    local_retention: object
    remote_retention: Optional[object]
    manifest_store: Optional[object]


def create_services(config, events=None, remote_storage=None):
    """
    Build the backup services from an explicit configuration.

    The remote side is wired only when R2 credentials are configured or a
    ``remote_storage`` is passed in.

    Args:
        config: Config instance
        events: Event sink shared by every component (default: LoggingSink)
        remote_storage: Remote storage to use instead of building an S3Storage

    Returns:
        Services
    """
    from ritual.backup.retention import LocalRetention, RemoteRetention
    from ritual.backup.storage import LocalStorage, S3Storage
    from ritual.backup.targets import LocalBackupTarget, RemoteBackupTarget
    from ritual.events import LoggingSink
    from ritual.librarian import ManifestStore

    config.validate()

    if events is None:
        events = LoggingSink()

    # Ensure required directories exist
    os.makedirs(config.ROOT_PATH, exist_ok=True)
    os.makedirs(config.local_backups_path, exist_ok=True)

    protected = (config.MANUAL_WORLD_FILENAME,)

    local_storage = LocalStorage(
        config.ROOT_PATH,
        progress_interval=config.PROGRESS_INTERVAL,
        events=events,
    )
    local_target = LocalBackupTarget(
        local_storage,
        config.LOCAL_BACKUPS,
        config.LOCAL_MAX_BACKUPS,
        extension=config.BACKUP_EXTENSION,
        max_files=config.MAX_FILES,
        protected_names=protected,
        events=events,
        pipe_capacity=config.PIPE_CAPACITY,
    )
    local_retention = LocalRetention(local_target, config.LOCAL_MAX_BACKUPS, events)

    if remote_storage is None and config.R2_BUCKET and config.R2_ACCESS_KEY_ID:
        remote_storage = S3Storage(
            access_key=config.R2_ACCESS_KEY_ID,
            secret_key=config.R2_SECRET_ACCESS_KEY,
            bucket_name=config.R2_BUCKET,
            region=config.S3_REGION,
            endpoint_url=config.endpoint_url,
            part_size=config.S3_PART_SIZE,
            concurrency=config.S3_CONCURRENCY,
            progress_interval=config.PROGRESS_INTERVAL,
            events=events,
        )

    remote_target = None
    remote_retention = None
    manifest_store = None
    if remote_storage is not None:
        remote_target = RemoteBackupTarget(
            remote_storage,
            config.REMOTE_BACKUPS,
            config.REMOTE_MAX_BACKUPS,
            extension=config.BACKUP_EXTENSION,
            max_files=config.MAX_FILES,
            protected_names=protected,
            events=events,
            pipe_capacity=config.PIPE_CAPACITY,
            timestamp_format=config.TIMESTAMP_FORMAT,
        )
        remote_retention = RemoteRetention(remote_target)
        manifest_store = ManifestStore(local_storage, remote_storage, config.MANIFEST_FILENAME)
    else:
        logger.info("Remote storage not configured; remote backups disabled")

    return Services(
        config=config,
        local_storage=local_storage,
        remote_storage=remote_storage,
        local_target=local_target,
        remote_target=remote_target,
        local_retention=local_retention,
        remote_retention=remote_retention,
        manifest_store=manifest_store,
    )
