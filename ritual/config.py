import os
from datetime import datetime


class ConfigError(ValueError):
    """Raised when configuration values are invalid."""
    pass


class Config:
    """Base configuration"""

    # Directory names (relative to ROOT_PATH or to the storage root)
    LOCAL_BACKUPS = 'world_backups'
    REMOTE_BACKUPS = 'worlds'
    LOGS_DIR = 'logs'

    # File names and keys
    MANIFEST_FILENAME = 'manifest.json'
    MANUAL_WORLD_FILENAME = 'manual.tar.gz'

    # Backups
    BACKUP_EXTENSION = '.tar.gz'
    TIMESTAMP_FORMAT = '%Y%m%d%H%M%S'
    LOCAL_MAX_BACKUPS = 2
    REMOTE_MAX_BACKUPS = 5
    MAX_FILES = 1000

    # S3 / R2
    R2_ENDPOINT_FORMAT = 'https://{account_id}.r2.cloudflarestorage.com'
    S3_REGION = 'auto'
    S3_PART_SIZE = 5 * 1024 * 1024  # 5MB parts for multipart upload
    S3_CONCURRENCY = 1  # Sequential upload to minimize memory

    # Streaming
    PIPE_CAPACITY = 1024 * 1024
    PROGRESS_INTERVAL = 5.0

    # Logging
    DEBUG = False
    LOG_LEVEL = 'INFO'

    def __init__(self, root_path=None, **overrides):
        """
        Build a configuration from class defaults, the environment and overrides.

        Args:
            root_path: Root directory for local state (default: RITUAL_ROOT or ~/k10wl/ritual)
            **overrides: Attribute overrides, e.g. LOCAL_MAX_BACKUPS=3

        Raises:
            ConfigError: If an override names an unknown setting
        """
        self.ROOT_PATH = (
            root_path
            or os.environ.get('RITUAL_ROOT')
            or os.path.join(os.path.expanduser('~'), 'k10wl', 'ritual')
        )

        # Credentials
        self.R2_ACCOUNT_ID = os.environ.get('R2_ACCOUNT_ID', '')
        self.R2_ACCESS_KEY_ID = os.environ.get('R2_ACCESS_KEY_ID', '')
        self.R2_SECRET_ACCESS_KEY = os.environ.get('R2_SECRET_ACCESS_KEY', '')
        self.R2_BUCKET = os.environ.get('R2_BUCKET', '')
        self.S3_REGION = os.environ.get('S3_REGION') or self.S3_REGION
        self.S3_ENDPOINT_URL = os.environ.get('S3_ENDPOINT_URL') or None

        # Retention caps
        self.LOCAL_MAX_BACKUPS = _env_int('RITUAL_LOCAL_MAX_BACKUPS', self.LOCAL_MAX_BACKUPS)
        self.REMOTE_MAX_BACKUPS = _env_int('RITUAL_REMOTE_MAX_BACKUPS', self.REMOTE_MAX_BACKUPS)

        self.LOG_LEVEL = os.environ.get('RITUAL_LOG_LEVEL') or self.LOG_LEVEL

        for name, value in overrides.items():
            if not name.isupper() or not hasattr(self, name):
                raise ConfigError(f"Unknown configuration setting: {name}")
            setattr(self, name, value)

    @property
    def endpoint_url(self):
        """S3 endpoint URL, derived from the R2 account ID when not set explicitly."""
        if self.S3_ENDPOINT_URL:
            return self.S3_ENDPOINT_URL
        if self.R2_ACCOUNT_ID:
            return self.R2_ENDPOINT_FORMAT.format(account_id=self.R2_ACCOUNT_ID)
        return None

    @property
    def local_backups_path(self):
        return os.path.join(self.ROOT_PATH, self.LOCAL_BACKUPS)

    @property
    def logs_path(self):
        return os.path.join(self.ROOT_PATH, self.LOGS_DIR)

    def validate(self):
        """
        Check configuration values.

        Raises:
            ConfigError: If any value is out of range
        """
        for name in ('LOCAL_MAX_BACKUPS', 'REMOTE_MAX_BACKUPS', 'MAX_FILES',
                     'PIPE_CAPACITY', 'S3_PART_SIZE', 'S3_CONCURRENCY'):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")

        if self.PROGRESS_INTERVAL <= 0:
            raise ConfigError(f"PROGRESS_INTERVAL must be positive, got {self.PROGRESS_INTERVAL!r}")

        if not self.BACKUP_EXTENSION.startswith('.'):
            raise ConfigError(f"BACKUP_EXTENSION must start with '.', got {self.BACKUP_EXTENSION!r}")

        try:
            stamp = datetime(2000, 1, 1).strftime(self.TIMESTAMP_FORMAT)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"TIMESTAMP_FORMAT is invalid: {e}") from e
        if len(stamp) != 14 or not stamp.isdigit():
            raise ConfigError(f"TIMESTAMP_FORMAT must render 14 digits, got {stamp!r}")

        if not self.ROOT_PATH:
            raise ConfigError("ROOT_PATH cannot be empty")

        return self


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'

    def __init__(self, root_path=None, **overrides):
        if root_path is None and not os.environ.get('RITUAL_ROOT'):
            # Keep development state next to the source tree
            base_dir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
            root_path = os.path.join(base_dir, 'data')
        super().__init__(root_path, **overrides)


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    DEBUG = True
    PROGRESS_INTERVAL = 0.01
    PIPE_CAPACITY = 64 * 1024


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


def load_config(config_name=None, **overrides):
    """
    Instantiate and validate the named configuration.

    Args:
        config_name: Key into ``config`` (default: RITUAL_ENV or 'production')
        **overrides: Passed through to the configuration constructor

    Returns:
        Validated Config instance
    """
    if config_name is None:
        config_name = os.environ.get('RITUAL_ENV', 'production')

    if config_name not in config:
        raise ConfigError(
            f"Invalid configuration name: {config_name}. "
            f"Valid options: {list(config.keys())}"
        )

    return config[config_name](**overrides).validate()


def _env_int(name, default):
    raw = os.environ.get(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
