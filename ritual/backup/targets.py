"""
Backup targets: naming, throttling and discovery of stored world backups.

LocalBackupTarget keys:  <backup_dir>/<unix-seconds>_<name><ext>
RemoteBackupTarget keys: <backup_dir>/<name>/<YYYYMMDDhhmmss><ext>

Discovery deletes malformed entries on sight, so they never accumulate.
"""

import logging
import posixpath
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Tuple

from ritual.events import EventSink
from ritual.models import Manifest, World, new_world
from .storage import StorageError
from .streamer import DEFAULT_PIPE_CAPACITY, PushConfig, Result, push

logger = logging.getLogger(__name__)

TIMESTAMP_LENGTH = 14
DEFAULT_TIMESTAMP_FORMAT = '%Y%m%d%H%M%S'
UNIX_SECONDS_MIN_LENGTH = 10
TEMP_MARKER = 'temp_'


class BackupTargetError(Exception):
    """Raised when storing, discovering or pruning backups fails."""
    pass


class BackupTarget(ABC):
    """
    Base class for a backup destination on top of a storage adapter.

    Subclasses define the key layout and the timestamp encoded in it.
    """

    def __init__(
        self,
        storage,
        backup_dir: str,
        max_backups: int,
        extension: str = '.tar.gz',
        max_files: int = 1000,
        protected_names: Iterable[str] = (),
        events: Optional[EventSink] = None,
        pipe_capacity: int = DEFAULT_PIPE_CAPACITY,
    ):
        """
        Args:
            storage: Storage adapter (StorageRepository; also StreamUploader for backup_dirs)
            backup_dir: Key prefix holding the backups
            max_backups: Number of backups data_retention() keeps
            extension: Backup file extension, including the leading dot
            max_files: Listing size above which discovery refuses to proceed
            protected_names: Base names discovery never touches
            events: Default event sink for streamed backups
            pipe_capacity: Handoff buffer size for streamed backups
        """
        if storage is None:
            raise ValueError("storage cannot be None")
        if not backup_dir:
            raise ValueError("backup_dir cannot be empty")
        if max_backups <= 0:
            raise ValueError(f"max_backups must be positive, got {max_backups}")
        if not extension.startswith('.'):
            raise ValueError(f"extension must start with '.', got {extension!r}")

        self.storage = storage
        self.backup_dir = backup_dir.strip('/')
        self.max_backups = max_backups
        self.extension = extension
        self.max_files = max_files
        self.protected_names = frozenset(protected_names)
        self.events = events
        self.pipe_capacity = pipe_capacity

    @abstractmethod
    def make_key(self, name: str, now: datetime) -> str:
        """Storage key for a backup of ``name`` taken at ``now``."""

    @abstractmethod
    def parse_timestamp(self, filename: str) -> Optional[datetime]:
        """Creation time encoded in a backup file name, or None if malformed."""

    def should_skip(self, now: datetime) -> bool:
        return False

    def backup(self, data: bytes, name: str, manifest: Optional[Manifest] = None) -> Optional[World]:
        """
        Store an in-memory archive.

        Args:
            data: Archive bytes
            name: Logical backup name
            manifest: If given, the new world is appended to it

        Returns:
            The new World, or None if the backup was skipped

        Raises:
            ValueError: If data or name is empty
            BackupTargetError: If the write fails
        """
        if data is None:
            raise ValueError("backup data cannot be None")
        if len(data) == 0:
            raise ValueError("backup data cannot be empty")
        self._validate_name(name)

        now = datetime.now(timezone.utc)
        if self.should_skip(now):
            logger.info(f"Skipping backup of {name}: already backed up this month")
            return None

        key = self.make_key(name, now)
        try:
            self.storage.put(key, data)
        except StorageError as e:
            raise BackupTargetError(f"Failed to store backup file {key}: {e}") from e

        logger.info(f"Stored backup {key} ({len(data)} bytes)")
        return self._record(key, now, manifest)

    def backup_dirs(
        self,
        dirs: List[str],
        name: str,
        manifest: Optional[Manifest] = None,
        cancellation_check: Optional[Callable[[], None]] = None,
        local_copy_path: Optional[str] = None,
        should_backup: Optional[Callable[[], bool]] = None,
        events: Optional[EventSink] = None,
    ) -> Optional[Result]:
        """
        Stream directories into a new backup.

        Returns:
            Push result, or None if the backup was skipped
        """
        self._validate_name(name)

        now = datetime.now(timezone.utc)
        if self.should_skip(now):
            logger.info(f"Skipping backup of {name}: already backed up this month")
            return None

        key = self.make_key(name, now)
        cfg = PushConfig(
            dirs=dirs,
            bucket=self.storage.bucket_name,
            key=key,
            local_path=local_copy_path or '',
            should_backup=should_backup,
            events=events if events is not None else self.events,
            pipe_capacity=self.pipe_capacity,
        )
        result = push(cfg, self.storage, cancellation_check)

        self._record(key, now, manifest)
        return result

    def get_backup_files(self) -> List[str]:
        """
        List valid backup keys, newest first.

        Entries with the wrong extension or a malformed timestamp are deleted
        immediately. Protected and temporary files are ignored.

        Raises:
            BackupTargetError: If listing fails, the listing is too large, or
                a malformed entry cannot be deleted
        """
        return [key for _, key in self._dated_backup_files()]

    def data_retention(self) -> List[str]:
        """
        Delete the oldest backups beyond ``max_backups``.

        Returns:
            Deleted keys, newest first

        Raises:
            BackupTargetError: If a deletion fails
        """
        files = self.get_backup_files()
        if len(files) <= self.max_backups:
            return []

        extra = files[self.max_backups:]
        for key in extra:
            logger.info(f"Deleting backup beyond retention limit: {key}")
            try:
                self.storage.delete(key)
            except StorageError as e:
                raise BackupTargetError(f"Failed to remove backup file {key}: {e}") from e

        if len(extra) != len(files) - self.max_backups:
            raise BackupTargetError("retention policy calculation error")

        return extra

    def _dated_backup_files(self) -> List[Tuple[datetime, str]]:
        try:
            # Trailing slash keeps sibling prefixes such as "worlds_archive" out
            keys = self.storage.list(f"{self.backup_dir}/")
        except StorageError as e:
            raise BackupTargetError(f"Failed to list backup files: {e}") from e

        if len(keys) > self.max_files:
            raise BackupTargetError(f"too many backup files: {len(keys)} exceeds limit {self.max_files}")

        dated = []
        for key in keys:
            filename = posixpath.basename(key)
            if filename in self.protected_names or TEMP_MARKER in key:
                continue

            timestamp = None
            if filename.endswith(self.extension):
                timestamp = self.parse_timestamp(filename)

            if timestamp is None:
                self._delete_invalid(key)
                continue

            dated.append((timestamp, key))

        # Stable: equal timestamps keep listing order
        dated.sort(key=lambda item: item[0], reverse=True)
        return dated

    def _delete_invalid(self, key: str):
        logger.warning(f"Deleting invalid backup file: {key}")
        try:
            self.storage.delete(key)
        except StorageError as e:
            raise BackupTargetError(f"Failed to delete invalid backup file {key}: {e}") from e

    def _record(self, key: str, now: datetime, manifest: Optional[Manifest]) -> World:
        world = new_world(key, now)
        if manifest is not None:
            manifest.add_world(world)
        return world

    @staticmethod
    def _validate_name(name: str):
        if not name:
            raise ValueError("backup name cannot be empty")
        if '/' in name or '\\' in name:
            raise ValueError(f"backup name cannot contain path separators: {name!r}")


class LocalBackupTarget(BackupTarget):
    """
    Backups on local disk, at most one per calendar month.

    The monthly throttle compares the newest valid backup against the
    current UTC year and month.
    """

    def make_key(self, name: str, now: datetime) -> str:
        return f"{self.backup_dir}/{int(now.timestamp())}_{name}{self.extension}"

    def parse_timestamp(self, filename: str) -> Optional[datetime]:
        if len(filename) < len(self.extension) + UNIX_SECONDS_MIN_LENGTH:
            return None

        stem = filename[:-len(self.extension)]
        seconds, sep, name = stem.partition('_')
        if not sep or not name or not seconds.isdigit():
            return None

        try:
            return datetime.fromtimestamp(int(seconds), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    def should_skip(self, now: datetime) -> bool:
        dated = self._dated_backup_files()
        if not dated:
            return False

        newest = dated[0][0]
        return (newest.year, newest.month) == (now.year, now.month)


class RemoteBackupTarget(BackupTarget):
    """Backups in object storage, grouped per name. Never throttled."""

    def __init__(self, *args, timestamp_format: str = DEFAULT_TIMESTAMP_FORMAT, **kwargs):
        super().__init__(*args, **kwargs)
        self.timestamp_format = timestamp_format

    def make_key(self, name: str, now: datetime) -> str:
        timestamp = now.strftime(self.timestamp_format)
        if len(timestamp) != TIMESTAMP_LENGTH:
            raise BackupTargetError(f"timestamp format validation failed: {timestamp}")
        return f"{self.backup_dir}/{name}/{timestamp}{self.extension}"

    def parse_timestamp(self, filename: str) -> Optional[datetime]:
        if len(filename) < len(self.extension) + TIMESTAMP_LENGTH:
            return None

        stem = filename[:-len(self.extension)]
        if len(stem) != TIMESTAMP_LENGTH or not stem.isdigit():
            return None

        try:
            return datetime.strptime(stem, self.timestamp_format).replace(tzinfo=timezone.utc)
        except ValueError:
            return None
