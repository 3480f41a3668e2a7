"""
Retention policy enforcement for world backups.

RemoteRetention keeps the newest N backups of the remote target.
LocalRetention is manifest-aware: local backups the manifest does not list
are deleted first, then the oldest of the remaining ones beyond the cap.
"""

import logging
from typing import List, Optional

from ritual.events import EventSink, UpdateEvent, send_event
from ritual.models import Manifest
from .storage import StorageError
from .targets import BackupTarget, BackupTargetError

logger = logging.getLogger(__name__)


class RetentionError(Exception):
    """Raised when a retention sweep fails."""
    pass


class RemoteRetention:
    """Numeric cap over a remote backup target."""

    def __init__(self, target: BackupTarget):
        if target is None:
            raise ValueError("target cannot be None")
        self.target = target

    def apply(self, manifest: Manifest) -> List[str]:
        """
        Delete remote backups beyond the target's cap.

        Args:
            manifest: Current manifest (required, not consulted)

        Returns:
            Deleted keys

        Raises:
            RetentionError: If discovery or a deletion fails
        """
        if manifest is None:
            raise ValueError("manifest cannot be None")

        try:
            deleted = self.target.data_retention()
        except BackupTargetError as e:
            raise RetentionError(f"Remote retention failed: {e}") from e

        if deleted:
            logger.info(f"Remote retention removed {len(deleted)} backup(s)")
        return deleted


class LocalRetention:
    """
    Two-phase retention over a local backup target.

    1. Dangling pass: every valid backup whose key is not a world URI in the
       manifest is deleted, regardless of the cap.
    2. Cap pass: of the backups the manifest knows, the oldest beyond
       ``max_backups`` are deleted.

    Both sets are deleted in one sweep, newest first within each pass. The
    first failed deletion aborts the sweep.
    """

    def __init__(self, target: BackupTarget, max_backups: Optional[int] = None, events: Optional[EventSink] = None):
        if target is None:
            raise ValueError("target cannot be None")

        self.target = target
        self.max_backups = target.max_backups if max_backups is None else max_backups
        self.events = events

        if self.max_backups <= 0:
            raise ValueError(f"max_backups must be positive, got {self.max_backups}")

    def apply(self, manifest: Manifest) -> List[str]:
        """
        Prune local backups against the manifest and the cap.

        Args:
            manifest: Up-to-date manifest snapshot

        Returns:
            Deleted keys, in deletion order

        Raises:
            RetentionError: If discovery or any deletion fails
        """
        if manifest is None:
            raise ValueError("manifest cannot be None")

        try:
            backups = self.target.get_backup_files()
        except BackupTargetError as e:
            raise RetentionError(f"Failed to list local backups: {e}") from e

        known = manifest.world_uris()
        to_delete = []
        valid = []

        for key in backups:
            if key in known:
                valid.append(key)
            else:
                logger.info(f"Found dangling local backup: {key}")
                to_delete.append(key)

        if len(valid) > self.max_backups:
            logger.info(
                f"Applying local retention policy: {len(valid)} valid, "
                f"{self.max_backups} allowed, {len(valid) - self.max_backups} to delete"
            )
            to_delete.extend(valid[self.max_backups:])

        for key in to_delete:
            logger.info(f"Deleting local backup: {key}")
            send_event(self.events, UpdateEvent('retention', 'Deleting local backup', {'key': key}))
            try:
                self.target.storage.delete(key)
            except StorageError as e:
                raise RetentionError(f"Failed to delete local backup {key}: {e}") from e

        return to_delete
