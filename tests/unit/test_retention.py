"""
Unit tests for retention policy enforcement (ritual/backup/retention.py).

Tests manifest-aware local retention and cap-only remote retention.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from ritual.backup.retention import LocalRetention, RemoteRetention, RetentionError
from ritual.backup.storage import StorageError
from ritual.backup.targets import LocalBackupTarget, RemoteBackupTarget
from ritual.events import CollectingSink, UpdateEvent
from ritual.models import new_world


def _local_key(month):
    seconds = int(datetime(2024, month, 1, tzinfo=timezone.utc).timestamp())
    return f"world_backups/{seconds}_world.tar.gz"


def _seed_local(storage, manifest, months, tracked=None):
    """Store one local backup per month; track the given months in the manifest."""
    tracked = months if tracked is None else tracked
    keys = {}
    for month in months:
        key = _local_key(month)
        storage.put(key, b'x')
        keys[month] = key
        if month in tracked:
            manifest.add_world(new_world(key, datetime(2024, month, 1, tzinfo=timezone.utc)))
    return keys


class TestLocalRetention:
    """Test LocalRetention."""

    def test_under_cap_keeps_everything(self, local_target, local_storage, manifest):
        _seed_local(local_storage, manifest, [1, 2])

        deleted = LocalRetention(local_target).apply(manifest)

        assert deleted == []
        assert len(local_storage.list('world_backups')) == 2

    def test_dangling_deleted_below_cap(self, local_target, local_storage, manifest):
        """Test a backup missing from the manifest is deleted even under the cap."""
        keys = _seed_local(local_storage, manifest, [1, 2], tracked=[2])

        deleted = LocalRetention(local_target, max_backups=5).apply(manifest)

        assert deleted == [keys[1]]
        assert local_storage.list('world_backups') == [keys[2]]

    def test_cap_applies_to_tracked_backups(self, local_target, local_storage, manifest):
        """Test the oldest tracked backups beyond the cap are deleted."""
        keys = _seed_local(local_storage, manifest, [1, 2, 3, 4])

        deleted = LocalRetention(local_target, max_backups=2).apply(manifest)

        assert deleted == [keys[2], keys[1]]
        assert local_storage.list('world_backups') == sorted([keys[3], keys[4]])

    def test_dangling_and_cap_combined(self, local_target, local_storage, manifest):
        """Test both passes are unioned, dangling first."""
        keys = _seed_local(local_storage, manifest, [1, 2, 3, 4, 5], tracked=[1, 2, 3, 4])

        deleted = LocalRetention(local_target, max_backups=2).apply(manifest)

        assert deleted == [keys[5], keys[2], keys[1]]
        assert local_storage.list('world_backups') == sorted([keys[3], keys[4]])

    def test_default_cap_from_target(self, local_target):
        assert LocalRetention(local_target).max_backups == local_target.max_backups

    def test_events_before_each_delete(self, local_target, local_storage, manifest):
        keys = _seed_local(local_storage, manifest, [1, 2], tracked=[])
        sink = CollectingSink()

        LocalRetention(local_target, events=sink).apply(manifest)

        updates = sink.of_type(UpdateEvent)
        assert [e.data['key'] for e in updates] == [keys[2], keys[1]]
        assert all(e.operation == 'retention' for e in updates)

    def test_delete_failure_aborts_sweep(self, manifest):
        """Test the first failed delete stops the sweep and is wrapped."""
        storage = MagicMock()
        storage.list.return_value = [_local_key(m) for m in (1, 2, 3)]
        storage.delete.side_effect = StorageError('permission denied')
        target = LocalBackupTarget(storage, 'world_backups', 2)

        with pytest.raises(RetentionError, match='permission denied') as exc_info:
            LocalRetention(target).apply(manifest)

        assert isinstance(exc_info.value.__cause__, StorageError)
        storage.delete.assert_called_once_with(_local_key(3))

    def test_discovery_failure(self, manifest):
        storage = MagicMock()
        storage.list.side_effect = StorageError('unreachable')
        target = LocalBackupTarget(storage, 'world_backups', 2)

        with pytest.raises(RetentionError, match='unreachable'):
            LocalRetention(target).apply(manifest)

    def test_requires_manifest(self, local_target):
        with pytest.raises(ValueError):
            LocalRetention(local_target).apply(None)

    def test_invalid_cap(self, local_target):
        with pytest.raises(ValueError):
            LocalRetention(local_target, max_backups=0)


class TestRemoteRetention:
    """Test RemoteRetention."""

    def test_applies_cap(self, remote_target, s3_bucket, manifest):
        keys = [f'worlds/world/2024{m:02d}01000000.tar.gz' for m in range(1, 9)]
        for key in keys:
            s3_bucket.put_object(Key=key, Body=b'x')

        deleted = RemoteRetention(remote_target).apply(manifest)

        assert sorted(deleted) == keys[:3]
        assert len(list(s3_bucket.objects.all())) == 5

    def test_ignores_manifest_membership(self, remote_target, s3_bucket, manifest):
        """Test untracked remote backups under the cap are kept."""
        s3_bucket.put_object(Key='worlds/world/20240101000000.tar.gz', Body=b'x')

        assert RemoteRetention(remote_target).apply(manifest) == []
        assert len(list(s3_bucket.objects.all())) == 1

    def test_failure_wrapped(self, manifest):
        storage = MagicMock()
        storage.list.return_value = [f'worlds/world/2024{m:02d}01000000.tar.gz' for m in range(1, 4)]
        storage.delete.side_effect = StorageError('denied')
        target = RemoteBackupTarget(storage, 'worlds', 1)

        with pytest.raises(RetentionError, match='denied'):
            RemoteRetention(target).apply(manifest)

    def test_requires_manifest(self, remote_target):
        with pytest.raises(ValueError):
            RemoteRetention(remote_target).apply(None)
