"""
Unit tests for backup targets (ritual/backup/targets.py).

Tests key naming, the monthly throttle, discovery with self-healing and the
numeric retention cap.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from freezegun import freeze_time

from ritual.backup.storage import StorageError
from ritual.backup.streamer import Result
from ritual.backup.targets import (
    BackupTargetError,
    LocalBackupTarget,
    RemoteBackupTarget,
)

JAN_15 = datetime(2024, 1, 15, 10, 30, 0, tzinfo=timezone.utc)


def _unix(year, month, day=1):
    return int(datetime(year, month, day, tzinfo=timezone.utc).timestamp())


class TestLocalBackupTarget:
    """Test LocalBackupTarget."""

    @freeze_time('2024-01-15 10:30:00')
    def test_backup_key(self, local_target, local_storage, manifest):
        """Test local keys embed unix seconds and the name."""
        world = local_target.backup(b'archive', 'world', manifest)

        expected = f"world_backups/{int(JAN_15.timestamp())}_world.tar.gz"
        assert world.uri == expected
        assert world.created_at == JAN_15
        assert local_storage.get(expected) == b'archive'
        assert manifest.worlds == [world]

    @freeze_time('2024-01-15 10:30:00')
    def test_throttled_in_same_month(self, local_target, local_storage):
        """Test a backup already taken this month makes backup() a no-op."""
        existing = f"world_backups/{_unix(2024, 1, 2)}_world.tar.gz"
        local_storage.put(existing, b'old')

        assert local_target.backup(b'new', 'world') is None
        assert local_storage.list('world_backups') == [existing]

    @freeze_time('2024-01-15 10:30:00')
    def test_not_throttled_after_prior_month(self, local_target, local_storage):
        """Test a newest backup from last month lets the write proceed."""
        local_storage.put(f"world_backups/{_unix(2023, 12, 31)}_world.tar.gz", b'old')

        assert local_target.backup(b'new', 'world') is not None
        assert len(local_storage.list('world_backups')) == 2

    @freeze_time('2024-01-15 10:30:00')
    def test_same_month_previous_year_not_throttled(self, local_target, local_storage):
        local_storage.put(f"world_backups/{_unix(2023, 1, 20)}_world.tar.gz", b'old')

        assert local_target.backup(b'new', 'world') is not None

    def test_first_backup_never_throttled(self, local_target):
        assert local_target.backup(b'data', 'world') is not None

    @pytest.mark.parametrize('data', [None, b''])
    def test_backup_requires_data(self, local_target, data):
        with pytest.raises(ValueError):
            local_target.backup(data, 'world')

    @pytest.mark.parametrize('name', ['', 'a/b', 'a\\b'])
    def test_backup_requires_plain_name(self, local_target, name):
        with pytest.raises(ValueError):
            local_target.backup(b'data', name)

    def test_storage_failure(self):
        storage = MagicMock()
        storage.list.return_value = []
        storage.put.side_effect = StorageError('disk full')
        target = LocalBackupTarget(storage, 'world_backups', 2)

        with pytest.raises(BackupTargetError, match='disk full'):
            target.backup(b'data', 'world')

    def test_get_backup_files_sorted_newest_first(self, local_target, local_storage):
        keys = [f"world_backups/{_unix(2024, m)}_world.tar.gz" for m in (3, 1, 2)]
        for key in keys:
            local_storage.put(key, b'x')

        assert local_target.get_backup_files() == [keys[0], keys[2], keys[1]]

    def test_invalid_files_self_heal(self, local_target, local_storage):
        """Test malformed entries are deleted during discovery."""
        valid = f"world_backups/{_unix(2024, 1)}_world.tar.gz"
        for key in [valid, 'world_backups/invalid.zip', 'world_backups/short.tar.gz',
                    'world_backups/notatime_world.tar.gz', 'world_backups/1704067200.tar.gz']:
            local_storage.put(key, b'x')

        assert local_target.get_backup_files() == [valid]
        assert local_storage.list('world_backups') == [valid]

    def test_sibling_directory_untouched(self, local_target, local_storage):
        local_storage.put('world_backups_old/notes.txt', b'keep')

        assert local_target.get_backup_files() == []
        assert local_storage.list('world_backups_old') == ['world_backups_old/notes.txt']

    def test_protected_and_temp_files_ignored(self, local_target, local_storage):
        """Test the manual world and temp files are neither listed nor deleted."""
        local_storage.put('world_backups/manual.tar.gz', b'm')
        local_storage.put('world_backups/temp_upload.tar.gz', b't')

        assert local_target.get_backup_files() == []
        assert len(local_storage.list('world_backups')) == 2

    def test_self_heal_delete_failure(self):
        storage = MagicMock()
        storage.list.return_value = ['world_backups/invalid.zip']
        storage.delete.side_effect = StorageError('permission denied')
        target = LocalBackupTarget(storage, 'world_backups', 2)

        with pytest.raises(BackupTargetError, match='invalid.zip'):
            target.get_backup_files()

    def test_too_many_files(self):
        storage = MagicMock()
        storage.list.return_value = [f'world_backups/{i}.tar.gz' for i in range(11)]
        target = LocalBackupTarget(storage, 'world_backups', 2, max_files=10)

        with pytest.raises(BackupTargetError, match='too many backup files'):
            target.get_backup_files()
        storage.delete.assert_not_called()

    def test_list_failure(self):
        storage = MagicMock()
        storage.list.side_effect = StorageError('unreachable')
        target = LocalBackupTarget(storage, 'world_backups', 2)

        with pytest.raises(BackupTargetError, match='unreachable'):
            target.get_backup_files()

    @pytest.mark.parametrize('kwargs', [
        {'storage': None},
        {'backup_dir': ''},
        {'max_backups': 0},
        {'extension': 'tar.gz'},
    ])
    def test_constructor_validation(self, local_storage, kwargs):
        args = {'storage': local_storage, 'backup_dir': 'world_backups', 'max_backups': 2}
        args.update(kwargs)
        with pytest.raises(ValueError):
            LocalBackupTarget(**args)


class TestLocalBackupDirs:
    """Test streaming backups through a local target."""

    def test_backup_dirs(self, local_target, local_storage, world_dir, manifest):
        result = local_target.backup_dirs([str(world_dir)], 'world', manifest)

        assert isinstance(result, Result)
        assert local_storage.list('world_backups') == [result.key]
        assert [w.uri for w in manifest.worlds] == [result.key]
        assert len(local_storage.get(result.key)) == result.size

    @freeze_time('2024-01-15 10:30:00')
    def test_backup_dirs_throttled(self, local_target, local_storage, world_dir, manifest):
        local_storage.put(f"world_backups/{_unix(2024, 1, 2)}_world.tar.gz", b'old')

        assert local_target.backup_dirs([str(world_dir)], 'world', manifest) is None
        assert manifest.worlds == []

    def test_backup_dirs_local_copy(self, local_target, world_dir, tmp_path):
        copy_path = tmp_path / 'copy.tar.gz'

        result = local_target.backup_dirs([str(world_dir)], 'world', local_copy_path=str(copy_path))

        assert result.local_path == str(copy_path)
        assert copy_path.exists()


class TestRemoteBackupTarget:
    """Test RemoteBackupTarget against mocked S3."""

    @freeze_time('2024-01-15 10:30:00')
    def test_backup_key(self, remote_target, s3_storage, manifest):
        world = remote_target.backup(b'archive', 'world', manifest)

        assert world.uri == 'worlds/world/20240115103000.tar.gz'
        assert s3_storage.get('worlds/world/20240115103000.tar.gz') == b'archive'
        assert manifest.get_latest_world() == world

    @freeze_time('2024-01-15 10:30:00')
    def test_never_throttled(self, remote_target, s3_storage):
        """Test every remote backup writes a new key."""
        remote_target.backup(b'one', 'world')
        with freeze_time('2024-01-15 10:31:00'):
            remote_target.backup(b'two', 'world')

        assert len(s3_storage.list('worlds')) == 2

    def test_backup_dirs(self, remote_target, s3_storage, world_dir, manifest):
        result = remote_target.backup_dirs([str(world_dir)], 'world', manifest)

        assert result.key.startswith('worlds/world/')
        assert s3_storage.list('worlds') == [result.key]
        assert manifest.worlds[0].uri == result.key

    def test_invalid_file_self_heal(self, remote_target, s3_bucket):
        """Test 'invalid.zip' is deleted regardless of the cap."""
        s3_bucket.put_object(Key='worlds/world/20240101000000.tar.gz', Body=b'1')
        s3_bucket.put_object(Key='worlds/invalid.zip', Body=b'bad')
        s3_bucket.put_object(Key='worlds/world/2024.tar.gz', Body=b'bad')
        s3_bucket.put_object(Key='worlds/world/20241399000000.tar.gz', Body=b'bad')

        assert remote_target.get_backup_files() == ['worlds/world/20240101000000.tar.gz']
        keys = [obj.key for obj in s3_bucket.objects.all()]
        assert keys == ['worlds/world/20240101000000.tar.gz']

    def test_sibling_prefix_untouched(self, remote_target, s3_bucket):
        """Test keys that merely share the directory name prefix are not discovered."""
        s3_bucket.put_object(Key='worlds_archive/readme.txt', Body=b'keep')
        s3_bucket.put_object(Key='worlds.json', Body=b'{}')
        s3_bucket.put_object(Key='worlds/world/20240101000000.tar.gz', Body=b'1')

        assert remote_target.get_backup_files() == ['worlds/world/20240101000000.tar.gz']
        keys = sorted(obj.key for obj in s3_bucket.objects.all())
        assert keys == ['worlds.json', 'worlds/world/20240101000000.tar.gz', 'worlds_archive/readme.txt']

    def test_manual_world_kept(self, remote_target, s3_bucket):
        s3_bucket.put_object(Key='worlds/manual.tar.gz', Body=b'm')

        assert remote_target.get_backup_files() == []
        assert [obj.key for obj in s3_bucket.objects.all()] == ['worlds/manual.tar.gz']


class TestDataRetention:
    """Test the numeric retention cap."""

    def _seed(self, s3_bucket, count):
        keys = [f'worlds/world/2024{month:02d}01000000.tar.gz' for month in range(1, count + 1)]
        for key in keys:
            s3_bucket.put_object(Key=key, Body=b'x')
        return keys

    def test_eight_backups_cap_five(self, remote_target, s3_bucket):
        """Test 8 backups with cap 5 deletes exactly the 3 oldest."""
        keys = self._seed(s3_bucket, 8)

        deleted = remote_target.data_retention()

        assert sorted(deleted) == keys[:3]
        remaining = sorted(obj.key for obj in s3_bucket.objects.all())
        assert remaining == keys[3:]

    def test_under_cap(self, remote_target, s3_bucket):
        """Test 3 backups with cap 5 deletes nothing."""
        self._seed(s3_bucket, 3)

        assert remote_target.data_retention() == []
        assert len(list(s3_bucket.objects.all())) == 3

    def test_delete_failure(self):
        storage = MagicMock()
        storage.list.return_value = [f'worlds/world/2024{m:02d}01000000.tar.gz' for m in range(1, 4)]
        storage.delete.side_effect = StorageError('denied')
        target = RemoteBackupTarget(storage, 'worlds', 1)

        with pytest.raises(BackupTargetError, match='denied'):
            target.data_retention()
        storage.delete.assert_called_once_with('worlds/world/20240201000000.tar.gz')
