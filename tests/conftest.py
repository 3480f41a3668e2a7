"""
Shared pytest fixtures for Ritual tests.

This module provides fixtures for:
- Testing configuration rooted in a temporary directory
- Local storage and backup targets
- Mocked S3 (moto) storage and remote targets
- Sample world directories and hand-built archives
"""

import io
import os
import tarfile

import pytest
import boto3
from moto import mock_aws

from ritual.config import TestingConfig
from ritual.events import CollectingSink
from ritual.models import Manifest
from ritual.backup.storage import LocalStorage, S3Storage
from ritual.backup.targets import LocalBackupTarget, RemoteBackupTarget


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Keep boto3 away from real credentials and endpoints."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')
    for name in ('RITUAL_ROOT', 'RITUAL_ENV', 'RITUAL_LOCAL_MAX_BACKUPS', 'RITUAL_REMOTE_MAX_BACKUPS',
                 'RITUAL_LOG_LEVEL', 'R2_ACCOUNT_ID', 'R2_ACCESS_KEY_ID', 'R2_SECRET_ACCESS_KEY',
                 'R2_BUCKET', 'S3_REGION', 'S3_ENDPOINT_URL'):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config(tmp_path):
    """Testing configuration rooted in a temporary directory."""
    return TestingConfig(root_path=str(tmp_path / 'ritual'))


@pytest.fixture
def events():
    """Event sink that records everything it receives."""
    return CollectingSink()


@pytest.fixture
def local_storage(tmp_path):
    """LocalStorage over a fresh directory."""
    return LocalStorage(str(tmp_path / 'storage'), progress_interval=0.01)


@pytest.fixture
def local_target(local_storage):
    """Local backup target with the default cap of 2."""
    return LocalBackupTarget(
        local_storage,
        'world_backups',
        2,
        protected_names=('manual.tar.gz',),
    )


@pytest.fixture
def s3_bucket():
    """
    Mocked S3 bucket.

    Yields the boto3 Bucket resource; everything inside the test talks to moto.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        bucket = s3.create_bucket(Bucket='test-bucket')
        yield bucket


@pytest.fixture
def s3_storage(s3_bucket):
    """S3Storage bound to the mocked bucket."""
    return S3Storage(
        access_key='test_key',
        secret_key='test_secret',
        bucket_name='test-bucket',
        region='us-east-1',
        progress_interval=0.01,
    )


@pytest.fixture
def remote_target(s3_storage):
    """Remote backup target with the default cap of 5."""
    return RemoteBackupTarget(
        s3_storage,
        'worlds',
        5,
        protected_names=('manual.tar.gz',),
    )


@pytest.fixture
def manifest():
    """Empty, unlocked manifest."""
    return Manifest(ritual_version='0.1.0', instance_version='1.21.1')


@pytest.fixture
def world_dir(tmp_path):
    """
    Create a sample world directory.

    Structure:
    - world/level.dat
    - world/region/r.0.0.mca
    - world/region/r.0.1.mca
    - world/playerdata/ (empty)
    """
    world = tmp_path / 'src' / 'world'
    (world / 'region').mkdir(parents=True)
    (world / 'playerdata').mkdir()
    (world / 'level.dat').write_bytes(b'level data')
    (world / 'region' / 'r.0.0.mca').write_bytes(os.urandom(4096))
    (world / 'region' / 'r.0.1.mca').write_bytes(b'region' * 1000)
    return world


@pytest.fixture
def make_archive():
    """
    Build a tar.gz archive in memory from (name, content) pairs.

    Entries with content None become directories. Names are used verbatim,
    so traversal names like '../escape.txt' can be produced.
    """
    def _make(entries):
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode='w:gz') as tar:
            for name, content in entries:
                info = tarfile.TarInfo(name)
                if content is None:
                    info.type = tarfile.DIRTYPE
                    info.mode = 0o755
                    tar.addfile(info)
                else:
                    info.size = len(content)
                    info.mode = 0o644
                    tar.addfile(info, io.BytesIO(content))
        return buffer.getvalue()

    return _make


@pytest.fixture
def archive_storage(local_storage):
    """
    Store raw archive bytes under a key in local storage.

    Returns a function (data, key='archive.tar.gz') -> key.
    """
    def _store(data, key='archive.tar.gz'):
        local_storage.put(key, data)
        return key

    return _store
