"""
Backup module for Ritual.

This module handles the core backup functionality including:
- Streaming archive push/pull over a bounded pipe
- Tar+gzip encoding
- Storage (S3/R2 and local)
- Backup targets with naming and throttling
- Retention policy enforcement
"""

from .streamer import (
    CancellationToken,
    ConflictStrategy,
    PullConfig,
    PushConfig,
    Result,
    pull,
    push,
)
from .storage import LocalStorage, S3Storage
from .targets import LocalBackupTarget, RemoteBackupTarget
from .retention import LocalRetention, RemoteRetention

__all__ = [
    'CancellationToken',
    'ConflictStrategy',
    'PullConfig',
    'PushConfig',
    'Result',
    'pull',
    'push',
    'S3Storage',
    'LocalStorage',
    'LocalBackupTarget',
    'RemoteBackupTarget',
    'LocalRetention',
    'RemoteRetention',
]
