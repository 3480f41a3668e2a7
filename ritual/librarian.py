"""
Manifest persistence against the local and remote storages.

The manifest is always read and written whole; there is no merge, the last
writer wins.
"""

import logging

from ritual.backup.storage import StorageError
from ritual.models import Manifest, ManifestError

logger = logging.getLogger(__name__)


class ManifestStoreError(Exception):
    """Raised when a manifest cannot be loaded or saved."""
    pass


class ManifestStore:
    """Loads and saves the manifest under one key in each storage."""

    def __init__(self, local_storage, remote_storage, filename: str = 'manifest.json'):
        if local_storage is None:
            raise ValueError("local_storage cannot be None")
        if remote_storage is None:
            raise ValueError("remote_storage cannot be None")
        if not filename:
            raise ValueError("filename cannot be empty")

        self.local_storage = local_storage
        self.remote_storage = remote_storage
        self.filename = filename

    def get_local_manifest(self) -> Manifest:
        return self._load(self.local_storage, 'local')

    def get_remote_manifest(self) -> Manifest:
        return self._load(self.remote_storage, 'remote')

    def save_local_manifest(self, manifest: Manifest):
        self._save(self.local_storage, manifest, 'local')

    def save_remote_manifest(self, manifest: Manifest):
        self._save(self.remote_storage, manifest, 'remote')

    def _load(self, storage, where: str) -> Manifest:
        """
        Read and decode the manifest from a storage.

        Raises:
            ManifestStoreError: If the key is missing, empty or undecodable.
                KeyNotFoundError is available as the cause.
        """
        try:
            data = storage.get(self.filename)
        except StorageError as e:
            raise ManifestStoreError(f"Failed to get {where} manifest: {e}") from e

        if not data:
            raise ManifestStoreError(f"Failed to get {where} manifest: empty data")

        try:
            return Manifest.from_json(data)
        except ManifestError as e:
            raise ManifestStoreError(f"Failed to decode {where} manifest: {e}") from e

    def _save(self, storage, manifest: Manifest, where: str):
        if manifest is None:
            raise ValueError("manifest cannot be None")

        data = manifest.to_json().encode('utf-8')
        try:
            storage.put(self.filename, data)
        except StorageError as e:
            raise ManifestStoreError(f"Failed to save {where} manifest: {e}") from e

        logger.debug(f"Saved {where} manifest ({len(data)} bytes)")
