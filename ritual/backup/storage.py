"""
Storage handlers for world archives and manifests.

Supports:
- S3Storage: S3-compatible object storage (AWS S3, Cloudflare R2)
- LocalStorage: A directory on the local filesystem

Both implement the key/value storage port (get/put/delete/list/copy) and the
streaming transport port (upload/download). Keys always use forward slashes.
"""

import logging
import os
import shutil
import time
from abc import ABC, abstractmethod
from typing import Any, BinaryIO, Callable, Dict, List, Optional

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import BotoCoreError, ClientError

from ritual.events import EventSink, UpdateEvent, send_event
from ritual.utils.paths import PathConfinementError, confine, normalize_key

logger = logging.getLogger(__name__)

DEFAULT_PROGRESS_INTERVAL = 5.0
COPY_CHUNK_SIZE = 32 * 1024
MB = 1024 * 1024


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class KeyNotFoundError(StorageError):
    """Raised when a key does not exist."""
    pass


class InvalidKeyError(StorageError):
    """Raised when a key would resolve outside the storage root."""
    pass


class StorageRepository(ABC):
    """Key/value byte storage with prefix listing."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return the bytes stored under key."""

    @abstractmethod
    def put(self, key: str, data: bytes):
        """Store data under key, replacing any previous value."""

    @abstractmethod
    def delete(self, key: str):
        """Remove key."""

    @abstractmethod
    def list(self, prefix: str) -> List[str]:
        """Return every key under prefix."""

    @abstractmethod
    def copy(self, source_key: str, dest_key: str):
        """Copy the value of source_key to dest_key."""


class StreamUploader(ABC):
    """Streaming upload port."""

    @abstractmethod
    def upload(self, bucket: str, key: str, body: BinaryIO, size_hint: int = 0) -> int:
        """Stream body to key and return the number of bytes written."""


class StreamDownloader(ABC):
    """Streaming download port."""

    @abstractmethod
    def download(self, bucket: str, key: str) -> BinaryIO:
        """Return a readable stream of the object stored under key."""


class ProgressReader:
    """
    Reader wrapper that reports transfer progress at a fixed interval.

    Each report carries the cumulative byte count and, when the total size is
    known, a percentage capped at 99 until the stream is exhausted.
    """

    def __init__(
        self,
        reader: BinaryIO,
        key: str,
        size_hint: int = 0,
        operation: str = 'upload',
        events: Optional[EventSink] = None,
        interval: float = DEFAULT_PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.reader = reader
        self.key = key
        self.size_hint = size_hint or 0
        self.operation = operation
        self.events = events
        self.interval = interval
        self.clock = clock
        self.bytes_read = 0
        self.completed = False
        self._last_report = clock()

    def read(self, size: int = -1) -> bytes:
        data = self.reader.read(size)

        if data:
            self.bytes_read += len(data)
            now = self.clock()
            if now - self._last_report >= self.interval:
                self._last_report = now
                self._report()
        elif size != 0:
            self.finish()

        return data

    def readable(self) -> bool:
        return True

    def close(self):
        close = getattr(self.reader, 'close', None)
        if close is not None:
            close()

    def finish(self):
        """Report completion once: full byte count and, if the size is known, 100%."""
        if self.completed:
            return
        self.completed = True

        data: Dict[str, Any] = {'key': self.key, 'bytes': self.bytes_read}
        if self.size_hint > 0:
            data['percent'] = 100.0
        logger.info(f"{self.operation.capitalize()} completed: {self.key} ({self.bytes_read / MB:.2f} MB)")
        send_event(self.events, UpdateEvent(self.operation, f"{self.operation} completed", data))

    def percent(self) -> Optional[float]:
        if self.size_hint <= 0:
            return None
        return min(self.bytes_read / self.size_hint * 100, 99.0)

    def _report(self):
        data: Dict[str, Any] = {'key': self.key, 'bytes': self.bytes_read}
        percent = self.percent()
        if percent is not None:
            data['percent'] = round(percent, 1)
            logger.info(f"{self.operation.capitalize()} progress: {self.key} {self.bytes_read / MB:.2f} MB ({percent:.1f}%)")
        else:
            logger.info(f"{self.operation.capitalize()} progress: {self.key} {self.bytes_read / MB:.2f} MB")

        send_event(self.events, UpdateEvent(self.operation, f"{self.operation} progress", data))


def _client_error_code(e: ClientError) -> str:
    return e.response.get('Error', {}).get('Code', 'Unknown')


class S3Storage(StorageRepository, StreamUploader, StreamDownloader):
    """
    Handler for S3-compatible object storage.

    Works against AWS S3 directly or against Cloudflare R2 through
    ``endpoint_url``. Streaming uploads use sequential multipart parts so
    memory stays bounded by the part size.
    """

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        bucket_name: str,
        region: str = 'us-east-1',
        endpoint_url: Optional[str] = None,
        part_size: int = 5 * MB,
        concurrency: int = 1,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
        events: Optional[EventSink] = None,
    ):
        """
        Initialize S3 storage handler.

        Args:
            access_key: Access key ID
            secret_key: Secret access key
            bucket_name: Bucket name
            region: Region name ('auto' for R2)
            endpoint_url: Custom endpoint (R2 account endpoint)
            part_size: Multipart upload part size in bytes
            concurrency: Parallel part uploads (1 = sequential)
            progress_interval: Seconds between progress reports
            events: Optional sink for progress events
        """
        if not bucket_name:
            raise ValueError("bucket_name cannot be empty")

        self.bucket_name = bucket_name
        self.region = region
        self.progress_interval = progress_interval
        self.events = events
        self.transfer_config = TransferConfig(
            multipart_threshold=part_size,
            multipart_chunksize=part_size,
            max_concurrency=concurrency,
            use_threads=concurrency > 1,
        )

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url,
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}") from e

    def get(self, key: str) -> bytes:
        key = normalize_key(key)
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
            return response['Body'].read()
        except ClientError as e:
            error_code = _client_error_code(e)
            if error_code in ('NoSuchKey', '404'):
                raise KeyNotFoundError(f"key not found: {key}") from e
            raise StorageError(f"S3 get failed for {key} ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"S3 get failed for {key}: {e}") from e

    def put(self, key: str, data: bytes):
        key = normalize_key(key)
        try:
            self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=data)
        except ClientError as e:
            error_code = _client_error_code(e)
            raise StorageError(f"S3 put failed for {key} ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"S3 put failed for {key}: {e}") from e

    def delete(self, key: str):
        """
        Delete an object from S3.

        Args:
            key: S3 object key to delete

        Raises:
            StorageError: If deletion fails
        """
        key = normalize_key(key)
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            error_code = _client_error_code(e)
            raise StorageError(f"S3 delete failed for {key} ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"S3 delete failed for {key}: {e}") from e

    def list_objects(self, prefix: str) -> List[Dict[str, Any]]:
        """
        List objects in S3 with given prefix.

        Args:
            prefix: S3 key prefix to filter by

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys

        Raises:
            StorageError: If listing fails
        """
        prefix = normalize_key(prefix)
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append({
                        'Key': obj['Key'],
                        'LastModified': obj['LastModified'],
                        'Size': obj['Size']
                    })

            return objects

        except ClientError as e:
            error_code = _client_error_code(e)
            raise StorageError(f"S3 list failed for prefix {prefix} ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"S3 list failed for prefix {prefix}: {e}") from e

    def list(self, prefix: str) -> List[str]:
        return [obj['Key'] for obj in self.list_objects(prefix)]

    def copy(self, source_key: str, dest_key: str):
        if not source_key:
            raise ValueError("source key cannot be empty")
        if not dest_key:
            raise ValueError("destination key cannot be empty")

        source_key = normalize_key(source_key)
        dest_key = normalize_key(dest_key)
        try:
            self.s3_client.copy_object(
                Bucket=self.bucket_name,
                Key=dest_key,
                CopySource={'Bucket': self.bucket_name, 'Key': source_key}
            )
        except ClientError as e:
            error_code = _client_error_code(e)
            raise StorageError(f"S3 copy from {source_key} to {dest_key} failed ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"S3 copy from {source_key} to {dest_key} failed: {e}") from e

    def upload(self, bucket: str, key: str, body: BinaryIO, size_hint: int = 0) -> int:
        """
        Stream body to S3 using multipart upload.

        Args:
            bucket: Bucket name (empty = this handler's bucket)
            key: Object key
            body: Readable stream; need not be seekable
            size_hint: Expected size for progress percentages (0 = unknown)

        Returns:
            Number of bytes read from body

        Raises:
            StorageError: If upload fails
        """
        bucket = bucket or self.bucket_name
        key = normalize_key(key)

        logger.info(f"Starting upload: {key}")
        reader = ProgressReader(body, key, size_hint, 'upload', self.events, self.progress_interval)

        try:
            self.s3_client.upload_fileobj(reader, bucket, key, Config=self.transfer_config)
        except ClientError as e:
            error_code = _client_error_code(e)
            raise StorageError(f"S3 upload failed for {key} ({error_code}): {e}") from e
        except Exception as e:
            raise StorageError(f"Failed to upload {key} to S3: {e}") from e

        reader.finish()
        return reader.bytes_read

    def download(self, bucket: str, key: str) -> ProgressReader:
        """
        Open a streaming download of an object.

        Returns:
            Reader over the object body; close it when done

        Raises:
            KeyNotFoundError: If the object does not exist
            StorageError: If the request fails
        """
        bucket = bucket or self.bucket_name
        key = normalize_key(key)

        try:
            response = self.s3_client.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            error_code = _client_error_code(e)
            if error_code in ('NoSuchKey', '404'):
                raise KeyNotFoundError(f"key not found: {key}") from e
            raise StorageError(f"S3 download failed for {key} ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"S3 download failed for {key}: {e}") from e

        size = response.get('ContentLength') or 0
        logger.info(f"Starting download: {key} ({size / MB:.2f} MB)")
        return ProgressReader(response['Body'], key, size, 'download', self.events, self.progress_interval)

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _client_error_code(e)
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}") from e
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}") from e
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}") from e


class LocalStorage(StorageRepository, StreamUploader, StreamDownloader):
    """
    Handler for storage in a local directory.

    Keys are relative paths beneath ``base_path``; any key that would
    resolve outside it is rejected.
    """

    bucket_name = 'local'

    def __init__(
        self,
        base_path: str,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
        events: Optional[EventSink] = None,
    ):
        """
        Initialize local storage handler.

        Args:
            base_path: Root directory for stored keys
            progress_interval: Seconds between progress reports
            events: Optional sink for progress events
        """
        if not base_path:
            raise ValueError("base_path cannot be empty")

        self.base_path = os.path.abspath(base_path)
        self.progress_interval = progress_interval
        self.events = events

        try:
            os.makedirs(self.base_path, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory {self.base_path}: {e}") from e

    def get_full_path(self, key: str) -> str:
        """
        Get full filesystem path for a key.

        Raises:
            InvalidKeyError: If the key escapes the storage root
        """
        try:
            return confine(self.base_path, key)
        except PathConfinementError as e:
            raise InvalidKeyError(str(e)) from e

    def get(self, key: str) -> bytes:
        path = self.get_full_path(key)
        try:
            with open(path, 'rb') as f:
                return f.read()
        except FileNotFoundError as e:
            raise KeyNotFoundError(f"key not found: {key}") from e
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    def put(self, key: str, data: bytes):
        path = self.get_full_path(key)
        temp_path = f"{path}.tmp"
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(temp_path, 'wb') as f:
                f.write(data)
            os.replace(temp_path, path)
        except OSError as e:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise StorageError(f"Failed to write {key}: {e}") from e

    def delete(self, key: str):
        """
        Delete a file or directory tree.

        Raises:
            KeyNotFoundError: If nothing exists under key
            StorageError: If deletion fails
        """
        path = self.get_full_path(key)
        if path == self.base_path:
            raise InvalidKeyError("refusing to delete the storage root")

        try:
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.remove(path)
        except FileNotFoundError as e:
            raise KeyNotFoundError(f"key not found: {key}") from e
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {key}: {e}") from e
        except OSError as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e

    def list(self, prefix: str) -> List[str]:
        """
        List every file key under a directory prefix.

        Returns:
            Sorted forward-slash keys relative to the storage root; empty if
            the prefix does not exist
        """
        path = self.get_full_path(prefix or '')

        if not os.path.exists(path):
            return []
        if os.path.isfile(path):
            return [self._key_for(path)]

        try:
            keys = []
            for dirpath, _dirnames, filenames in os.walk(path):
                for filename in filenames:
                    keys.append(self._key_for(os.path.join(dirpath, filename)))
            return sorted(keys)
        except OSError as e:
            raise StorageError(f"Failed to list {prefix}: {e}") from e

    def copy(self, source_key: str, dest_key: str):
        if not source_key:
            raise ValueError("source key cannot be empty")
        if not dest_key:
            raise ValueError("destination key cannot be empty")

        source = self.get_full_path(source_key)
        dest = self.get_full_path(dest_key)

        if not os.path.exists(source):
            raise KeyNotFoundError(f"source key not found: {source_key}")

        try:
            if os.path.isdir(source):
                shutil.copytree(source, dest, dirs_exist_ok=True)
            else:
                os.makedirs(os.path.dirname(dest), exist_ok=True)
                shutil.copy2(source, dest)
        except OSError as e:
            raise StorageError(f"Failed to copy {source_key} to {dest_key}: {e}") from e

    def upload(
        self,
        bucket: str,
        key: str,
        body: BinaryIO,
        size_hint: int = 0,
        cancellation_check: Optional[Callable[[], None]] = None,
    ) -> int:
        """
        Stream body into a file under key. The bucket is ignored.

        A partially written file is removed on failure or cancellation.

        Returns:
            Number of bytes written
        """
        if body is None:
            raise ValueError("body cannot be None")

        path = self.get_full_path(key)
        reader = ProgressReader(body, normalize_key(key), size_hint, 'upload', self.events, self.progress_interval)

        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, 'wb') as f:
                while True:
                    if cancellation_check is not None:
                        cancellation_check()
                    chunk = reader.read(COPY_CHUNK_SIZE)
                    if not chunk:
                        break
                    f.write(chunk)
        except BaseException as e:
            if os.path.exists(path):
                os.remove(path)
            if isinstance(e, OSError):
                raise StorageError(f"Failed to write {key}: {e}") from e
            raise

        reader.finish()
        return reader.bytes_read

    def download(self, bucket: str, key: str) -> ProgressReader:
        path = self.get_full_path(key)
        try:
            size = os.path.getsize(path)
            f = open(path, 'rb')
        except FileNotFoundError as e:
            raise KeyNotFoundError(f"key not found: {key}") from e
        except OSError as e:
            raise StorageError(f"Failed to open {key}: {e}") from e

        return ProgressReader(f, normalize_key(key), size, 'download', self.events, self.progress_interval)

    def _key_for(self, path: str) -> str:
        return normalize_key(os.path.relpath(path, self.base_path))
