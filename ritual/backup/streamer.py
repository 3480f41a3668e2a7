"""
Streaming archive pipeline.

push(): walk directories -> tar -> gzip -> bounded pipe -> [tee to local file] -> upload
pull(): download -> gunzip -> untar -> extract with conflict handling

push() runs exactly two workers, a producer that encodes the archive and a
consumer that uploads it, joined by a bounded pipe. The archive is never
held in memory as a whole.
"""

import enum
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional

from ritual.events import ErrorEvent, EventSink, FinishEvent, StartEvent, send_event
from ritual.utils.paths import has_parent_reference, is_within, normalize_key
from .compression import (
    CompressionError,
    HashingWriter,
    extract_member_to,
    iter_members,
    open_archive,
    write_archive,
)
from .pipe import PipeClosedError, make_pipe

logger = logging.getLogger(__name__)

DEFAULT_PIPE_CAPACITY = 1024 * 1024
READ_CHUNK_SIZE = 64 * 1024


class StreamerError(Exception):
    """Base class for archive pipeline failures."""
    pass


class PathTraversalError(StreamerError):
    """Raised when an archive entry would be written outside the destination."""
    pass


class FileConflictError(StreamerError):
    """Raised by the Fail conflict strategy when a target file already exists."""
    pass


class OperationCancelled(StreamerError):
    """Raised when a cancellation token is triggered."""
    pass


class UploadError(StreamerError):
    """Raised when the streaming upload fails."""
    pass


class DownloadError(StreamerError):
    """Raised when the streaming download fails."""
    pass


class ConflictStrategy(enum.Enum):
    """What pull() does when a regular file already exists at the target path."""
    REPLACE = 'replace'  # overwrite
    SKIP = 'skip'        # keep the existing file
    BACKUP = 'backup'    # rename existing to <name>.bak
    FAIL = 'fail'        # abort the pull


class CancellationToken:
    """
    Thread-safe cancellation flag.

    Calling the token checks it: it raises OperationCancelled once cancelled,
    so it can be passed anywhere a ``cancellation_check`` callable is accepted.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def __call__(self):
        if self._event.is_set():
            raise OperationCancelled("operation cancelled")


@dataclass
class PushConfig:
    """Configuration for push()."""
    dirs: List[str]
    bucket: str
    key: str
    local_path: str = ''  # empty = no local copy
    should_backup: Optional[Callable[[], bool]] = None  # evaluated once, before streaming
    size_hint: int = 0
    events: Optional[EventSink] = None
    pipe_capacity: int = DEFAULT_PIPE_CAPACITY


@dataclass
class PullConfig:
    """Configuration for pull()."""
    bucket: str
    key: str
    dest: str
    conflict: ConflictStrategy = ConflictStrategy.REPLACE
    filter: Optional[Callable[[str], bool]] = None  # None = extract everything
    events: Optional[EventSink] = None


@dataclass
class Result:
    """Outcome of a successful push()."""
    size: int = 0  # bytes of the compressed stream
    checksum: str = ''  # SHA-256 hex of the compressed stream
    key: str = ''
    local_path: str = ''  # empty if no local copy was kept


@dataclass
class _ConsumerOutcome:
    local_path: str = ''
    bytes_uploaded: int = 0


def push(cfg: PushConfig, uploader, cancellation_check: Optional[Callable[[], None]] = None) -> Result:
    """
    Stream directories as a tar.gz archive to the uploader.

    Args:
        cfg: Push configuration
        uploader: Object with ``upload(bucket, key, body, size_hint) -> int``
        cancellation_check: Polled between filesystem entries; raises to cancel

    Returns:
        Result with size and checksum of the compressed stream

    Raises:
        ValueError: If required configuration is missing (before any I/O)
        OperationCancelled: If the token is cancelled
        CompressionError: If the producer fails (takes precedence over consumer errors)
        UploadError: If the upload fails
    """
    if not cfg.bucket:
        raise ValueError("bucket cannot be empty")
    if not cfg.key:
        raise ValueError("key cannot be empty")
    if not cfg.dirs:
        raise ValueError("dirs cannot be empty")
    if uploader is None:
        raise ValueError("uploader cannot be None")

    if cancellation_check is not None:
        cancellation_check()

    key = normalize_key(cfg.key)
    do_local_backup = bool(cfg.local_path) and (cfg.should_backup is None or cfg.should_backup())

    send_event(cfg.events, StartEvent('push'))
    logger.info(f"Pushing {len(cfg.dirs)} director{'y' if len(cfg.dirs) == 1 else 'ies'} to {key}")

    reader, writer = make_pipe(cfg.pipe_capacity)
    counter = HashingWriter(writer)

    def producer():
        try:
            write_archive(cfg.dirs, counter, cancellation_check)
        except BaseException as e:
            writer.close(e)
            raise
        writer.close()

    def consumer() -> _ConsumerOutcome:
        try:
            return _run_consumer(cfg, key, reader, uploader, do_local_backup)
        except BaseException as e:
            reader.close(e)
            raise

    with ThreadPoolExecutor(max_workers=2, thread_name_prefix='ritual-push') as pool:
        producer_future = pool.submit(producer)
        consumer_future = pool.submit(consumer)
        producer_error = producer_future.exception()
        consumer_error = consumer_future.exception()

    # A producer that only saw the consumer hang up has nothing to add
    if isinstance(producer_error, PipeClosedError) and consumer_error is not None:
        producer_error = None

    # Producer errors are closer to the root cause than what the consumer observed
    error = producer_error or consumer_error
    if error is not None:
        send_event(cfg.events, ErrorEvent('push', error))
        if producer_error is None:
            raise error
        if isinstance(producer_error, (StreamerError, CompressionError)):
            raise producer_error
        raise CompressionError(f"Failed to encode archive for {key}: {producer_error}") from producer_error

    outcome = consumer_future.result()
    result = Result(
        size=counter.size,
        checksum=counter.checksum,
        key=key,
        local_path=outcome.local_path,
    )

    logger.info(f"Pushed {key} ({result.size} bytes, sha256 {result.checksum})")
    send_event(cfg.events, FinishEvent('push'))
    return result


class _TeeReader:
    """Reader that copies everything it reads into a second file."""

    def __init__(self, reader, copy):
        self.reader = reader
        self.copy = copy

    def read(self, size: int = -1) -> bytes:
        data = self.reader.read(size)
        if data:
            self.copy.write(data)
        return data

    def readable(self) -> bool:
        return True


def _run_consumer(cfg: PushConfig, key: str, reader, uploader, do_local_backup: bool) -> _ConsumerOutcome:
    body = reader
    local_file = None

    if do_local_backup:
        try:
            parent = os.path.dirname(cfg.local_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            local_file = open(cfg.local_path, 'wb')
        except OSError as e:
            raise UploadError(f"Failed to set up local backup {cfg.local_path}: {e}") from e
        body = _TeeReader(reader, local_file)

    try:
        uploaded = uploader.upload(cfg.bucket, key, body, cfg.size_hint)
    except BaseException as e:
        if local_file is not None:
            local_file.close()
            _remove_partial(cfg.local_path)
        if isinstance(e, StreamerError) or not isinstance(e, Exception):
            raise
        raise UploadError(f"Upload of {key} failed: {e}") from e

    outcome = _ConsumerOutcome(bytes_uploaded=uploaded or 0)
    if local_file is not None:
        try:
            local_file.close()
        except OSError as e:
            _remove_partial(cfg.local_path)
            raise UploadError(f"Failed to finalize local backup {cfg.local_path}: {e}") from e
        outcome.local_path = cfg.local_path

    reader.close()
    return outcome


def _remove_partial(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def pull(cfg: PullConfig, downloader, cancellation_check: Optional[Callable[[], None]] = None):
    """
    Download a tar.gz archive and extract it into ``cfg.dest``.

    Extraction is sequential in archive order. Cancellation is polled before
    each entry; already extracted files are left in place.

    Args:
        cfg: Pull configuration
        downloader: Object with ``download(bucket, key)`` returning a readable stream
        cancellation_check: Polled before each entry; raises to cancel

    Raises:
        ValueError: If required configuration is missing (before any I/O)
        PathTraversalError: If an entry resolves outside the destination
        FileConflictError: If the FAIL strategy meets an existing file
        DownloadError: If the download fails
        CompressionError: If the archive is malformed
    """
    if not cfg.bucket:
        raise ValueError("bucket cannot be empty")
    if not cfg.key:
        raise ValueError("key cannot be empty")
    if not cfg.dest:
        raise ValueError("dest cannot be empty")
    if downloader is None:
        raise ValueError("downloader cannot be None")
    if not isinstance(cfg.conflict, ConflictStrategy):
        raise ValueError(f"Invalid conflict strategy: {cfg.conflict!r}")

    if cancellation_check is not None:
        cancellation_check()

    dest = os.path.abspath(cfg.dest)
    os.makedirs(dest, exist_ok=True)

    key = normalize_key(cfg.key)
    send_event(cfg.events, StartEvent('pull'))
    logger.info(f"Pulling {key} into {dest}")

    try:
        try:
            body = downloader.download(cfg.bucket, key)
        except StreamerError:
            raise
        except Exception as e:
            raise DownloadError(f"Download of {key} failed: {e}") from e

        try:
            gz, tar = open_archive(body)
            try:
                extracted = _extract_all(tar, dest, cfg, cancellation_check)
            finally:
                tar.close()
                gz.close()
        finally:
            close = getattr(body, 'close', None)
            if close is not None:
                close()
    except BaseException as e:
        send_event(cfg.events, ErrorEvent('pull', e))
        raise

    logger.info(f"Pulled {key}: {extracted} entries extracted")
    send_event(cfg.events, FinishEvent('pull'))


def _extract_all(tar, dest: str, cfg: PullConfig, cancellation_check) -> int:
    extracted = 0
    for member in _members_with_cancellation(tar, cancellation_check):
        if cfg.filter is not None and not cfg.filter(member.name):
            continue

        target = _safe_target(dest, member.name)

        if member.isdir():
            try:
                os.makedirs(target, exist_ok=True)
            except OSError as e:
                raise StreamerError(f"Failed to create directory {target}: {e}") from e
            extracted += 1
            continue

        if not member.isreg():
            logger.debug(f"Skipping unsupported entry type: {member.name}")
            continue

        if not _resolve_conflict(target, cfg.conflict):
            continue

        try:
            extract_member_to(tar, member, target)
        except OSError as e:
            raise StreamerError(f"Failed to extract file {target}: {e}") from e
        extracted += 1

    return extracted


def _members_with_cancellation(tar, cancellation_check):
    members = iter_members(tar)
    while True:
        if cancellation_check is not None:
            cancellation_check()
        member = next(members, None)
        if member is None:
            return
        yield member


def _safe_target(dest: str, name: str) -> str:
    if has_parent_reference(name):
        raise PathTraversalError(f"path traversal detected: {name}")

    target = os.path.normpath(os.path.join(dest, *normalize_key(name).split('/')))
    if not is_within(dest, target):
        raise PathTraversalError(f"path traversal detected: {name}")
    return target


def _resolve_conflict(path: str, strategy: ConflictStrategy) -> bool:
    """Apply the conflict strategy. Returns False if the entry should be skipped."""
    if not os.path.lexists(path):
        return True

    if strategy is ConflictStrategy.REPLACE:
        return True
    if strategy is ConflictStrategy.SKIP:
        logger.debug(f"Skipping existing file: {path}")
        return False
    if strategy is ConflictStrategy.BACKUP:
        backup_path = f"{path}.bak"
        try:
            os.replace(path, backup_path)
        except OSError as e:
            raise StreamerError(f"Failed to back up {path}: {e}") from e
        return True

    raise FileConflictError(f"file already exists: {path}")
