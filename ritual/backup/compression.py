"""
Tar+gzip stream encoding and decoding for world archives.

Archives are POSIX tar entries wrapped in gzip at the fastest compression
level. Each source directory becomes a top-level entry named after its base
name, with its contents beneath it in depth-first, lexical order.
"""

import gzip
import hashlib
import os
import tarfile
from typing import BinaryIO, Callable, Iterator, List, Optional, Tuple

# Fastest level: CPU time competes with network time during streaming
GZIP_COMPRESS_LEVEL = 1
TAR_FORMAT = tarfile.PAX_FORMAT
COPY_BUFFER_SIZE = 32 * 1024


class CompressionError(Exception):
    """Raised when archive encoding or decoding fails."""
    pass


class HashingWriter:
    """
    File-like writer that forwards bytes to a sink while counting them and
    accumulating their SHA-256.
    """

    def __init__(self, sink: BinaryIO):
        self.sink = sink
        self.size = 0
        self._hash = hashlib.sha256()

    def write(self, data) -> int:
        self.sink.write(data)
        self._hash.update(data)
        self.size += len(data)
        return len(data)

    def flush(self):
        pass

    @property
    def checksum(self) -> str:
        return self._hash.hexdigest()


def walk_directory(root: str) -> Iterator[Tuple[str, str]]:
    """
    Yield (filesystem path, archive name) for root and everything under it.

    Directories are yielded before their contents; entries within a
    directory are visited in lexical order. Archive names use forward slashes
    and start with the base name of root.
    """
    root = os.path.normpath(root)
    base_name = os.path.basename(root)

    def _walk(path: str, arcname: str):
        yield path, arcname
        if os.path.isdir(path) and not os.path.islink(path):
            for entry in sorted(os.listdir(path)):
                yield from _walk(os.path.join(path, entry), f"{arcname}/{entry}")

    yield from _walk(root, base_name)


def _tarinfo_for(tar: tarfile.TarFile, path: str, arcname: str) -> tarfile.TarInfo:
    info = tar.gettarinfo(path, arcname=arcname)
    # Whole seconds keep headers free of pax mtime records
    info.mtime = int(info.mtime)
    return info


def write_archive(
    dirs: List[str],
    sink: BinaryIO,
    check: Optional[Callable[[], None]] = None,
):
    """
    Encode directories as a tar.gz stream into ``sink``.

    The tar writer is closed (end-of-archive marker) before the gzip writer
    (trailer); the sink itself is left open for the caller.

    Args:
        dirs: Source directories
        sink: Writable binary file-like object
        check: Called before each filesystem entry; raise from it to abort

    Raises:
        CompressionError: If a source is missing or an entry cannot be encoded
    """
    gz = gzip.GzipFile(fileobj=sink, mode='wb', compresslevel=GZIP_COMPRESS_LEVEL, mtime=0)
    tar = tarfile.open(fileobj=gz, mode='w|', format=TAR_FORMAT)
    try:
        for directory in dirs:
            if not os.path.isdir(directory):
                raise CompressionError(f"Path is not a directory: {directory}")

            for path, arcname in walk_directory(directory):
                if check is not None:
                    check()
                _add_entry(tar, path, arcname)
    except BaseException:
        _close_quietly(tar, gz)
        raise

    tar.close()
    gz.close()


def _add_entry(tar: tarfile.TarFile, path: str, arcname: str):
    try:
        info = _tarinfo_for(tar, path, arcname)
    except OSError as e:
        raise CompressionError(f"Failed to stat {path}: {e}") from e

    if info is None:
        # Sockets and other unsupported file types
        return

    if info.isreg():
        with open(path, 'rb') as f:
            tar.addfile(info, f)
    else:
        tar.addfile(info)


def _close_quietly(tar, gz):
    # The pipe is already being torn down with the original error
    for stream in (tar, gz):
        try:
            stream.close()
        except Exception:
            pass


def open_archive(source: BinaryIO) -> Tuple[gzip.GzipFile, tarfile.TarFile]:
    """
    Open a tar.gz stream for sequential reading.

    Returns:
        (gzip reader, tar reader); close the tar reader first
    """
    gz = gzip.GzipFile(fileobj=source, mode='rb')
    try:
        tar = tarfile.open(fileobj=gz, mode='r|')
    except (tarfile.TarError, OSError, EOFError) as e:
        gz.close()
        raise CompressionError(f"Failed to open archive: {e}") from e
    return gz, tar


def iter_members(tar: tarfile.TarFile) -> Iterator[tarfile.TarInfo]:
    """Iterate archive members, converting decode failures to CompressionError."""
    while True:
        try:
            member = tar.next()
        except (tarfile.TarError, OSError, EOFError) as e:
            raise CompressionError(f"Failed to read tar header: {e}") from e
        if member is None:
            return
        yield member


def extract_member_to(tar: tarfile.TarFile, member: tarfile.TarInfo, path: str):
    """
    Write a regular-file member's content to ``path``.

    Parent directories are created as needed. A partially written file is
    removed before the error propagates.
    """
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)

    source = tar.extractfile(member)
    if source is None:
        raise CompressionError(f"Member has no content: {member.name}")

    try:
        with open(path, 'wb') as f:
            while True:
                chunk = source.read(COPY_BUFFER_SIZE)
                if not chunk:
                    break
                f.write(chunk)
        os.chmod(path, member.mode & 0o7777 or 0o644)
    except BaseException:
        if os.path.exists(path):
            os.remove(path)
        raise
