"""
Archive Writer

Streams backup entries into a single Zstandard-compressed tar archive
(``.tar.zst``) without holding any message in memory.

The tar stream is produced on the caller's thread (which is also reading
from the network) and handed to a compressor thread through a bounded queue.
A full queue blocks the producer, so a slow disk throttles the network
reader instead of growing memory. The archive is written to ``<path>.partial``
and renamed into place once both the tar trailer and the compressed frame
are finalised; if finalisation fails the partial file is removed. A source
that fails inside a member (KeyboardInterrupt included) gets the member
padded to its declared size. If the tar stream itself stops mid-member the
writer is marked broken and the partial file is discarded, never renamed.

IMAP metadata is kept in the tar headers: the internal date becomes the
member mtime and the flags are stored in the PAX header ``IMAPBACKUP.flags``.
"""

from __future__ import annotations

import io
import os
import queue
import tarfile
import threading
import time
from dataclasses import dataclass

import zstandard

from imap_backup.config import DEFAULT_BLOCK_SIZE, DEFAULT_COMPRESSION_LEVEL, DEFAULT_QUEUE_DEPTH
from imap_backup.errors import WriteError

PAX_FLAGS = "IMAPBACKUP.flags"
PAX_UID = "IMAPBACKUP.uid"
PARTIAL_SUFFIX = ".partial"
_PUT_POLL_SECONDS = 0.5


@dataclass(frozen=True)
class ArchiveEntry:
    path: str
    size: int
    truncated: bool = False


class _CompressorThread(threading.Thread):
    """Consumer side: compresses queued tar blocks and writes them to disk."""

    def __init__(self, chunks: queue.Queue, fileobj, level: int):
        super().__init__(name="archive-compressor", daemon=True)
        self._chunks = chunks
        self._fileobj = fileobj
        self._level = level
        self.error: BaseException | None = None
        self.bytes_written = 0

    def run(self):
        compressor = None
        try:
            compressor = zstandard.ZstdCompressor(level=self._level).compressobj()
        except Exception as e:
            self.error = e
        while True:
            chunk = self._chunks.get()
            if chunk is None:
                break
            if self.error is not None:
                continue  # keep draining so the producer never blocks
            try:
                self._write(compressor.compress(chunk))
            except Exception as e:
                self.error = e
        if self.error is None:
            try:
                self._write(compressor.flush())
                self._fileobj.flush()
            except Exception as e:
                self.error = e

    def _write(self, data: bytes) -> None:
        if data:
            self._fileobj.write(data)
            self.bytes_written += len(data)


class _QueuePipe:
    """Producer side: the file object tarfile writes into."""

    def __init__(self, chunks: queue.Queue, worker: _CompressorThread):
        self._chunks = chunks
        self._worker = worker

    def _check_worker(self):
        if self._worker.error is not None:
            raise WriteError(f"Archive write failed: {self._worker.error}") from self._worker.error
        if not self._worker.is_alive():
            raise WriteError("Archive compressor stopped unexpectedly")

    def write(self, data) -> int:
        self._check_worker()
        chunk = bytes(data)
        while True:
            try:
                self._chunks.put(chunk, timeout=_PUT_POLL_SECONDS)
                return len(chunk)
            except queue.Full:
                self._check_worker()


class _GuardedReader:
    """
    Reads exactly ``size`` bytes from ``source``. If the source fails part way,
    the rest of the member is filled with NUL bytes so the container stays
    well-formed; the original error is kept in ``error``.
    """

    def __init__(self, source, size: int):
        self._source = source
        self._remaining = size
        self.error: BaseException | None = None

    def read(self, n: int = -1) -> bytes:
        if n is None or n < 0 or n > self._remaining:
            n = self._remaining
        if n == 0:
            return b""
        if self.error is None:
            try:
                data = self._source.read(n)
                if len(data) < n:
                    # tarfile needs full blocks; keep reading short sources
                    parts = [data]
                    got = len(data)
                    while got < n:
                        more = self._source.read(n - got)
                        if not more:
                            raise WriteError(f"Content ended {self._remaining - got} bytes early")
                        parts.append(more)
                        got += len(more)
                    data = b"".join(parts)
                self._remaining -= n
                return data
            except BaseException as e:
                # KeyboardInterrupt included: the member is still completed with padding
                self.error = e
        self._remaining -= n
        return b"\0" * n


class ArchiveWriter:
    """Append-only writer for one backup archive. Use as a context manager or call close()."""

    def __init__(
        self,
        path,
        *,
        block_size: int = DEFAULT_BLOCK_SIZE,
        queue_depth: int = DEFAULT_QUEUE_DEPTH,
        level: int = DEFAULT_COMPRESSION_LEVEL,
    ):
        self.path = os.fspath(path)
        self.partial_path = self.path + PARTIAL_SUFFIX
        self._block_size = block_size
        self._queue_depth = queue_depth
        self._level = level
        self._file = None
        self._tar: tarfile.TarFile | None = None
        self._worker: _CompressorThread | None = None
        self._names: set = set()
        self.entries: list = []
        self.closed = False
        self.broken = False

    @classmethod
    def open(cls, path, **kwargs) -> ArchiveWriter:
        writer = cls(path, **kwargs)
        writer._open()
        return writer

    def __enter__(self):
        if self._tar is None and not self.closed:
            self._open()
        return self

    def __exit__(self, exc_type, exc, tb):
        # Finalise on every exit path: a half-written container is worse than a short one.
        if self.broken:
            self.discard()
        else:
            self.close()
        return False

    def _open(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            self._file = open(self.partial_path, "wb")
        except OSError as e:
            raise WriteError(f"Cannot create archive {self.path}: {e}") from e

        chunks = queue.Queue(maxsize=self._queue_depth)
        self._worker = _CompressorThread(chunks, self._file, self._level)
        self._worker.start()
        pipe = _QueuePipe(chunks, self._worker)
        self._chunks = chunks
        self._tar = tarfile.open(
            fileobj=pipe,
            mode="w|",
            format=tarfile.PAX_FORMAT,
            bufsize=self._block_size,
        )
        self._tar.copybufsize = self._block_size

    @property
    def compressed_bytes(self) -> int:
        return self._worker.bytes_written if self._worker else 0

    def _check_open(self, name: str) -> None:
        if self._tar is None or self.closed:
            raise WriteError(f"Archive {self.path} is not open")
        if self.broken:
            raise WriteError(f"Archive {self.path} was interrupted in the middle of an entry")
        if name in self._names:
            raise WriteError(f"Duplicate archive entry: {name}")

    def _add(self, info: tarfile.TarInfo, content=None) -> None:
        try:
            self._tar.addfile(info, content)
        except (OSError, tarfile.TarError) as e:
            self.broken = True
            raise WriteError(f"Cannot write {info.name} to {self.path}: {e}") from e
        except BaseException:
            # The tar stream stopped part way through this member.
            self.broken = True
            raise
        self._names.add(info.name)

    def add_directory(self, logical_path: str, mtime: float | None = None) -> ArchiveEntry:
        """Write an empty directory marker (used for containers and empty mailboxes)."""
        name = logical_path.rstrip("/")
        self._check_open(name)
        info = tarfile.TarInfo(name)
        info.type = tarfile.DIRTYPE
        info.mode = 0o755
        info.mtime = int(mtime if mtime is not None else time.time())
        self._add(info)
        entry = ArchiveEntry(name + "/", 0)
        self.entries.append(entry)
        return entry

    def append_entry(
        self,
        logical_path: str,
        byte_length: int,
        content,
        *,
        mtime: float | None = None,
        flags=(),
        uid: int | None = None,
    ) -> ArchiveEntry:
        """
        Stream exactly ``byte_length`` bytes from ``content`` into a new member.

        If ``content`` fails part way the member is padded to its declared
        length, recorded as truncated, and the content error is re-raised.
        """
        self._check_open(logical_path)
        info = tarfile.TarInfo(logical_path)
        info.size = byte_length
        info.mode = 0o644
        info.mtime = int(mtime if mtime is not None else time.time())
        pax = {}
        if flags:
            pax[PAX_FLAGS] = " ".join(sorted(flags))
        if uid is not None:
            pax[PAX_UID] = str(uid)
        info.pax_headers = pax

        reader = _GuardedReader(content, byte_length)
        self._add(info, reader)
        entry = ArchiveEntry(logical_path, byte_length, truncated=reader.error is not None)
        self.entries.append(entry)
        if reader.error is not None:
            raise reader.error
        return entry

    def append_bytes(self, logical_path: str, data: bytes, mtime: float | None = None) -> ArchiveEntry:
        """Write a small in-memory member (summaries, markers)."""
        return self.append_entry(logical_path, len(data), io.BytesIO(data), mtime=mtime)

    def close(self) -> None:
        """Finalise tar trailer and compressed frame, then move the archive into place."""
        if self.closed:
            return
        if self.broken:
            self.discard()
            raise WriteError(f"Archive {self.path} was interrupted in the middle of an entry and has been removed")
        self.closed = True
        if self._tar is None:
            return

        error = None
        try:
            self._tar.close()
        except WriteError as e:
            error = e
        except (OSError, tarfile.TarError) as e:
            error = WriteError(f"Cannot finalise {self.path}: {e}")

        self._chunks.put(None)
        self._worker.join()
        if error is None and self._worker.error is not None:
            error = WriteError(f"Cannot finalise {self.path}: {self._worker.error}")

        try:
            self._file.close()
        except OSError as e:
            error = error or WriteError(f"Cannot finalise {self.path}: {e}")

        if error is None:
            try:
                os.replace(self.partial_path, self.path)
            except OSError as e:
                error = WriteError(f"Cannot move archive into place at {self.path}: {e}")

        if error is not None:
            self._remove_partial()
            raise error

    def discard(self) -> None:
        """Abandon the archive and delete the partial output."""
        if not self.closed:
            self.closed = True
            if self._worker is not None:
                self._chunks.put(None)
                self._worker.join()
            if self._file is not None:
                self._file.close()
        self._remove_partial()

    def _remove_partial(self) -> None:
        try:
            os.remove(self.partial_path)
        except FileNotFoundError:
            pass
