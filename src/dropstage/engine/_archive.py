"""Archive transfer: tar streams in and out of a container.

The engine only moves tar archives.  Going in, raw blobs (buildpack zips,
the Dockerfile) are wrapped as single-entry tars on the fly.  Coming out, the
engine answers with a tar of the requested path; for a file that is a
single-entry archive, and we read it incrementally until that entry so the
caller gets the file's bytes without buffering the whole transfer.
"""

from __future__ import annotations

import posixpath
import tarfile
import time
from collections.abc import AsyncIterator

from dropstage.engine._container import Container
from dropstage.errors import EngineError, ExtractionError
from dropstage.logger import logger
from dropstage.streams import ByteStream, Reader, SplitReader, read_exact

BLOCK = tarfile.BLOCKSIZE
# Owner of files copied in: the vcap user of the staging image
VCAP_UID = 2000
_EOF_MARKER = bytes(2 * BLOCK)


def _padding(size: int) -> int:
    return -size % BLOCK


def _header(name: str, size: int, mode: int) -> bytes:
    info = tarfile.TarInfo(name)
    info.size = size
    info.mode = mode
    info.mtime = int(time.time())
    info.uid = info.gid = VCAP_UID
    info.uname = info.gname = "vcap"
    return info.tobuf(format=tarfile.PAX_FORMAT)


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------


def tar_file(name: str, data: bytes, mode: int = 0o644) -> bytes:
    """Build an in-memory single-entry tar (small payloads only)."""
    return _header(name, len(data), mode) + data + bytes(_padding(len(data))) + _EOF_MARKER


async def tar_stream(name: str, stream: ByteStream, mode: int = 0o644) -> AsyncIterator[bytes]:
    """Wrap *stream* as a single-entry tar without buffering it."""
    yield _header(name, stream.length, mode)
    sent = 0
    async for chunk in stream.chunks():
        chunk = chunk[: stream.length - sent]
        sent += len(chunk)
        yield chunk
        if sent >= stream.length:
            break
    if sent != stream.length:
        raise EngineError("archive upload", f"{name}: expected {stream.length} bytes, got {sent}")
    yield bytes(_padding(sent)) + _EOF_MARKER


async def push_archive(container: Container, dest_path: str, archive: ByteStream) -> None:
    """Extract a tar stream into *dest_path*; *archive* is closed either way."""
    try:
        await container.engine.put_archive(
            container.require_id("archive upload"), dest_path, archive.chunks()
        )
    finally:
        await archive.close()
    logger.debug("Archive copied in", container=container.name, path=dest_path)


async def push_file(container: Container, dest_dir: str, name: str, stream: ByteStream) -> None:
    """Copy a raw blob into *dest_dir* as *name*; *stream* is closed either way."""
    try:
        await container.engine.put_archive(
            container.require_id("archive upload"), dest_dir, tar_stream(name, stream)
        )
    finally:
        await stream.close()
    logger.debug("File copied in", container=container.name, path=posixpath.join(dest_dir, name))


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


def _pax_records(records: bytes) -> dict[str, str]:
    """Parse the ``<len> <key>=<value>\n`` records of a pax extended header."""
    pos = 0
    fields: dict[str, str] = {}
    while pos < len(records):
        space = records.find(b" ", pos)
        if space < 0:
            break
        try:
            length = int(records[pos:space])
        except ValueError:
            break
        if length <= 0:
            break
        record = records[space + 1 : pos + length - 1]  # drop trailing newline
        key, _, value = record.partition(b"=")
        fields[key.decode("utf-8", "surrogateescape")] = value.decode("utf-8", "surrogateescape")
        pos += length
    return fields


def _entry_matches(entry: str, name: str) -> bool:
    return entry.strip("/").removeprefix("./") == name


class TarEntryReader:
    """Reads exactly one entry's bytes from an archive positioned at its data."""

    def __init__(self, raw: Reader, size: int) -> None:
        self._raw = raw
        self.size = size
        self._remaining = size

    async def read(self, n: int = -1) -> bytes:
        if self._remaining <= 0:
            return b""
        if n < 0 or n > self._remaining:
            n = self._remaining
        data = await self._raw.read(n)
        self._remaining -= len(data)
        return data

    async def close(self) -> None:
        # The raw archive is owned by whoever wraps this reader
        self._remaining = 0


async def open_entry(raw: Reader, name: str) -> TarEntryReader:
    """Advance *raw* to the regular-file entry *name*; return a reader over it.

    ``tarfile`` only parses single headers here: its stream mode wants a
    blocking file object, while *raw* is a live engine response.  Extended
    headers (GNU long names, pax ``path`` and ``size``) apply to the entry
    that follows them.

    Raises ``ExtractionError`` when the archive ends without such an entry.
    """
    overrides: dict[str, str] = {}
    while True:
        header = await read_exact(raw, BLOCK)
        if len(header) < BLOCK or header == bytes(BLOCK):
            raise ExtractionError(name, "not found in archive")
        try:
            info = tarfile.TarInfo.frombuf(header, "utf-8", "surrogateescape")
        except tarfile.HeaderError as exc:
            raise ExtractionError(name, f"corrupt archive ({exc})") from exc

        if info.type in (tarfile.GNUTYPE_LONGNAME, tarfile.XHDTYPE, tarfile.XGLTYPE):
            data = await _read_block_padded(raw, name, info.size)
            if info.type == tarfile.GNUTYPE_LONGNAME:
                overrides["path"] = data.rstrip(b"\0").decode("utf-8", "surrogateescape")
            elif info.type == tarfile.XHDTYPE:
                overrides.update(_pax_records(data))
            continue

        entry_name = overrides.get("path") or info.name
        try:
            size = int(overrides.get("size", info.size))
        except ValueError as exc:
            raise ExtractionError(name, f"corrupt archive (pax size {exc})") from exc
        overrides = {}
        if info.isreg() and _entry_matches(entry_name, name):
            return TarEntryReader(raw, size)
        await _read_block_padded(raw, name, size)


async def _read_block_padded(raw: Reader, name: str, size: int) -> bytes:
    """Consume *size* bytes of entry data plus padding; return the data."""
    padded = size + _padding(size)
    data = await read_exact(raw, padded)
    if len(data) < padded:
        raise ExtractionError(name, "archive truncated")
    return data[:size]


def _path_missing(container: Container, exc: EngineError) -> bool:
    """Tell a missing path apart from a container that is gone (both are 404s)."""
    if container.removed.is_set():
        return False
    return "no such container" not in exc.message.lower()


async def pull_file(container: Container, source_path: str) -> ByteStream:
    """Copy *source_path* out of the container as a stream of the file's bytes.

    Closing the result releases both the entry reader and the transfer.  A
    path the engine can't find, or an archive without the expected entry,
    raises ``ExtractionError`` rather than ``EngineError``.  A container
    removed underneath the copy (cancellation) stays an ``EngineError``.
    """
    name = posixpath.basename(source_path.rstrip("/"))
    try:
        raw, stat = await container.engine.get_archive(
            container.require_id("archive download"), source_path
        )
    except EngineError as exc:
        if exc.status == 404 and _path_missing(container, exc):
            raise ExtractionError(source_path, "not produced by the container") from exc
        raise

    try:
        entry = await open_entry(raw, name)
    except BaseException:
        await raw.close()
        raise
    size = stat.get("size")
    length = size if isinstance(size, int) and size >= 0 else entry.size
    logger.debug("File copied out", container=container.name, path=source_path, size=length)
    return ByteStream(SplitReader(entry, raw), length)
