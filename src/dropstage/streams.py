"""Byte streams: the currency for every binary payload crossing a boundary.

A :class:`ByteStream` pairs an async readable source with its total length.
Whoever holds a stream owns it until it is closed; ``close()`` may be called
more than once.  Close callbacks let a producer tie the lifetime of some other
resource (a container) to the stream without the consumer knowing about it.
"""

from __future__ import annotations

import asyncio
import io
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import BinaryIO, Protocol, runtime_checkable

CHUNK_SIZE = 64 * 1024


@runtime_checkable
class Reader(Protocol):
    async def read(self, n: int = -1) -> bytes: ...
    async def close(self) -> None: ...


@runtime_checkable
class Sink(Protocol):
    async def write(self, data: bytes) -> None: ...


async def read_exact(reader: Reader, n: int) -> bytes:
    """Read *n* bytes, or fewer only if the reader hits end of stream."""
    buf = bytearray()
    while len(buf) < n:
        chunk = await reader.read(n - len(buf))
        if not chunk:
            break
        buf += chunk
    return bytes(buf)


class ByteStream:
    """A readable byte source with a known length."""

    def __init__(self, source: Reader, length: int) -> None:
        if length < 0:
            raise ValueError(f"negative stream length: {length}")
        self.source = source
        self.length = length
        self._closed = False
        self._on_close: list[Callable[[], Awaitable[None]]] = []

    @classmethod
    def from_bytes(cls, data: bytes) -> ByteStream:
        return cls(BytesReader(data), len(data))

    @classmethod
    def empty(cls) -> ByteStream:
        return cls.from_bytes(b"")

    @property
    def closed(self) -> bool:
        return self._closed

    async def read(self, n: int = -1) -> bytes:
        return await self.source.read(n)

    async def chunks(self, size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        while True:
            chunk = await self.source.read(size)
            if not chunk:
                return
            yield chunk

    async def read_all(self) -> bytes:
        """Read the remainder of the stream and close it."""
        try:
            return b"".join([chunk async for chunk in self.chunks()])
        finally:
            await self.close()

    def on_close(self, callback: Callable[[], Awaitable[None]]) -> None:
        """Run *callback* once, after the source has been closed."""
        self._on_close.append(callback)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.source.close()
        finally:
            callbacks, self._on_close = self._on_close, []
            for callback in reversed(callbacks):
                await callback()

    async def copy_to(self, sink: Sink) -> int:
        """Drain the stream into *sink*, then close it. Returns bytes copied."""
        copied = 0
        try:
            async for chunk in self.chunks():
                await sink.write(chunk)
                copied += len(chunk)
        finally:
            await self.close()
        return copied

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<ByteStream length={self.length} {state}>"


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------


class BytesReader:
    """In-memory reader."""

    def __init__(self, data: bytes) -> None:
        self._buf = io.BytesIO(data)

    async def read(self, n: int = -1) -> bytes:
        return self._buf.read(n)

    async def close(self) -> None:
        self._buf.close()


class FileReader:
    """Reads a blocking binary file without blocking the event loop."""

    def __init__(self, file: BinaryIO) -> None:
        self._file = file

    async def read(self, n: int = -1) -> bytes:
        return await asyncio.to_thread(self._file.read, n)

    async def close(self) -> None:
        self._file.close()


class SplitReader:
    """Reads from one resource, closes two.

    Used when the bytes a caller wants (one entry of an archive) are read
    through a wrapper whose backing transfer must also be released.  Both
    are closed even if closing the first fails.
    """

    def __init__(self, reader: Reader, closer: Reader) -> None:
        self.reader = reader
        self.closer = closer

    async def read(self, n: int = -1) -> bytes:
        return await self.reader.read(n)

    async def close(self) -> None:
        try:
            await self.reader.close()
        finally:
            await self.closer.close()


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class FileSink:
    """Writes to a blocking binary file without blocking the event loop."""

    def __init__(self, file: BinaryIO) -> None:
        self._file = file

    async def write(self, data: bytes) -> None:
        await asyncio.to_thread(self._file.write, data)

    async def close(self) -> None:
        self._file.close()


class BytesSink:
    """Collects written bytes in memory."""

    def __init__(self) -> None:
        self._buf = bytearray()

    async def write(self, data: bytes) -> None:
        self._buf += data

    def getvalue(self) -> bytes:
        return bytes(self._buf)
