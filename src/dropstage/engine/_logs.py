"""Log forwarding: stream a container's output to the user while it runs.

Opening the log stream is load-bearing (a staging run without logs is
useless to the user) so setup failures propagate.  Once forwarding has
started it is best-effort: a read error just ends it.
"""

from __future__ import annotations

import asyncio
import codecs
import struct
from collections.abc import AsyncIterator
from typing import TextIO

from dropstage.engine._client import ResponseReader
from dropstage.engine._container import Container
from dropstage.errors import EngineError
from dropstage.logger import logger
from dropstage.streams import Reader, read_exact

# stream type (1 byte), padding (3 bytes), payload size (uint32, big endian)
_FRAME_HEADER = struct.Struct(">BxxxL")


class LinePrefixer:
    """Inserts a prefix at the start of every line, across chunk boundaries."""

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix
        self._at_line_start = True
        self._after_cr = False

    def apply(self, text: str) -> str:
        out: list[str] = []
        if self._after_cr and text.startswith("\n"):
            # second half of a "\r\n" split across chunks
            out.append("\n")
            text = text[1:]
        for piece in text.splitlines(keepends=True):
            if self._at_line_start:
                out.append(self.prefix)
            out.append(piece)
            self._at_line_start = piece.endswith(("\n", "\r"))
        result = "".join(out)
        if result:
            self._after_cr = result.endswith("\r")
        return result


async def demux(reader: Reader) -> AsyncIterator[bytes]:
    """Yield payloads of the engine's multiplexed stdout/stderr framing."""
    while True:
        header = await read_exact(reader, _FRAME_HEADER.size)
        if len(header) < _FRAME_HEADER.size:
            return
        _, size = _FRAME_HEADER.unpack(header)
        payload = await read_exact(reader, size)
        if payload:
            yield payload
        if len(payload) < size:
            return


async def open_logs(container: Container) -> ResponseReader:
    """Follow the container's combined output, with timestamps."""
    return await container.engine.container_logs(
        container.require_id("container logs"), follow=True, timestamps=True
    )


async def forward_logs(reader: Reader, sink: TextIO, prefix: str) -> None:
    """Copy *reader* to *sink* until the engine ends the stream.

    Writes happen in a worker thread so a slow sink can lag behind without
    stalling the event loop that waits for the container to exit.
    """
    prefixer = LinePrefixer(prefix)
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        async for payload in demux(reader):
            text = decoder.decode(payload)
            if text:
                await asyncio.to_thread(_write, sink, prefixer.apply(text))
    except (EngineError, OSError) as exc:
        logger.debug("Log forwarding stopped", err=str(exc))
    finally:
        await reader.close()


def _write(sink: TextIO, text: str) -> None:
    sink.write(text)
    sink.flush()
