"""Shared test fixtures for dropstage."""

from __future__ import annotations

import asyncio
import posixpath
import struct
from collections.abc import AsyncIterable
from typing import Any

import pytest

from dropstage.engine import tar_file
from dropstage.errors import EngineError
from dropstage.streams import BytesReader

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures: importable by test files)
# ---------------------------------------------------------------------------


def make_settings(**overrides):
    """Create a Settings object from pure defaults: no dropstage.toml, no .env.

    Usage::

        s = make_settings(stager=StagerConfig(update_rootfs=True))
    """
    from dropstage.config import EngineConfig, LoggingConfig, Settings, StagerConfig

    defaults = {
        "stager": StagerConfig(),
        "engine": EngineConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    return Settings.model_construct(**defaults)


def frame(data: bytes, stream: int = 1) -> bytes:
    """One frame of the engine's multiplexed log stream."""
    return struct.pack(">BxxxL", stream, len(data)) + data


async def drain_background() -> None:
    """Let fire-and-forget tasks (log forwarding, watchers) run to completion."""
    from dropstage.utils import _background

    for _ in range(20):
        await asyncio.sleep(0)
    pending = {task for task in _background if not task.done()}
    if pending:
        await asyncio.wait(pending, timeout=1)


class TrackingReader(BytesReader):
    """In-memory reader that records whether it was closed."""

    def __init__(self, data: bytes, *, fail_after: int | None = None) -> None:
        super().__init__(data)
        self.closed = False
        self.close_calls = 0
        self._fail_after = fail_after
        self._read = 0

    async def read(self, n: int = -1) -> bytes:
        if self._fail_after is not None and self._read >= self._fail_after:
            raise EngineError("container logs", "connection reset")
        data = await super().read(n)
        self._read += len(data)
        return data

    async def close(self) -> None:
        self.closed = True
        self.close_calls += 1


class FakeEngine:
    """In-memory stand-in for ``EngineClient`` that records every call.

    ``fail`` maps an operation name ("container create", "archive upload",
    ...) to the error that operation should raise.
    """

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.fail: dict[str, EngineError] = {}
        self.build_messages: list[dict[str, Any]] = [{"stream": "sha256:feedface\n"}]
        self.build_requests: list[dict[str, Any]] = []
        self.consumed_build_messages = 0
        self.exit_status = 0
        self.files: dict[str, bytes] = {
            "/tmp/droplet": b"droplet-bytes",
            "/tmp/output-cache": b"new-cache",
        }
        self.log_data = frame(b"2024-01-01T00:00:00Z -----> Building\n")
        self.created: dict[str, dict[str, Any]] = {}
        self.pushed: list[tuple[str, bytes]] = []
        self.removed: list[str] = []
        self.archives: list[TrackingReader] = []
        self.log_readers: list[TrackingReader] = []
        self.wait_gate: asyncio.Event | None = None
        self.archive_gate: asyncio.Event | None = None
        self._gone = asyncio.Event()

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.fail:
            raise self.fail[operation]

    async def build_image(self, context: bytes, *, tag: str, pull: bool = False, quiet: bool = True):
        self._check("image build")
        self.build_requests.append({"context": context, "tag": tag, "pull": pull, "quiet": quiet})
        for message in self.build_messages:
            self.consumed_build_messages += 1
            yield message

    async def create_container(self, name: str, config: dict[str, Any]) -> str:
        self._check("container create")
        self.created[name] = config
        return f"id-{name}"

    async def start_container(self, container_id: str) -> None:
        self._check("container start")

    async def _block(self, gate: asyncio.Event | None, operation: str, container_id: str) -> None:
        """Wait on *gate*; fail like the daemon if the container is removed meanwhile."""
        while gate is not None and not gate.is_set() and container_id not in self.removed:
            opened = asyncio.create_task(gate.wait())
            gone = asyncio.create_task(self._gone.wait())
            await asyncio.wait({opened, gone}, return_when=asyncio.FIRST_COMPLETED)
            opened.cancel()
            gone.cancel()
        if container_id in self.removed:
            raise EngineError(operation, f"No such container: {container_id}", status=404)

    async def wait_container(self, container_id: str) -> int:
        self._check("container wait")
        await self._block(self.wait_gate, "container wait", container_id)
        return self.exit_status

    async def remove_container(self, ref: str) -> bool:
        self._check("container remove")
        self.removed.append(ref)
        # wake blocked calls; each re-checks whether its own container went away
        self._gone.set()
        self._gone = asyncio.Event()
        return True

    async def put_archive(
        self, container_id: str, path: str, body: bytes | AsyncIterable[bytes]
    ) -> None:
        self._check("archive upload")
        if isinstance(body, bytes):
            data = body
        else:
            data = b"".join([chunk async for chunk in body])
        self.pushed.append((path, data))

    async def get_archive(self, container_id: str, path: str):
        self._check("archive download")
        await self._block(self.archive_gate, "archive download", container_id)
        if path not in self.files:
            raise EngineError("archive download", f"Could not find the file {path}", status=404)
        data = self.files[path]
        reader = TrackingReader(tar_file(posixpath.basename(path), data))
        self.archives.append(reader)
        return reader, {"name": posixpath.basename(path), "size": len(data)}

    async def container_logs(self, container_id: str, *, follow: bool = True, timestamps: bool = True):
        self._check("container logs")
        reader = TrackingReader(self.log_data)
        self.log_readers.append(reader)
        return reader


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton built from defaults."""
    monkeypatch.setattr("dropstage.config._settings", make_settings())


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()
