"""Container handle: one container per stage or download call.

The handle exists before the container does: ``Container.create`` never
raises for engine failures, it records them on the handle and leaves ``id``
empty, so call sites can run the same cleanup path whether or not the
container came into being.

Removal is terminal and idempotent.  Once requested, ``id`` is cleared and
no further engine call targets the old reference.
"""

from __future__ import annotations

import asyncio
from typing import Any

from dropstage.engine._client import EngineClient
from dropstage.errors import EngineError
from dropstage.logger import logger
from dropstage.streams import ByteStream


class Container:
    def __init__(self, engine: EngineClient, name: str, config: dict[str, Any]) -> None:
        self.engine = engine
        self.name = name
        self.config = config
        self.id = ""
        self.error: EngineError | None = None
        self.removed = asyncio.Event()
        self._removal_requested = False

    @classmethod
    async def create(
        cls, engine: EngineClient, name: str, config: dict[str, Any]
    ) -> Container:
        container = cls(engine, name, config)
        try:
            container.id = await engine.create_container(name, config)
        except EngineError as exc:
            container.error = exc
            logger.error("Container create failed", container=name, err=str(exc))
        else:
            logger.debug("Container created", container=name, id=container.id[:12])
        return container

    def require_id(self, operation: str) -> str:
        if not self.id:
            if self.error is not None:
                raise self.error
            raise EngineError(operation, f"container {self.name} does not exist")
        return self.id

    async def start(self) -> None:
        await self.engine.start_container(self.require_id("container start"))

    async def wait(self) -> int:
        """Block until the container stops; return its exit status."""
        return await self.engine.wait_container(self.require_id("container wait"))

    async def remove(self) -> None:
        """Force-remove the container. Safe to call repeatedly and concurrently.

        Failures are logged, never raised: artifacts don't depend on prompt
        cleanup.
        """
        if self._removal_requested:
            return
        self._removal_requested = True
        ref, self.id = self.id, ""
        if not ref:
            # Never created by us; the name may belong to another run
            logger.debug("Nothing to remove", container=self.name)
            self.removed.set()
            return
        try:
            removed = await self.engine.remove_container(ref)
            logger.debug("Container removed", container=self.name, existed=removed)
        except EngineError as exc:
            logger.warning("Container removal failed", container=self.name, err=str(exc))
        finally:
            self.removed.set()

    async def remove_after_close(self, stream: ByteStream | None) -> None:
        """Remove now, or once *stream* (borrowed from this container) closes."""
        if stream is None or stream.closed:
            await self.remove()
            return
        stream.on_close(self.remove)

    async def remove_on(self, signal: asyncio.Event) -> None:
        """Remove as soon as *signal* fires; return early once removed anyway."""
        waiters = [
            asyncio.create_task(signal.wait()),
            asyncio.create_task(self.removed.wait()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        if signal.is_set() and not self.removed.is_set():
            logger.info("Cancellation received, removing container", container=self.name)
            await self.remove()
