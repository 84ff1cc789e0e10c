"""Tests for the container handle's create/remove lifecycle."""

from __future__ import annotations

import asyncio

import pytest

from dropstage.engine import Container
from dropstage.errors import EngineError
from dropstage.streams import ByteStream


class TestCreate:
    async def test_successful_create_records_id(self, engine):
        container = await Container.create(engine, "myapp-staging", {"Image": "cflocal"})
        assert container.id == "id-myapp-staging"
        assert container.error is None
        assert engine.created["myapp-staging"] == {"Image": "cflocal"}

    async def test_failed_create_never_raises(self, engine):
        engine.fail["container create"] = EngineError("container create", "Conflict", status=409)
        container = await Container.create(engine, "myapp-staging", {})
        assert container.id == ""
        assert container.error is engine.fail["container create"]

    async def test_require_id_reraises_create_error(self, engine):
        error = EngineError("container create", "no such image: cflocal", status=404)
        engine.fail["container create"] = error
        container = await Container.create(engine, "myapp-staging", {})
        with pytest.raises(EngineError) as excinfo:
            container.require_id("container start")
        assert excinfo.value is error

    async def test_operations_without_id_fail_without_engine_calls(self, engine):
        container = Container(engine, "ghost", {})
        with pytest.raises(EngineError, match="container ghost does not exist"):
            await container.start()
        assert engine.calls == []


class TestRemove:
    async def test_remove_is_idempotent(self, engine):
        container = await Container.create(engine, "myapp-staging", {})
        await container.remove()
        await container.remove()
        assert engine.removed == ["id-myapp-staging"]
        assert container.id == ""
        assert container.removed.is_set()

    async def test_concurrent_removes_issue_one_engine_call(self, engine):
        container = await Container.create(engine, "myapp-staging", {})
        await asyncio.gather(container.remove(), container.remove(), container.remove())
        assert engine.removed == ["id-myapp-staging"]

    async def test_failed_create_never_targets_the_name(self, engine):
        engine.fail["container create"] = EngineError("container create", "Conflict", status=409)
        container = await Container.create(engine, "myapp-staging", {})
        await container.remove()
        await container.remove()
        assert container.removed.is_set()
        assert "container remove" not in engine.calls
        assert engine.removed == []

    async def test_removal_failure_is_logged_not_raised(self, engine):
        container = await Container.create(engine, "myapp-staging", {})
        engine.fail["container remove"] = EngineError("container remove", "daemon busy")
        await container.remove()
        assert container.removed.is_set()
        assert container.id == ""

    async def test_no_engine_calls_after_removal(self, engine):
        container = await Container.create(engine, "myapp-staging", {})
        await container.remove()
        with pytest.raises(EngineError):
            await container.wait()
        assert "container wait" not in engine.calls


class TestRemoveAfterClose:
    async def test_without_stream_removes_now(self, engine):
        container = await Container.create(engine, "myapp-staging", {})
        await container.remove_after_close(None)
        assert engine.removed == ["id-myapp-staging"]

    async def test_removal_deferred_until_stream_closes(self, engine):
        container = await Container.create(engine, "myapp-staging", {})
        stream = ByteStream.from_bytes(b"droplet")
        await container.remove_after_close(stream)
        assert engine.removed == []
        await stream.close()
        assert engine.removed == ["id-myapp-staging"]
        await stream.close()
        assert engine.removed == ["id-myapp-staging"]

    async def test_already_closed_stream_removes_now(self, engine):
        container = await Container.create(engine, "myapp-staging", {})
        stream = ByteStream.from_bytes(b"")
        await stream.close()
        await container.remove_after_close(stream)
        assert engine.removed == ["id-myapp-staging"]


class TestRemoveOn:
    async def test_signal_removes_container(self, engine):
        container = await Container.create(engine, "myapp-staging", {})
        signal = asyncio.Event()
        watcher = asyncio.create_task(container.remove_on(signal))
        await asyncio.sleep(0)
        assert engine.removed == []
        signal.set()
        await asyncio.wait_for(watcher, timeout=1)
        assert engine.removed == ["id-myapp-staging"]

    async def test_watcher_exits_once_removed_elsewhere(self, engine):
        container = await Container.create(engine, "myapp-staging", {})
        signal = asyncio.Event()
        watcher = asyncio.create_task(container.remove_on(signal))
        await asyncio.sleep(0)
        await container.remove()
        await asyncio.wait_for(watcher, timeout=1)
        # a late signal must not trigger a second removal
        signal.set()
        await asyncio.sleep(0)
        assert engine.removed == ["id-myapp-staging"]

    async def test_signal_set_before_watch(self, engine):
        container = await Container.create(engine, "myapp-staging", {})
        signal = asyncio.Event()
        signal.set()
        await asyncio.wait_for(container.remove_on(signal), timeout=1)
        assert engine.removed == ["id-myapp-staging"]

    async def test_cancellation_fails_pending_wait(self, engine):
        engine.wait_gate = asyncio.Event()
        container = await Container.create(engine, "myapp-staging", {})
        signal = asyncio.Event()
        watcher = asyncio.create_task(container.remove_on(signal))
        waiting = asyncio.create_task(container.wait())
        await asyncio.sleep(0)
        signal.set()
        with pytest.raises(EngineError, match="No such container"):
            await asyncio.wait_for(waiting, timeout=1)
        await watcher
