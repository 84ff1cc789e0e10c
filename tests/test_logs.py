"""Tests for container log demultiplexing and forwarding."""

from __future__ import annotations

import io

import pytest
from conftest import TrackingReader, frame

from dropstage.engine import Container, forward_logs, open_logs
from dropstage.engine._logs import LinePrefixer, demux
from dropstage.errors import EngineError


class TestLinePrefixer:
    def test_prefixes_every_line(self):
        assert LinePrefixer("[a] ").apply("one\ntwo\n") == "[a] one\n[a] two\n"

    def test_partial_lines_across_chunks(self):
        prefixer = LinePrefixer("> ")
        out = prefixer.apply("hel") + prefixer.apply("lo\nwor") + prefixer.apply("ld\n")
        assert out == "> hello\n> world\n"

    def test_carriage_return_starts_new_line(self):
        assert LinePrefixer("> ").apply("10%\r20%\r") == "> 10%\r> 20%\r"

    def test_empty_chunk(self):
        assert LinePrefixer("> ").apply("") == ""

    def test_crlf_split_across_chunks(self):
        prefixer = LinePrefixer("> ")
        out = prefixer.apply("a\r") + prefixer.apply("\nb\n")
        assert out == "> a\r\n> b\n"

    def test_crlf_split_with_empty_chunk_between(self):
        prefixer = LinePrefixer("> ")
        out = prefixer.apply("a\r") + prefixer.apply("") + prefixer.apply("\n")
        assert out == "> a\r\n"


class TestDemux:
    async def test_yields_payloads_from_both_streams(self):
        reader = TrackingReader(frame(b"out\n", 1) + frame(b"err\n", 2))
        assert [p async for p in demux(reader)] == [b"out\n", b"err\n"]

    async def test_truncated_payload_is_yielded_then_stops(self):
        reader = TrackingReader(frame(b"complete\n") + frame(b"cut off")[:-4])
        assert [p async for p in demux(reader)] == [b"complete\n", b"cut"]

    async def test_partial_header_ends_stream(self):
        reader = TrackingReader(frame(b"x") + b"\x01\x00")
        assert [p async for p in demux(reader)] == [b"x"]


class TestForwardLogs:
    async def test_writes_prefixed_lines_and_closes_reader(self):
        reader = TrackingReader(frame(b"-----> Building\n") + frame(b"done\n", 2))
        sink = io.StringIO()
        await forward_logs(reader, sink, "[myapp] ")
        assert sink.getvalue() == "[myapp] -----> Building\n[myapp] done\n"
        assert reader.closed

    async def test_multibyte_character_split_across_frames(self):
        text = "café\n".encode()
        reader = TrackingReader(frame(text[:4]) + frame(text[4:]))
        sink = io.StringIO()
        await forward_logs(reader, sink, "")
        assert sink.getvalue() == "café\n"

    async def test_read_error_ends_forwarding_quietly(self):
        data = frame(b"first\n") + frame(b"second\n")
        reader = TrackingReader(data, fail_after=len(frame(b"first\n")))
        sink = io.StringIO()
        await forward_logs(reader, sink, "")
        assert sink.getvalue() == "first\n"
        assert reader.closed


class TestOpenLogs:
    async def test_follows_with_timestamps(self, engine):
        container = await Container.create(engine, "myapp-staging", {})
        reader = await open_logs(container)
        assert reader is engine.log_readers[0]

    async def test_setup_failure_propagates(self, engine):
        engine.fail["container logs"] = EngineError("container logs", "gone", status=404)
        container = await Container.create(engine, "myapp-staging", {})
        with pytest.raises(EngineError):
            await open_logs(container)
