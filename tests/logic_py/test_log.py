from __future__ import annotations

import logging
import time

import pytest

from devpod_core.io_utils import MultiWriter
from devpod_core.log import JsonStreamWriter, LogWriter, parse_level, read_json_stream
from devpod_core.progress import heartbeat


def test_log_writer_emits_one_record_per_line(caplog: pytest.LogCaptureFixture) -> None:
    log = logging.getLogger("test.log.writer")
    caplog.set_level(logging.INFO, logger="test.log.writer")
    writer = LogWriter(log)
    writer.write(b"first\nsec")
    writer.write("ond\n\nthird")
    writer.close()

    assert [record.getMessage() for record in caplog.records] == ["first", "second", "third"]


def test_json_stream_writer_maps_levels(caplog: pytest.LogCaptureFixture) -> None:
    log = logging.getLogger("test.log.json")
    caplog.set_level(logging.DEBUG, logger="test.log.json")
    writer = JsonStreamWriter(log)
    writer.write(b'{"level":"warn","message":"careful"}\n')
    writer.write(b"plain text\n")
    writer.close()

    records = [(record.levelno, record.getMessage()) for record in caplog.records]
    assert records == [(logging.WARNING, "careful"), (logging.INFO, "plain text")]


def test_read_json_stream_keeps_non_log_documents_at_debug(
    caplog: pytest.LogCaptureFixture,
) -> None:
    log = logging.getLogger("test.log.stream")
    caplog.set_level(logging.DEBUG, logger="test.log.stream")
    read_json_stream(b'{"level":"error","message":"boom"}\n{"state":"Running"}\n', log)

    records = [(record.levelno, record.getMessage()) for record in caplog.records]
    assert records == [(logging.ERROR, "boom"), (logging.DEBUG, '{"state":"Running"}')]


def test_parse_level_defaults_to_info() -> None:
    assert parse_level("fatal") == logging.CRITICAL
    assert parse_level("whatever") == logging.INFO


def test_multi_writer_duplicates_writes() -> None:
    first: list[bytes] = []
    second: list[bytes] = []

    class Sink:
        def __init__(self, target: list[bytes]):
            self.target = target

        def write(self, data: bytes) -> int:
            self.target.append(data)
            return len(data)

    MultiWriter(Sink(first), None, Sink(second)).write(b"abc")
    assert first == second == [b"abc"]


def test_heartbeat_repeats_until_block_exits(caplog: pytest.LogCaptureFixture) -> None:
    log = logging.getLogger("test.log.heartbeat")
    caplog.set_level(logging.INFO, logger="test.log.heartbeat")
    with heartbeat("still working", log, interval=0.02):
        time.sleep(0.15)
    seen = sum(1 for record in caplog.records if record.getMessage() == "still working")
    time.sleep(0.1)
    assert seen >= 2
    later = sum(1 for record in caplog.records if record.getMessage() == "still working")
    assert later <= seen + 1
