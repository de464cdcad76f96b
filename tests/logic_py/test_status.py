from __future__ import annotations

import pytest

from devpod_core.errors import StatusError
from devpod_core.status import Status, parse_status, parse_status_envelope


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Running", Status.RUNNING),
        ("running\n", Status.RUNNING),
        ("STOPPED", Status.STOPPED),
        (" busy ", Status.BUSY),
        ("notfound", Status.NOT_FOUND),
    ],
)
def test_parse_status_is_case_insensitive(raw: str, expected: Status) -> None:
    assert parse_status(raw) is expected


def test_parse_status_rejects_unknown_values() -> None:
    with pytest.raises(StatusError, match="unrecognized status"):
        parse_status("Paused")


def test_status_renders_as_wire_value() -> None:
    assert str(Status.NOT_FOUND) == "NotFound"


def test_parse_status_envelope_reads_state() -> None:
    assert parse_status_envelope(b'{"state": "Stopped"}') is Status.STOPPED


def test_parse_status_envelope_rejects_non_json() -> None:
    with pytest.raises(StatusError, match="error parsing proxy command response"):
        parse_status_envelope("Running")


def test_parse_status_envelope_skips_leading_log_lines() -> None:
    raw = b'{"level":"info","message":"probing"}\n{"state":"Running"}\n'
    assert parse_status_envelope(raw) is Status.RUNNING


def test_parse_status_envelope_without_state_line_fails() -> None:
    with pytest.raises(StatusError, match="error parsing proxy command response"):
        parse_status_envelope('{"level":"info","message":"probing"}\nnot json\n')
