from __future__ import annotations

import pytest

from devpod_core.errors import (
    CancelledError,
    ChecksumError,
    CommandError,
    DeadlineExceeded,
    DevpodError,
    HTTPStatusError,
    InjectTimeoutError,
)


@pytest.mark.parametrize(
    ("status_code", "permanent"),
    [(400, True), (403, True), (404, True), (408, False), (429, False), (500, False), (503, False)],
)
def test_http_status_error_classifies_permanence(status_code: int, permanent: bool) -> None:
    exc = HTTPStatusError(status_code, "https://example.com/bin")
    assert exc.permanent is permanent
    assert str(status_code) in str(exc)


def test_http_status_error_includes_body() -> None:
    exc = HTTPStatusError(404, "https://example.com/bin", "Not Found")
    assert str(exc).endswith(": Not Found")


def test_checksum_error_is_always_permanent() -> None:
    assert ChecksumError("mismatch").permanent is True


def test_command_error_from_exit_prefers_stderr() -> None:
    exc = CommandError.from_exit("make", 2, stdout="out", stderr="broken\n")
    assert exc.exit_code == 2
    assert str(exc) == "Error: Command failed (exit 2): make\nbroken"


def test_command_error_from_exit_without_output() -> None:
    exc = CommandError.from_exit("true", 1)
    assert str(exc) == "Error: Command failed (exit 1): true"


def test_timeout_errors_are_cancellations() -> None:
    assert issubclass(InjectTimeoutError, DeadlineExceeded)
    assert issubclass(DeadlineExceeded, CancelledError)
    assert issubclass(CancelledError, DevpodError)
