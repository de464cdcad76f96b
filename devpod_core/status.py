from __future__ import annotations

import json
from enum import Enum

from devpod_core.errors import StatusError


class Status(str, Enum):
    NOT_FOUND = "NotFound"
    STOPPED = "Stopped"
    BUSY = "Busy"
    RUNNING = "Running"

    def __str__(self) -> str:
        return self.value


_BY_LOWER = {status.value.lower(): status for status in Status}


def parse_status(raw: str) -> Status:
    status = _BY_LOWER.get((raw or "").strip().lower())
    if status is None:
        raise StatusError(f"error parsing status: '{(raw or '').strip()}' unrecognized status")
    return status


def _last_state_document(text: str) -> dict | None:
    # stdout may carry JSON log lines ahead of the envelope
    for line in reversed(text.splitlines()):
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict) and "state" in payload:
            return payload
    return None


def parse_status_envelope(raw: bytes | str) -> Status:
    """Parse a ``{"state": "<Status>"}`` document as printed by proxy providers."""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        payload = _last_state_document(text)
        if payload is None:
            raise StatusError(
                f"error parsing proxy command response: {text.strip()}: {exc}"
            ) from exc
    if not isinstance(payload, dict):
        raise StatusError(f"error parsing proxy command response: {text.strip()}")
    return parse_status(str(payload.get("state", "")))
