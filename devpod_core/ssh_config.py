from __future__ import annotations

import threading
from pathlib import Path

from devpod_core.io_utils import atomic_write_text, read_text_or_empty

SSH_CONFIG_MODE = 0o600
_CONFIG_LOCK = threading.Lock()


def start_marker(workspace_id: str) -> str:
    return f"# DevPod Start {workspace_id}.devpod"


def end_marker(workspace_id: str) -> str:
    return f"# DevPod End {workspace_id}.devpod"


def resolve_ssh_config_path(path: str = "") -> Path:
    if not path:
        return Path.home() / ".ssh" / "config"
    if path.startswith("~/"):
        return Path.home() / path[2:]
    return Path(path).absolute()


def _remove_named_block(text: str, begin: str, end: str) -> str:
    lines = text.splitlines()
    kept: list[str] = []
    i = 0
    while i < len(lines):
        if lines[i].strip() == begin:
            i += 1
            while i < len(lines) and lines[i].strip() != end:
                i += 1
            if i < len(lines):
                i += 1
            continue
        kept.append(lines[i])
        i += 1
    while kept and kept[-1] == "":
        kept.pop()
    rendered = "\n".join(kept)
    if rendered:
        rendered += "\n"
    return rendered


def remove_from_config(workspace_id: str, path: str = "", include_path: str = "") -> None:
    """Drop the workspace's host block from the SSH config it was registered in."""
    target = resolve_ssh_config_path(include_path or path)
    with _CONFIG_LOCK:
        existing = read_text_or_empty(target)
        if not existing:
            return
        updated = _remove_named_block(
            existing, start_marker(workspace_id), end_marker(workspace_id)
        )
        if updated != existing:
            atomic_write_text(target, updated, mode=SSH_CONFIG_MODE)
