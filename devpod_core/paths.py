from __future__ import annotations

import os
import tempfile
from pathlib import Path

HOME_ENV = "DEVPOD_HOME"
BINARY_CACHE_DIR_ENV = "DEVPOD_BINARY_CACHE_DIR"
BINARY_CACHE_DIR_NAME = "devpod-binaries"
DEFAULT_CONTEXT = "default"


def devpod_home() -> Path:
    override = os.getenv(HOME_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".devpod"


def context_dir(context: str) -> Path:
    return devpod_home() / "contexts" / (context or DEFAULT_CONTEXT)


def workspaces_dir(context: str) -> Path:
    return context_dir(context) / "workspaces"


def workspace_dir(context: str, workspace_id: str) -> Path:
    if not workspace_id:
        raise ValueError("workspace id is empty")
    return workspaces_dir(context) / workspace_id


def machine_dir(context: str, machine_id: str) -> Path:
    if not machine_id:
        raise ValueError("machine id is empty")
    return context_dir(context) / "machines" / machine_id


def locks_dir(context: str) -> Path:
    return context_dir(context) / "locks"


def provider_dir(context: str, provider_name: str) -> Path:
    return context_dir(context) / "providers" / provider_name


def provider_binaries_dir(context: str, provider_name: str) -> Path:
    return provider_dir(context, provider_name) / "binaries"


def binary_cache_dir() -> Path:
    override = os.getenv(BINARY_CACHE_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path(tempfile.gettempdir()) / BINARY_CACHE_DIR_NAME


def config_file() -> Path:
    return devpod_home() / "config.json"
