from __future__ import annotations

from pathlib import Path

import pytest

from devpod_core import paths


def test_devpod_home_uses_env_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(paths.HOME_ENV, str(tmp_path / "home"))
    assert paths.devpod_home() == tmp_path / "home"


def test_devpod_home_defaults_to_user_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(paths.HOME_ENV, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    assert paths.devpod_home() == tmp_path / ".devpod"


def test_context_scoped_folders(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(paths.HOME_ENV, str(tmp_path))
    context = tmp_path / "contexts" / "default"
    assert paths.workspace_dir("", "ws") == context / "workspaces" / "ws"
    assert paths.machine_dir("default", "m1") == context / "machines" / "m1"
    assert paths.locks_dir("default") == context / "locks"
    assert paths.provider_binaries_dir("default", "docker") == (
        context / "providers" / "docker" / "binaries"
    )


def test_empty_ids_are_rejected() -> None:
    with pytest.raises(ValueError):
        paths.workspace_dir("default", "")
    with pytest.raises(ValueError):
        paths.machine_dir("default", "")


def test_binary_cache_dir_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(paths.BINARY_CACHE_DIR_ENV, str(tmp_path / "cache"))
    assert paths.binary_cache_dir() == tmp_path / "cache"
