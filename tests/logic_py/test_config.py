from __future__ import annotations

from pathlib import Path

import pytest

from devpod_core.config import (
    CONTEXT_OPTION_AGENT_INJECT_TIMEOUT,
    ContextConfig,
    DevpodConfig,
    load_config,
    parse_duration,
    save_config,
)
from devpod_core.workspace import OptionValue


@pytest.mark.parametrize(
    ("raw", "seconds"),
    [("10s", 10.0), ("5m", 300.0), ("1h30m", 5400.0), ("250ms", 0.25), ("42", 42.0)],
)
def test_parse_duration(raw: str, seconds: float) -> None:
    assert parse_duration(raw) == pytest.approx(seconds)


@pytest.mark.parametrize("raw", ["", "abc", "10x", "5m10"])
def test_parse_duration_rejects_garbage(raw: str) -> None:
    with pytest.raises(ValueError):
        parse_duration(raw)


def test_context_duration_falls_back_to_default_on_invalid_value() -> None:
    config = DevpodConfig()
    assert config.context_duration(CONTEXT_OPTION_AGENT_INJECT_TIMEOUT) == 300.0
    config.current().options[CONTEXT_OPTION_AGENT_INJECT_TIMEOUT] = OptionValue(value="soon")
    assert config.context_duration(CONTEXT_OPTION_AGENT_INJECT_TIMEOUT) == 300.0
    config.current().options[CONTEXT_OPTION_AGENT_INJECT_TIMEOUT] = OptionValue(value="30s")
    assert config.context_duration(CONTEXT_OPTION_AGENT_INJECT_TIMEOUT) == 30.0


def test_load_config_missing_file_returns_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "missing.json")
    assert config.default_context == "default"
    assert config.provider_options("docker") == {}


def test_save_and_load_config_keeps_provider_options(tmp_path: Path) -> None:
    config = DevpodConfig(
        contexts={
            "default": ContextConfig(
                providers={"docker": {"DOCKER_HOST": OptionValue(value="unix:///var/run/d.sock")}}
            )
        }
    )
    target = tmp_path / "config.json"
    save_config(config, target)

    loaded = load_config(target)
    assert loaded.provider_options("docker")["DOCKER_HOST"].value == "unix:///var/run/d.sock"
