from __future__ import annotations

from pathlib import Path

import pytest

from devpod_core import paths
from devpod_core.config import DevpodConfig
from devpod_core.errors import OptionsError
from devpod_core.options import (
    parse_options,
    resolve_agent_config,
    resolve_and_save_options_workspace,
    resolve_options,
)
from devpod_core.provider import ProviderAgentConfig, ProviderConfig, ProviderOption
from devpod_core.workspace import OptionValue, ProviderRef, Workspace, load_workspace


@pytest.fixture
def devpod_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv(paths.HOME_ENV, str(tmp_path / "devpod"))
    return tmp_path / "devpod"


def test_parse_options_uppercases_keys() -> None:
    assert parse_options(["region=eu-west-1", "IMAGE=a=b"]) == {
        "REGION": "eu-west-1",
        "IMAGE": "a=b",
    }


def test_parse_options_rejects_missing_equals() -> None:
    with pytest.raises(OptionsError, match="expected format KEY=VALUE"):
        parse_options(["REGION"])


def test_defaults_can_reference_other_options() -> None:
    definitions = {
        "URL": ProviderOption(default="https://${HOST}:${PORT}"),
        "HOST": ProviderOption(default="localhost"),
        "PORT": ProviderOption(),
    }

    resolved = resolve_options(definitions, {}, {"PORT": "8443"})

    assert resolved["URL"].value == "https://localhost:8443"
    assert resolved["PORT"].user_provided is True


def test_command_options_use_injected_runner() -> None:
    calls: list[str] = []

    def runner(command: str, env: dict[str, str]) -> str:
        calls.append(command)
        return "computed"

    definitions = {"TOKEN": ProviderOption(command="cat token")}
    resolved = resolve_options(definitions, {}, {}, run_option_command=runner)

    assert resolved["TOKEN"].value == "computed"
    assert calls == ["cat token"]


def test_required_option_without_value_fails() -> None:
    with pytest.raises(OptionsError, match="option HOST is required"):
        resolve_options({"HOST": ProviderOption(required=True)}, {}, {})


def test_immutable_user_option_cannot_change() -> None:
    existing = {"DISK": OptionValue(value="10", user_provided=True)}
    with pytest.raises(OptionsError, match="not mutable"):
        resolve_options({"DISK": ProviderOption()}, existing, {"DISK": "20"})


@pytest.mark.parametrize(
    ("option", "value"),
    [
        (ProviderOption(enum=["small", "large"]), "medium"),
        (ProviderOption(type="number"), "ten"),
        (ProviderOption(type="boolean"), "maybe"),
        (ProviderOption(type="duration"), "forever"),
        (ProviderOption(validation_pattern="^[a-z]+$"), "ABC"),
    ],
)
def test_invalid_values_are_rejected(option: ProviderOption, value: str) -> None:
    with pytest.raises(OptionsError, match="invalid value"):
        resolve_options({"OPT": option}, {}, {"OPT": value})


def test_resolve_and_save_options_workspace_persists(devpod_home: Path) -> None:
    provider = ProviderConfig(name="ssh", options={"HOST": ProviderOption(default="localhost")})
    workspace = Workspace(id="ws", provider=ProviderRef(name="ssh"))

    updated = resolve_and_save_options_workspace(
        DevpodConfig(), provider, workspace, {"HOST": "remote"}
    )

    assert updated.provider.options["HOST"].value == "remote"
    assert workspace.provider.options == {}
    saved = load_workspace("default", "ws")
    assert saved is not None
    assert saved.provider.options["HOST"].value == "remote"


def test_resolve_agent_config_expands_variables_and_defaults() -> None:
    provider = ProviderConfig(
        name="ssh",
        agent=ProviderAgentConfig(path="${AGENT_DIR}/agent", inject_git_credentials="false"),
    )
    workspace = Workspace(
        id="ws",
        provider=ProviderRef(name="ssh", options={"AGENT_DIR": OptionValue(value="/opt/devpod")}),
    )

    agent = resolve_agent_config(DevpodConfig(), provider, workspace, None)

    assert agent.path == "/opt/devpod/agent"
    assert agent.local == "false"
    assert agent.driver == "docker"
    assert agent.inject_git_credentials == "false"
    assert agent.inject_docker_credentials == "true"
