from __future__ import annotations

import json
import logging
import re
from pathlib import Path

import pytest

from devpod_core import paths
from devpod_core.agent import decompress
from devpod_core.client import DeleteOptions, StatusOptions, new_workspace_client
from devpod_core.config import DevpodConfig
from devpod_core.errors import CommandError, ConfigurationError
from devpod_core.provider import ProviderCommands, ProviderConfig, ProxyCommands
from devpod_core.proxy_client import ProxyClient
from devpod_core.status import Status
from devpod_core.workspace import (
    CLIOptions,
    Machine,
    OptionValue,
    PlatformOptions,
    ProviderRef,
    Workspace,
    WorkspaceMachine,
    save_workspace,
)
from devpod_core.workspace_client import WorkspaceClient

LOG = logging.getLogger("test.workspace")


@pytest.fixture
def devpod_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv(paths.HOME_ENV, str(tmp_path / "devpod"))
    return tmp_path / "devpod"


def _direct_provider(command: str = "true") -> ProviderConfig:
    return ProviderConfig(name="docker", exec=ProviderCommands(command=[command]))


def _machine_provider(journal: Path, status: str = "NotFound") -> ProviderConfig:
    return ProviderConfig(
        name="vm",
        exec=ProviderCommands(
            command=["true"],
            create=[f"echo create >> {journal}"],
            delete=[f"echo delete >> {journal}"],
            start=[f"echo start >> {journal}"],
            stop=[f"echo stop >> {journal}"],
            status=[f"echo {status}"],
        ),
    )


def test_direct_status_follows_workspace_folder(devpod_home: Path) -> None:
    workspace = Workspace(id="ws")
    client = WorkspaceClient(DevpodConfig(), _direct_provider(), workspace, log=LOG)

    assert client.status() is Status.NOT_FOUND
    save_workspace(workspace)
    assert client.status() is Status.RUNNING


def test_container_status_comes_from_agent(devpod_home: Path) -> None:
    client = WorkspaceClient(
        DevpodConfig(), _direct_provider("echo Busy"), Workspace(id="ws"), log=LOG
    )
    assert client.status(StatusOptions(container_status=True)) is Status.BUSY


def test_container_status_failure_includes_output(devpod_home: Path) -> None:
    client = WorkspaceClient(
        DevpodConfig(),
        _direct_provider("echo 'no such container' >&2; exit 1"),
        Workspace(id="ws"),
        log=LOG,
    )
    with pytest.raises(CommandError, match="error retrieving container status: no such container"):
        client.status(StatusOptions(container_status=True))


def test_stop_sends_agent_command_with_workspace_info(devpod_home: Path, tmp_path: Path) -> None:
    captured = tmp_path / "command"
    client = WorkspaceClient(
        DevpodConfig(),
        _direct_provider(f'printf "%s" "$COMMAND" > {captured}'),
        Workspace(id="ws"),
        log=LOG,
    )

    client.stop()

    command = captured.read_text(encoding="utf-8")
    match = re.fullmatch(r"'(.+)' agent workspace stop --workspace-info '(.+)'", command)
    assert match is not None
    assert match.group(1) == "/tmp/devpod/agent"
    info = json.loads(decompress(match.group(2)))
    assert info["workspace"]["id"] == "ws"


def test_force_delete_removes_folder_and_ssh_block(devpod_home: Path, tmp_path: Path) -> None:
    ssh_config = tmp_path / "ssh_config"
    ssh_config.write_text(
        "# DevPod Start ws.devpod\nHost ws.devpod\n# DevPod End ws.devpod\nHost other\n",
        encoding="utf-8",
    )
    workspace = Workspace(id="ws", ssh_config_path=str(ssh_config))
    save_workspace(workspace)
    client = WorkspaceClient(DevpodConfig(), _direct_provider("exit 1"), workspace, log=LOG)

    client.delete(DeleteOptions(force=True))

    assert not paths.workspace_dir("default", "ws").exists()
    assert ssh_config.read_text(encoding="utf-8") == "Host other\n"


def test_delete_without_force_surfaces_error_after_cleanup(
    devpod_home: Path, tmp_path: Path
) -> None:
    ssh_config = tmp_path / "ssh_config"
    ssh_config.write_text(
        "# DevPod Start ws.devpod\nHost ws.devpod\n# DevPod End ws.devpod\nHost other\n",
        encoding="utf-8",
    )
    workspace = Workspace(id="ws", ssh_config_path=str(ssh_config))
    save_workspace(workspace)
    client = WorkspaceClient(DevpodConfig(), _direct_provider("exit 3"), workspace, log=LOG)

    with pytest.raises(CommandError):
        client.delete(DeleteOptions())

    assert not paths.workspace_dir("default", "ws").exists()
    assert ssh_config.read_text(encoding="utf-8") == "Host other\n"


def test_create_builds_missing_machine(devpod_home: Path, tmp_path: Path) -> None:
    journal = tmp_path / "journal"
    workspace = Workspace(id="ws", machine=WorkspaceMachine(id="m1", auto_delete=True))
    client = WorkspaceClient(
        DevpodConfig(), _machine_provider(journal), workspace, Machine(id="m1"), log=LOG
    )

    client.create()
    client.stop()

    assert journal.read_text(encoding="utf-8").splitlines() == ["create", "stop"]


def test_create_skips_existing_machine(devpod_home: Path, tmp_path: Path) -> None:
    journal = tmp_path / "journal"
    workspace = Workspace(id="ws", machine=WorkspaceMachine(id="m1"))
    client = WorkspaceClient(
        DevpodConfig(), _machine_provider(journal, "Stopped"), workspace, Machine(id="m1"), log=LOG
    )

    client.create()

    assert not journal.exists()


def test_agent_info_strips_provider_options_without_daemon(devpod_home: Path) -> None:
    secret = {"TOKEN": OptionValue(value="s3cret")}
    workspace = Workspace(id="ws", provider=ProviderRef(name="docker", options=dict(secret)))
    client = WorkspaceClient(DevpodConfig(), _direct_provider(), workspace, log=LOG)

    compressed, info = client.agent_info(CLIOptions(disable_daemon=True))

    assert info.options == {}
    assert info.workspace is not None
    assert info.workspace.provider.options == {}
    assert client.workspace_config().provider.options["TOKEN"].value == "s3cret"
    assert "s3cret" not in decompress(compressed)


def test_platform_mode_forces_credential_injection(devpod_home: Path) -> None:
    client = WorkspaceClient(
        DevpodConfig(),
        ProviderConfig(
            name="docker",
            exec=ProviderCommands(command=["true"]),
        ),
        Workspace(id="ws"),
        log=LOG,
    )
    client.provider_config.agent.inject_git_credentials = "false"
    cli = CLIOptions(platform=PlatformOptions(enabled=True))

    assert client.agent_inject_git_credentials(cli) is True
    assert client.agent_inject_git_credentials(CLIOptions()) is False


def test_new_workspace_client_selects_strategy(devpod_home: Path, tmp_path: Path) -> None:
    config = DevpodConfig()
    proxy = ProviderConfig(
        name="pro",
        exec=ProviderCommands(
            proxy=ProxyCommands(up=["up"], ssh=["ssh"], stop=["stop"], status=["s"], delete=["d"])
        ),
    )
    machine_provider = _machine_provider(tmp_path / "journal")

    assert isinstance(new_workspace_client(config, proxy, Workspace(id="ws")), ProxyClient)
    assert isinstance(
        new_workspace_client(config, _direct_provider(), Workspace(id="ws")), WorkspaceClient
    )
    with pytest.raises(ConfigurationError, match="workspace machine ID is empty"):
        new_workspace_client(config, machine_provider, Workspace(id="ws"))
    with pytest.raises(ConfigurationError, match="workspace machine is not found"):
        new_workspace_client(
            config, machine_provider, Workspace(id="ws", machine=WorkspaceMachine(id="m1"))
        )


def _tree(root: Path) -> list[str]:
    return sorted(str(path.relative_to(root)) for path in root.rglob("*"))


def test_direct_status_is_repeatable_and_leaves_state_alone(devpod_home: Path) -> None:
    workspace = Workspace(id="ws")
    save_workspace(workspace)
    client = WorkspaceClient(DevpodConfig(), _direct_provider(), workspace, log=LOG)
    before = _tree(devpod_home)

    first = client.status()
    second = client.status()

    assert first is second is Status.RUNNING
    assert _tree(devpod_home) == before


def test_machine_status_is_repeatable_and_runs_no_lifecycle_command(
    devpod_home: Path, tmp_path: Path
) -> None:
    journal = tmp_path / "journal"
    workspace = Workspace(id="ws", machine=WorkspaceMachine(id="m1", auto_delete=True))
    save_workspace(workspace)
    client = WorkspaceClient(
        DevpodConfig(), _machine_provider(journal, "Stopped"), workspace, Machine(id="m1"), log=LOG
    )
    before = _tree(devpod_home)

    first = client.status()
    second = client.status()

    assert first is second is Status.STOPPED
    assert _tree(devpod_home) == before
    assert not journal.exists()
