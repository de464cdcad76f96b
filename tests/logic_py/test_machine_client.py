from __future__ import annotations

import logging
from io import BytesIO
from pathlib import Path

import pytest

from devpod_core import paths
from devpod_core.client import CommandOptions, DeleteOptions, new_machine_client
from devpod_core.config import DevpodConfig
from devpod_core.errors import CommandError, ConfigurationError
from devpod_core.machine_client import MachineClient
from devpod_core.provider import ProviderCommands, ProviderConfig
from devpod_core.status import Status
from devpod_core.workspace import Machine, save_machine


@pytest.fixture
def devpod_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv(paths.HOME_ENV, str(tmp_path / "devpod"))
    return tmp_path / "devpod"


def _provider(**commands) -> ProviderConfig:
    defaults = {
        "command": ['sh -c "$COMMAND"'],
        "create": ["true"],
        "delete": ["true"],
        "start": ["true"],
        "stop": ["true"],
        "status": ["echo Running"],
    }
    defaults.update(commands)
    return ProviderConfig(name="vm", exec=ProviderCommands(**defaults))


def _client(provider: ProviderConfig) -> MachineClient:
    return MachineClient(
        DevpodConfig(), provider, Machine(id="m1"), logging.getLogger("test.machine")
    )


def test_status_parses_command_output(devpod_home: Path) -> None:
    assert _client(_provider(status=["echo stopped"])).status() is Status.STOPPED


def test_status_failure_carries_provider_stderr(devpod_home: Path) -> None:
    client = _client(_provider(status=["echo 'quota exceeded' >&2; exit 3"]))

    with pytest.raises(CommandError) as exc_info:
        client.status()

    assert str(exc_info.value).startswith("get status: ")
    assert "quota exceeded" in str(exc_info.value)
    assert exc_info.value.exit_code == 3


def test_create_start_stop_run_provider_commands(
    devpod_home: Path, tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    journal = tmp_path / "journal"
    client = _client(
        _provider(
            create=[f'echo "create $MACHINE_ID" >> {journal}'],
            start=[f"echo start >> {journal}"],
            stop=[f"echo stop >> {journal}"],
        )
    )
    caplog.set_level(logging.INFO, logger="test.machine")

    client.create()
    client.start()
    client.stop()

    assert journal.read_text(encoding="utf-8").splitlines() == ["create m1", "start", "stop"]
    messages = [record.getMessage() for record in caplog.records]
    assert "creating machine" in messages
    assert "stopped machine" in messages


def test_command_forwards_command_env(devpod_home: Path, tmp_path: Path) -> None:
    stdout = BytesIO()
    _client(_provider()).command(CommandOptions(command="echo inside", stdout=stdout))
    assert stdout.getvalue() == b"inside\n"


def test_force_delete_removes_folder_despite_failure(devpod_home: Path) -> None:
    machine = Machine(id="m1")
    save_machine(machine)
    client = _client(_provider(delete=["exit 1"]))

    client.delete(DeleteOptions(force=True))

    assert not paths.machine_dir("default", "m1").exists()


def test_delete_failure_without_force_still_removes_folder(devpod_home: Path) -> None:
    save_machine(Machine(id="m1"))
    client = _client(_provider(delete=["exit 1"]))

    with pytest.raises(CommandError):
        client.delete(DeleteOptions())

    assert not paths.machine_dir("default", "m1").exists()


def test_new_machine_client_validates_inputs() -> None:
    with pytest.raises(ConfigurationError, match="not a machine provider"):
        new_machine_client(DevpodConfig(), ProviderConfig(name="plain"), Machine(id="m1"))
    with pytest.raises(ConfigurationError, match="Machine does not exist"):
        new_machine_client(DevpodConfig(), _provider(), None)
