from __future__ import annotations

import logging
import shutil
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from devpod_core import paths
from devpod_core.cancel import CancelToken, with_timeout
from devpod_core.config import DevpodConfig, parse_duration
from devpod_core.environment import RunOptions, run_command_with_binaries
from devpod_core.errors import CancelledError, ConfigurationError, DevpodError
from devpod_core.locks import ClientLocks
from devpod_core.provider import ProviderConfig
from devpod_core.ssh_config import remove_from_config
from devpod_core.status import Status
from devpod_core.workspace import CLIOptions, Machine, Workspace

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 2.0
BUSY_LOG_THRESHOLD_SECONDS = 10.0


@dataclass
class CreateOptions:
    stdin: Any = None
    stdout: Any = None
    stderr: Any = None


@dataclass
class StartOptions:
    pass


@dataclass
class StopOptions:
    pass


@dataclass
class DeleteOptions:
    force: bool = False
    grace_period: str = ""
    ignore_not_found: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeleteOptions":
        return cls(
            force=bool(data.get("force", False)),
            grace_period=str(data.get("gracePeriod", "")),
            ignore_not_found=bool(data.get("ignoreNotFound", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "force": self.force,
            "gracePeriod": self.grace_period,
            "ignoreNotFound": self.ignore_not_found,
        }


@dataclass
class StatusOptions:
    container_status: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatusOptions":
        return cls(container_status=bool(data.get("containerStatus", False)))

    def to_dict(self) -> dict[str, Any]:
        return {"containerStatus": self.container_status}


@dataclass
class CommandOptions:
    command: str
    stdin: Any = None
    stdout: Any = None
    stderr: Any = None


@dataclass
class SshOptions:
    command: str = ""
    user: str = ""
    stdin: Any = None
    stdout: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SshOptions":
        return cls(command=str(data.get("command", "")), user=str(data.get("user", "")))

    def to_dict(self) -> dict[str, Any]:
        return {"command": self.command, "user": self.user}


@dataclass
class UpOptions:
    cli_options: CLIOptions = field(default_factory=CLIOptions)
    debug: bool = False
    stdin: Any = None
    stdout: Any = None


def grace_period_token(cancel: CancelToken | None, grace_period: str) -> CancelToken | None:
    """Bound ``cancel`` by ``grace_period``; unparsable periods leave it unchanged."""
    if not grace_period:
        return cancel
    try:
        seconds = parse_duration(grace_period)
    except ValueError:
        return cancel
    return with_timeout(cancel, seconds)


def _remove_tree(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass


def delete_machine_folder(context: str, machine_id: str) -> None:
    _remove_tree(paths.machine_dir(context, machine_id))


def delete_workspace_folder(
    context: str,
    workspace_id: str,
    ssh_config_path: str = "",
    ssh_config_include_path: str = "",
    log: logging.Logger | None = None,
) -> None:
    log = log or logger
    try:
        remove_from_config(workspace_id, ssh_config_path, ssh_config_include_path)
    except OSError as exc:
        log.error("Remove workspace '%s' from ssh config: %s", workspace_id, exc)
    _remove_tree(paths.workspace_dir(context, workspace_id))


class BaseClient:
    """State and helpers shared by every lifecycle client.

    A client is bound to one provider and one workspace or machine. All
    accessors and lifecycle verbs serialize on an instance mutex; cross
    process serialization happens through ``lock``/``unlock``.
    """

    def __init__(
        self,
        config: DevpodConfig,
        provider: ProviderConfig,
        log: logging.Logger | None = None,
    ):
        self._config = config
        self._provider = provider
        self._log = log or logger
        self._mutex = threading.RLock()
        self._locks: ClientLocks | None = None

    @property
    def provider(self) -> str:
        return self._provider.name

    @property
    def provider_config(self) -> ProviderConfig:
        return self._provider

    @property
    def context(self) -> str:
        raise NotImplementedError

    def _require_locks(self) -> ClientLocks:
        if self._locks is None:
            raise ConfigurationError(f"{type(self).__name__} has no lock scope")
        return self._locks

    def lock(self, cancel: CancelToken | None = None) -> None:
        self._log.debug("acquire %s locks", self.provider)
        self._require_locks().lock(cancel)
        self._log.debug("acquired %s locks", self.provider)

    def unlock(self) -> str | None:
        return self._require_locks().unlock()

    def _run(
        self,
        command: list[str],
        *,
        workspace: Workspace | None = None,
        machine: Machine | None = None,
        extra_env: dict[str, str] | None = None,
        stdin: Any = None,
        stdout: Any = None,
        stderr: Any = None,
        cancel: CancelToken | None = None,
    ) -> None:
        run_command_with_binaries(
            RunOptions(
                command=command,
                context=self.context,
                config=self._provider,
                workspace=workspace,
                machine=machine,
                options=self._config.provider_options(self._provider.name),
                extra_env=dict(extra_env or {}),
                stdin=stdin,
                stdout=stdout,
                stderr=stderr,
                cancel=cancel,
                log=self._log,
            )
        )


def new_machine_client(
    config: DevpodConfig,
    provider: ProviderConfig,
    machine: Machine | None,
    log: logging.Logger | None = None,
):
    from devpod_core.machine_client import MachineClient

    log = log or logger
    if not provider.is_machine_provider():
        log.error("provider is not a machine provider")
        raise ConfigurationError("Provider is not a machine provider. Use another provider")
    if machine is None:
        raise ConfigurationError(
            "Machine does not exist. Perhaps it was deleted without the workspace being deleted"
        )
    return MachineClient(config, provider, machine, log)


def new_workspace_client(
    config: DevpodConfig,
    provider: ProviderConfig,
    workspace: Workspace,
    machine: Machine | None = None,
    log: logging.Logger | None = None,
):
    """Pick the lifecycle strategy ``provider`` declares for ``workspace``."""
    from devpod_core.proxy_client import ProxyClient
    from devpod_core.workspace_client import WorkspaceClient

    if provider.is_proxy_provider():
        return ProxyClient(config, provider, workspace, log)
    if workspace.machine.id and machine is None:
        raise ConfigurationError("workspace machine is not found")
    if provider.is_machine_provider() and not workspace.machine.id:
        raise ConfigurationError("workspace machine ID is empty, but machine provider found")
    return WorkspaceClient(config, provider, workspace, machine, log)


def start_wait(
    cancel: CancelToken | None,
    client: Any,
    create: bool,
    log: logging.Logger | None = None,
) -> None:
    """Poll ``client`` until the workspace runs, creating or starting it when allowed.

    Busy workspaces are waited on without bound; pass a ``cancel`` token with a
    deadline to limit the wait.
    """
    log = log or logger
    busy_since = time.monotonic()
    while True:
        status = client.status(StatusOptions(), cancel=cancel)
        if status is Status.BUSY:
            if time.monotonic() - busy_since > BUSY_LOG_THRESHOLD_SECONDS:
                log.info("workspace is busy, waiting for workspace to become ready")
                busy_since = time.monotonic()
            if cancel is None:
                time.sleep(POLL_INTERVAL_SECONDS)
            elif cancel.wait(POLL_INTERVAL_SECONDS):
                cancel.check()
            continue
        if status is Status.STOPPED:
            if not create:
                raise DevpodError("workspace is stopped")
            try:
                client.start(StartOptions(), cancel=cancel)
            except CancelledError:
                raise
            except DevpodError as exc:
                raise DevpodError(f"start workspace: {exc}") from exc
            continue
        if status is Status.NOT_FOUND:
            if not create:
                raise DevpodError("workspace not found")
            client.create(CreateOptions(), cancel=cancel)
            continue
        return
