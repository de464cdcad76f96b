from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from devpod_core import paths
from devpod_core.io_utils import read_json, write_json

WORKSPACE_CONFIG_FILE = "workspace.json"
WORKSPACE_RESULT_FILE = "result.json"
MACHINE_CONFIG_FILE = "machine.json"


@dataclass
class OptionValue:
    value: str = ""
    user_provided: bool = False
    filled: str | None = None
    children: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OptionValue":
        return cls(
            value=str(data.get("value", "")),
            user_provided=bool(data.get("userProvided", False)),
            filled=data.get("filled"),
            children=[str(child) for child in data.get("children") or []],
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"value": self.value}
        if self.user_provided:
            data["userProvided"] = True
        if self.filled is not None:
            data["filled"] = self.filled
        if self.children:
            data["children"] = list(self.children)
        return data


def options_from_dict(raw: Any) -> dict[str, OptionValue]:
    return {str(key): OptionValue.from_dict(value or {}) for key, value in (raw or {}).items()}


def options_to_dict(options: dict[str, OptionValue]) -> dict[str, Any]:
    return {key: value.to_dict() for key, value in options.items()}


@dataclass
class WorkspaceMachine:
    id: str = ""
    auto_delete: bool = False


@dataclass
class ProviderRef:
    name: str = ""
    options: dict[str, OptionValue] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProviderRef":
        return cls(name=str(data.get("name", "")), options=options_from_dict(data.get("options")))

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "options": options_to_dict(self.options)}


@dataclass
class Workspace:
    id: str
    context: str = paths.DEFAULT_CONTEXT
    uid: str = ""
    origin: str = ""
    source: dict[str, str] = field(default_factory=dict)
    machine: WorkspaceMachine = field(default_factory=WorkspaceMachine)
    provider: ProviderRef = field(default_factory=ProviderRef)
    ssh_config_path: str = ""
    ssh_config_include_path: str = ""
    created: str = ""
    last_used: str = ""

    def clone(self) -> "Workspace":
        return copy.deepcopy(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Workspace":
        machine = data.get("machine") or {}
        return cls(
            id=str(data.get("id", "")),
            context=str(data.get("context", "")) or paths.DEFAULT_CONTEXT,
            uid=str(data.get("uid", "")),
            origin=str(data.get("origin", "")),
            source={str(k): str(v) for k, v in (data.get("source") or {}).items()},
            machine=WorkspaceMachine(
                id=str(machine.get("machineId", "")),
                auto_delete=bool(machine.get("autoDelete", False)),
            ),
            provider=ProviderRef.from_dict(data.get("provider") or {}),
            ssh_config_path=str(data.get("sshConfigPath", "")),
            ssh_config_include_path=str(data.get("sshConfigIncludePath", "")),
            created=str(data.get("creationTimestamp", "")),
            last_used=str(data.get("lastUsed", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "uid": self.uid,
            "context": self.context,
            "origin": self.origin,
            "source": dict(self.source),
            "machine": {"machineId": self.machine.id, "autoDelete": self.machine.auto_delete},
            "provider": self.provider.to_dict(),
            "sshConfigPath": self.ssh_config_path,
            "sshConfigIncludePath": self.ssh_config_include_path,
            "creationTimestamp": self.created,
            "lastUsed": self.last_used,
        }


@dataclass
class Machine:
    id: str
    context: str = paths.DEFAULT_CONTEXT
    provider: ProviderRef = field(default_factory=ProviderRef)
    created: str = ""

    def clone(self) -> "Machine":
        return copy.deepcopy(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Machine":
        return cls(
            id=str(data.get("id", "")),
            context=str(data.get("context", "")) or paths.DEFAULT_CONTEXT,
            provider=ProviderRef.from_dict(data.get("provider") or {}),
            created=str(data.get("creationTimestamp", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "context": self.context,
            "provider": self.provider.to_dict(),
            "creationTimestamp": self.created,
        }


def save_workspace(workspace: Workspace) -> None:
    target = paths.workspace_dir(workspace.context, workspace.id) / WORKSPACE_CONFIG_FILE
    write_json(target, workspace.to_dict())


def load_workspace(context: str, workspace_id: str) -> Workspace | None:
    data = read_json(paths.workspace_dir(context, workspace_id) / WORKSPACE_CONFIG_FILE)
    if not isinstance(data, dict):
        return None
    return Workspace.from_dict(data)


def save_machine(machine: Machine) -> None:
    target = paths.machine_dir(machine.context, machine.id) / MACHINE_CONFIG_FILE
    write_json(target, machine.to_dict())


def load_machine(context: str, machine_id: str) -> Machine | None:
    data = read_json(paths.machine_dir(context, machine_id) / MACHINE_CONFIG_FILE)
    if not isinstance(data, dict):
        return None
    return Machine.from_dict(data)


def save_workspace_result(context: str, workspace_id: str, result: dict[str, Any]) -> None:
    write_json(paths.workspace_dir(context, workspace_id) / WORKSPACE_RESULT_FILE, result)


def load_workspace_result(context: str, workspace_id: str) -> dict[str, Any] | None:
    data = read_json(paths.workspace_dir(context, workspace_id) / WORKSPACE_RESULT_FILE)
    return data if isinstance(data, dict) else None


@dataclass
class PlatformOptions:
    enabled: bool = False
    connect: bool = False
    access_key: str = ""
    host: str = ""
    workspace_host: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlatformOptions":
        return cls(
            enabled=bool(data.get("enabled", False)),
            connect=bool(data.get("connect", False)),
            access_key=str(data.get("accessKey", "")),
            host=str(data.get("host", "")),
            workspace_host=str(data.get("workspaceHost", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "connect": self.connect,
            "accessKey": self.access_key,
            "host": self.host,
            "workspaceHost": self.workspace_host,
        }


@dataclass
class CLIOptions:
    """Flags of an ``up`` invocation that are forwarded to the agent."""

    id: str = ""
    source: str = ""
    ide: str = ""
    ide_options: list[str] = field(default_factory=list)
    dev_container_path: str = ""
    workspace_env: list[str] = field(default_factory=list)
    prebuild_repositories: list[str] = field(default_factory=list)
    recreate: bool = False
    reset: bool = False
    disable_daemon: bool = False
    debug: bool = False
    platform: PlatformOptions = field(default_factory=PlatformOptions)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CLIOptions":
        return cls(
            id=str(data.get("id", "")),
            source=str(data.get("source", "")),
            ide=str(data.get("ide", "")),
            ide_options=[str(x) for x in data.get("ideOptions") or []],
            dev_container_path=str(data.get("devContainerPath", "")),
            workspace_env=[str(x) for x in data.get("workspaceEnv") or []],
            prebuild_repositories=[str(x) for x in data.get("prebuildRepositories") or []],
            recreate=bool(data.get("recreate", False)),
            reset=bool(data.get("reset", False)),
            disable_daemon=bool(data.get("disableDaemon", False)),
            debug=bool(data.get("debug", False)),
            platform=PlatformOptions.from_dict(data.get("platform") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "ide": self.ide,
            "ideOptions": list(self.ide_options),
            "devContainerPath": self.dev_container_path,
            "workspaceEnv": list(self.workspace_env),
            "prebuildRepositories": list(self.prebuild_repositories),
            "recreate": self.recreate,
            "reset": self.reset,
            "disableDaemon": self.disable_daemon,
            "debug": self.debug,
            "platform": self.platform.to_dict(),
        }


@dataclass
class AgentConfig:
    path: str = ""
    download_url: str = ""
    local: str = ""
    driver: str = ""
    timeout: str = ""
    inject_git_credentials: str = ""
    inject_docker_credentials: str = ""
    custom: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "downloadURL": self.download_url,
            "local": self.local,
            "driver": self.driver,
            "timeout": self.timeout,
            "injectGitCredentials": self.inject_git_credentials,
            "injectDockerCredentials": self.inject_docker_credentials,
            "custom": {key: list(value) for key, value in self.custom.items()},
        }


@dataclass
class AgentWorkspaceInfo:
    workspace: Workspace | None
    machine: Machine | None
    agent: AgentConfig
    cli_options: CLIOptions = field(default_factory=CLIOptions)
    workspace_origin: str = ""
    last_dev_container_config: dict[str, Any] | None = None
    options: dict[str, OptionValue] = field(default_factory=dict)
    inject_timeout: float = 0.0
    registry_cache: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspaceOrigin": self.workspace_origin,
            "workspace": self.workspace.to_dict() if self.workspace else None,
            "machine": self.machine.to_dict() if self.machine else None,
            "lastDevContainerConfig": self.last_dev_container_config,
            "cliOptions": self.cli_options.to_dict(),
            "agent": self.agent.to_dict(),
            "options": options_to_dict(self.options),
            "injectTimeout": self.inject_timeout,
            "registryCache": self.registry_cache,
        }
