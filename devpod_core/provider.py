from __future__ import annotations

import json
import platform
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from devpod_core.errors import ConfigurationError

CUSTOM_DRIVER = "custom"
DOCKER_DRIVER = "docker"
KUBERNETES_DRIVER = "kubernetes"

_PROVIDER_NAME_RE = re.compile(r"[^a-z0-9\-]+")
_OPTION_NAME_RE = re.compile(r"[^A-Z0-9_]+")
_VERSION_RE = re.compile(r"^\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$")
_DURATION_RE = re.compile(r"^(?:\d+(?:\.\d+)?(?:ns|us|ms|s|m|h))+$")
ALLOWED_OPTION_TYPES = ("string", "multiline", "duration", "number", "boolean")
ARCHIVE_SUFFIXES = (".gz", ".tar", ".tgz", ".zip")
_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "i386": "386",
    "i686": "386",
}


def platform_os() -> str:
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "darwin"
    return "linux"


def platform_arch() -> str:
    machine = platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


def _str_array(raw: Any) -> list[str]:
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        return [raw]
    return [str(item) for item in raw]


def _str_bool(raw: Any) -> str:
    if isinstance(raw, bool):
        return "true" if raw else "false"
    return "" if raw is None else str(raw)


@dataclass
class ProviderBinary:
    os: str
    arch: str
    path: str
    name: str = ""
    checksum: str = ""
    archive_path: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProviderBinary":
        return cls(
            os=str(data.get("os", "")),
            arch=str(data.get("arch", "")),
            path=str(data.get("path", "")),
            name=str(data.get("name", "")),
            checksum=str(data.get("checksum", "")),
            archive_path=str(data.get("archivePath", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "os": self.os,
            "arch": self.arch,
            "path": self.path,
            "name": self.name,
            "checksum": self.checksum,
            "archivePath": self.archive_path,
        }


def _binaries_from_dict(raw: Any) -> dict[str, list[ProviderBinary]]:
    return {
        str(name): [ProviderBinary.from_dict(item) for item in (locations or [])]
        for name, locations in (raw or {}).items()
    }


@dataclass
class ProviderOption:
    description: str = ""
    default: str = ""
    required: bool = False
    validation_pattern: str = ""
    validation_message: str = ""
    enum: list[str] = field(default_factory=list)
    type: str = ""
    mutable: bool = False
    local: bool = False
    global_: bool = False
    command: str = ""
    cache: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProviderOption":
        enum: list[str] = []
        for entry in data.get("enum") or []:
            enum.append(str(entry.get("value", "")) if isinstance(entry, dict) else str(entry))
        return cls(
            description=str(data.get("description", "")),
            default=str(data.get("default", "")),
            required=bool(data.get("required", False)),
            validation_pattern=str(data.get("validationPattern", "")),
            validation_message=str(data.get("validationMessage", "")),
            enum=enum,
            type=str(data.get("type", "")),
            mutable=bool(data.get("mutable", False)),
            local=bool(data.get("local", False)),
            global_=bool(data.get("global", False)),
            command=str(data.get("command", "")),
            cache=str(data.get("cache", "")),
        )


@dataclass
class ProxyCommands:
    up: list[str] = field(default_factory=list)
    ssh: list[str] = field(default_factory=list)
    stop: list[str] = field(default_factory=list)
    status: list[str] = field(default_factory=list)
    delete: list[str] = field(default_factory=list)
    create_workspace: list[str] = field(default_factory=list)
    update_workspace: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProxyCommands":
        return cls(
            up=_str_array(data.get("up")),
            ssh=_str_array(data.get("ssh")),
            stop=_str_array(data.get("stop")),
            status=_str_array(data.get("status")),
            delete=_str_array(data.get("delete")),
            create_workspace=_str_array((data.get("create") or {}).get("workspace")),
            update_workspace=_str_array((data.get("update") or {}).get("workspace")),
        )

    def declared(self) -> bool:
        return any(
            (self.up, self.ssh, self.stop, self.status, self.delete, self.create_workspace)
        )


@dataclass
class ProviderCommands:
    command: list[str] = field(default_factory=list)
    create: list[str] = field(default_factory=list)
    start: list[str] = field(default_factory=list)
    stop: list[str] = field(default_factory=list)
    status: list[str] = field(default_factory=list)
    delete: list[str] = field(default_factory=list)
    proxy: ProxyCommands = field(default_factory=ProxyCommands)
    daemon_start: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProviderCommands":
        return cls(
            command=_str_array(data.get("command")),
            create=_str_array(data.get("create")),
            start=_str_array(data.get("start")),
            stop=_str_array(data.get("stop")),
            status=_str_array(data.get("status")),
            delete=_str_array(data.get("delete")),
            proxy=ProxyCommands.from_dict(data.get("proxy") or {}),
            daemon_start=_str_array((data.get("daemon") or {}).get("start")),
        )


CUSTOM_DRIVER_FIELDS = (
    "targetArchitecture",
    "startDevContainer",
    "stopDevContainer",
    "runDevContainer",
    "deleteDevContainer",
    "findDevContainer",
    "commandDevContainer",
)


@dataclass
class ProviderAgentConfig:
    path: str = ""
    local: str = ""
    driver: str = ""
    inject_git_credentials: str = ""
    inject_docker_credentials: str = ""
    download_url: str = ""
    timeout: str = ""
    binaries: dict[str, list[ProviderBinary]] = field(default_factory=dict)
    custom: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProviderAgentConfig":
        return cls(
            path=str(data.get("path", "")),
            local=_str_bool(data.get("local")),
            driver=str(data.get("driver", "")),
            inject_git_credentials=_str_bool(data.get("injectGitCredentials")),
            inject_docker_credentials=_str_bool(data.get("injectDockerCredentials")),
            download_url=str(data.get("downloadURL", "")),
            timeout=str(data.get("timeout", "")),
            binaries=_binaries_from_dict(data.get("binaries")),
            custom={
                str(key): _str_array(value) for key, value in (data.get("custom") or {}).items()
            },
        )

    def is_empty(self) -> bool:
        return self == ProviderAgentConfig()


@dataclass
class ProviderConfig:
    name: str
    version: str = ""
    description: str = ""
    options: dict[str, ProviderOption] = field(default_factory=dict)
    binaries: dict[str, list[ProviderBinary]] = field(default_factory=dict)
    agent: ProviderAgentConfig = field(default_factory=ProviderAgentConfig)
    exec: ProviderCommands = field(default_factory=ProviderCommands)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProviderConfig":
        return cls(
            name=str(data.get("name", "")),
            version=str(data.get("version", "")),
            description=str(data.get("description", "")),
            options={
                str(key): ProviderOption.from_dict(value or {})
                for key, value in (data.get("options") or {}).items()
            },
            binaries=_binaries_from_dict(data.get("binaries")),
            agent=ProviderAgentConfig.from_dict(data.get("agent") or {}),
            exec=ProviderCommands.from_dict(data.get("exec") or {}),
        )

    def is_machine_provider(self) -> bool:
        return len(self.exec.create) > 0

    def is_proxy_provider(self) -> bool:
        return self.exec.proxy.declared()

    def is_daemon_provider(self) -> bool:
        return len(self.exec.daemon_start) > 0


def parse_provider(raw: str | bytes) -> ProviderConfig:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"parse provider config: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError("parse provider config: expected a JSON object")
    config = ProviderConfig.from_dict(data)
    validate_provider(config)
    return config


def load_provider(path: Path) -> ProviderConfig:
    return parse_provider(path.read_text(encoding="utf-8"))


def validate_provider(config: ProviderConfig) -> None:
    if not config.name:
        raise ConfigurationError("name is missing in provider config")
    if _PROVIDER_NAME_RE.search(config.name):
        raise ConfigurationError(
            "provider name can only include lowercase letters, numbers or dashes"
        )
    if len(config.name) > 32:
        raise ConfigurationError("provider name cannot be longer than 32 characters")
    if config.version and not _VERSION_RE.match(config.version.removeprefix("v")):
        raise ConfigurationError(f"parse provider version: invalid version '{config.version}'")

    for option_name, option in config.options.items():
        _validate_option(option_name, option)

    _validate_binaries("binaries", config.binaries)
    if config.is_proxy_provider():
        _validate_without_exec(config, "proxy")
        required = {
            "exec.proxy.status": config.exec.proxy.status,
            "exec.proxy.stop": config.exec.proxy.stop,
            "exec.proxy.delete": config.exec.proxy.delete,
            "exec.proxy.ssh": config.exec.proxy.ssh,
            "exec.proxy.up": config.exec.proxy.up,
        }
        for field_name, value in required.items():
            if not value:
                raise ConfigurationError(f"{field_name} is required for proxy providers")
    elif config.is_daemon_provider():
        _validate_without_exec(config, "daemon")
    else:
        _validate_standard_provider(config)


def _validate_option(option_name: str, option: ProviderOption) -> None:
    if _OPTION_NAME_RE.search(option_name):
        raise ConfigurationError(
            f"provider option '{option_name}' can only consist of upper case letters, "
            "numbers or underscores. E.g. MY_OPTION, MY_OTHER_OPTION"
        )
    if option.validation_pattern:
        try:
            re.compile(option.validation_pattern)
        except re.error as exc:
            raise ConfigurationError(
                f"error parsing validation pattern '{option.validation_pattern}' "
                f"for option '{option_name}': {exc}"
            ) from exc
    if option.default and option.command:
        raise ConfigurationError(
            f"default and command cannot be used together in option '{option_name}'"
        )
    if option.global_ and option.cache:
        raise ConfigurationError(
            f"global and cache cannot be used together in option '{option_name}'"
        )
    if option.global_ and option.mutable:
        raise ConfigurationError(
            f"global and mutable cannot be used together in option '{option_name}'"
        )
    if option.cache and not _DURATION_RE.match(option.cache):
        raise ConfigurationError(f"invalid cache value for option '{option_name}'")
    if option.type and option.type not in ALLOWED_OPTION_TYPES:
        raise ConfigurationError(
            f"type can only be one of in option '{option_name}': {list(ALLOWED_OPTION_TYPES)}"
        )
    if option.cache and not option.command:
        raise ConfigurationError(f"cache can only be used with command in option '{option_name}'")


def _validate_without_exec(config: ProviderConfig, kind: str) -> None:
    if not config.agent.is_empty():
        raise ConfigurationError(f"agent config is not allowed for {kind} providers")
    disallowed = {
        "exec.command": config.exec.command,
        "exec.create": config.exec.create,
        "exec.start": config.exec.start,
        "exec.stop": config.exec.stop,
        "exec.status": config.exec.status,
        "exec.delete": config.exec.delete,
    }
    for field_name, value in disallowed.items():
        if value:
            raise ConfigurationError(f"{field_name} is not allowed in {kind} providers")


def _validate_standard_provider(config: ProviderConfig) -> None:
    driver = config.agent.driver
    if driver and driver not in (CUSTOM_DRIVER, DOCKER_DRIVER, KUBERNETES_DRIVER):
        raise ConfigurationError("agent.driver can only be docker, kubernetes or custom")
    if driver == CUSTOM_DRIVER:
        for field_name in CUSTOM_DRIVER_FIELDS:
            if not config.agent.custom.get(field_name):
                raise ConfigurationError(f"agent.custom.{field_name} is required")
    _validate_binaries("agent.binaries", config.agent.binaries)

    commands = config.exec
    if not commands.command:
        raise ConfigurationError("exec.command is required")
    for first, second, first_value, second_value in (
        ("exec.create", "exec.delete", commands.create, commands.delete),
        ("exec.start", "exec.stop", commands.start, commands.stop),
    ):
        if first_value and not second_value:
            raise ConfigurationError(f"{second} is required")
        if second_value and not first_value:
            raise ConfigurationError(f"{first} is required")
    if commands.start and not commands.status:
        raise ConfigurationError("exec.status is required")
    if commands.start and not commands.create:
        raise ConfigurationError("exec.create is required")


def _validate_binaries(prefix: str, binaries: dict[str, list[ProviderBinary]]) -> None:
    for binary_name, locations in binaries.items():
        if _OPTION_NAME_RE.search(binary_name):
            raise ConfigurationError(
                f"binary name '{binary_name}' can only consist of upper case letters, "
                "numbers or underscores. E.g. MY_BINARY, KUBECTL"
            )
        for binary in locations:
            if binary.os not in ("linux", "darwin", "windows"):
                raise ConfigurationError(
                    f"unsupported binary operating system '{binary.os}', "
                    "must be 'linux', 'darwin' or 'windows'"
                )
            if not binary.path:
                raise ConfigurationError(
                    f"{prefix}.{binary_name}.path required binary path, cannot be empty"
                )
            if not binary.archive_path and binary.path.endswith(ARCHIVE_SUFFIXES):
                raise ConfigurationError(
                    f"{prefix}.{binary_name}.archivePath required because binary path is an archive"
                )
            if not binary.arch:
                raise ConfigurationError(f"{prefix}.{binary_name}.arch required, cannot be empty")
