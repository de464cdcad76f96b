from __future__ import annotations

import io
import logging
import os
import re
from typing import Callable

from devpod_core.config import DevpodConfig, parse_duration
from devpod_core.errors import OptionsError
from devpod_core.provider import DOCKER_DRIVER, ProviderConfig, ProviderOption
from devpod_core.runner import run_emulated_shell
from devpod_core.workspace import (
    AgentConfig,
    Machine,
    OptionValue,
    Workspace,
    save_machine,
    save_workspace,
)

logger = logging.getLogger(__name__)

DEFAULT_AGENT_PATH = "/tmp/devpod/agent"
DEFAULT_AGENT_DOWNLOAD_URL = "https://github.com/loft-sh/devpod/releases/latest/download"
_VARIABLE_RE = re.compile(r"\$\{([A-Za-z0-9_]+)\}")

OptionCommandRunner = Callable[[str, dict[str, str]], str]


def parse_options(raw_options: list[str]) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for raw in raw_options:
        if "=" not in raw:
            raise OptionsError(f"invalid option '{raw}', expected format KEY=VALUE")
        key, value = raw.split("=", 1)
        parsed[key.strip().upper()] = value
    return parsed


def expand_variables(text: str, values: dict[str, str]) -> str:
    return _VARIABLE_RE.sub(lambda match: values.get(match.group(1), ""), text)


def validate_option_value(name: str, value: str, option: ProviderOption) -> None:
    if option.validation_pattern and not re.search(option.validation_pattern, value):
        if option.validation_message:
            raise OptionsError(option.validation_message)
        raise OptionsError(
            f"invalid value '{value}' for option '{name}', has to match the following "
            f"regEx: {option.validation_pattern}"
        )
    if option.enum and value not in option.enum:
        raise OptionsError(
            f"invalid value '{value}' for option '{name}', has to match one of the "
            f"following values: {option.enum}"
        )
    if option.type == "number":
        try:
            int(value)
        except ValueError as exc:
            raise OptionsError(
                f"invalid value '{value}' for option '{name}', must be a number"
            ) from exc
    elif option.type == "boolean":
        if value.lower() not in ("true", "false", "1", "0", "t", "f"):
            raise OptionsError(f"invalid value '{value}' for option '{name}', must be a boolean")
    elif option.type == "duration":
        try:
            parse_duration(value)
        except ValueError as exc:
            raise OptionsError(
                f"invalid value '{value}' for option '{name}', "
                "must be a duration like 10s, 5m or 24h"
            ) from exc


def _run_option_command(command: str, env: dict[str, str]) -> str:
    stdout = io.BytesIO()
    run_emulated_shell(command, env={**os.environ, **env}, stdout=stdout)
    return stdout.getvalue().decode("utf-8", errors="replace").strip()


def resolve_options(
    definitions: dict[str, ProviderOption],
    existing: dict[str, OptionValue],
    user_values: dict[str, str],
    *,
    log: logging.Logger | None = None,
    run_option_command: OptionCommandRunner | None = None,
) -> dict[str, OptionValue]:
    log = log or logger
    run_option_command = run_option_command or _run_option_command
    for key in user_values:
        if key not in definitions:
            log.warning(
                "Option %s was specified but is not defined, allowed options are %s",
                key,
                sorted(definitions),
            )

    resolved: dict[str, OptionValue] = {}
    for name, option in definitions.items():
        previous = existing.get(name)
        if name in user_values:
            value = user_values[name]
            validate_option_value(name, value, option)
            if (
                previous is not None
                and previous.user_provided
                and not option.mutable
                and previous.value != value
            ):
                raise OptionsError(
                    f"option '{name}' cannot be changed because it is not mutable"
                )
            resolved[name] = OptionValue(value=value, user_provided=True)
        elif previous is not None:
            resolved[name] = OptionValue(
                value=previous.value,
                user_provided=previous.user_provided,
                filled=previous.filled,
                children=list(previous.children),
            )

    # defaults may reference other options, so resolve until nothing changes
    pending = [name for name in definitions if name not in resolved]
    while pending:
        progressed = False
        for name in list(pending):
            option = definitions[name]
            references = _VARIABLE_RE.findall(option.default)
            if any(ref in pending and ref != name for ref in references):
                continue
            values = {key: item.value for key, item in resolved.items()}
            if option.default:
                resolved[name] = OptionValue(value=expand_variables(option.default, values))
            elif option.command:
                resolved[name] = OptionValue(value=run_option_command(option.command, values))
            pending.remove(name)
            progressed = True
        if not progressed:
            raise OptionsError(f"cyclic option defaults between {sorted(pending)}")

    for name, option in definitions.items():
        if option.required and not (name in resolved and resolved[name].value):
            raise OptionsError(f"option {name} is required, but no value provided")
    return resolved


def resolve_and_save_options_workspace(
    config: DevpodConfig,
    provider: ProviderConfig,
    workspace: Workspace,
    user_options: dict[str, str],
    log: logging.Logger | None = None,
) -> Workspace:
    existing = {**config.provider_options(provider.name), **workspace.provider.options}
    resolved = resolve_options(provider.options, existing, user_options, log=log)
    updated = workspace.clone()
    updated.provider.name = updated.provider.name or provider.name
    updated.provider.options = resolved
    save_workspace(updated)
    return updated


def resolve_and_save_options_machine(
    config: DevpodConfig,
    provider: ProviderConfig,
    machine: Machine,
    user_options: dict[str, str],
    log: logging.Logger | None = None,
) -> Machine:
    existing = {**config.provider_options(provider.name), **machine.provider.options}
    resolved = resolve_options(provider.options, existing, user_options, log=log)
    updated = machine.clone()
    updated.provider.name = updated.provider.name or provider.name
    updated.provider.options = resolved
    save_machine(updated)
    return updated


def merged_option_values(
    config: DevpodConfig,
    provider: ProviderConfig,
    workspace: Workspace | None,
    machine: Machine | None,
) -> dict[str, str]:
    values = {key: item.value for key, item in config.provider_options(provider.name).items()}
    if machine is not None:
        values.update({key: item.value for key, item in machine.provider.options.items()})
    if workspace is not None:
        values.update({key: item.value for key, item in workspace.provider.options.items()})
    return values


def resolve_agent_config(
    config: DevpodConfig,
    provider: ProviderConfig,
    workspace: Workspace | None,
    machine: Machine | None,
) -> AgentConfig:
    values = merged_option_values(config, provider, workspace, machine)
    agent = provider.agent

    def expand(raw: str, default: str = "") -> str:
        return expand_variables(raw, values).strip() or default

    return AgentConfig(
        path=expand(agent.path, DEFAULT_AGENT_PATH),
        download_url=expand(agent.download_url, DEFAULT_AGENT_DOWNLOAD_URL),
        local=expand(agent.local, "false"),
        driver=expand(agent.driver, DOCKER_DRIVER),
        timeout=expand(agent.timeout),
        inject_git_credentials=expand(agent.inject_git_credentials, "true"),
        inject_docker_credentials=expand(agent.inject_docker_credentials, "true"),
        custom={
            key: [expand_variables(part, values) for part in command]
            for key, command in agent.custom.items()
        },
    )
