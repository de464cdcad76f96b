from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any

from devpod_core import paths
from devpod_core.binaries import get_binaries
from devpod_core.cancel import CancelToken
from devpod_core.provider import ProviderConfig, platform_arch, platform_os
from devpod_core.runner import run_command
from devpod_core.workspace import Machine, OptionValue, Workspace

COMMAND_ENV = "COMMAND"


def to_environment(
    workspace: Workspace | None,
    machine: Machine | None,
    options: dict[str, OptionValue] | None,
    extra_env: dict[str, str] | None = None,
) -> dict[str, str]:
    """Environment every provider command runs with."""
    env = dict(os.environ)
    if workspace is not None:
        env["WORKSPACE_ID"] = workspace.id
        env["WORKSPACE_UID"] = workspace.uid
        env["WORKSPACE_CONTEXT"] = workspace.context
        env["WORKSPACE_FOLDER"] = str(paths.workspace_dir(workspace.context, workspace.id))
        env["WORKSPACE_ORIGIN"] = workspace.origin
        env["WORKSPACE_PROVIDER"] = workspace.provider.name
    if machine is not None:
        env["MACHINE_ID"] = machine.id
        env["MACHINE_CONTEXT"] = machine.context
        env["MACHINE_FOLDER"] = str(paths.machine_dir(machine.context, machine.id))
        env["MACHINE_PROVIDER"] = machine.provider.name
    env["DEVPOD_OS"] = platform_os()
    env["DEVPOD_ARCH"] = platform_arch()
    merged = dict(options or {})
    if machine is not None:
        merged.update(machine.provider.options)
    if workspace is not None:
        merged.update(workspace.provider.options)
    for name, option in merged.items():
        env[name] = option.value
    env.update(extra_env or {})
    return env


def to_environment_with_binaries(
    context: str,
    config: ProviderConfig,
    workspace: Workspace | None,
    machine: Machine | None,
    options: dict[str, OptionValue] | None,
    extra_env: dict[str, str] | None = None,
) -> dict[str, str]:
    env = to_environment(workspace, machine, options, extra_env)
    env.update(get_binaries(context, config))
    return env


@dataclass
class RunOptions:
    command: list[str]
    context: str
    config: ProviderConfig
    workspace: Workspace | None = None
    machine: Machine | None = None
    options: dict[str, OptionValue] = field(default_factory=dict)
    extra_env: dict[str, str] = field(default_factory=dict)
    stdin: Any = None
    stdout: Any = None
    stderr: Any = None
    cancel: CancelToken | None = None
    log: logging.Logger | None = None


def run_command_with_binaries(opts: RunOptions) -> None:
    env = to_environment_with_binaries(
        opts.context, opts.config, opts.workspace, opts.machine, opts.options, opts.extra_env
    )
    run_command(
        opts.command,
        env=env,
        stdin=opts.stdin,
        stdout=opts.stdout,
        stderr=opts.stderr,
        cancel=opts.cancel,
        log=opts.log,
    )
