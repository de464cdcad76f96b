from __future__ import annotations

import io
import json
import logging
import os
import sys
from typing import Any, TypeVar

from devpod_core.cancel import CancelToken
from devpod_core.client import (
    BaseClient,
    CreateOptions,
    DeleteOptions,
    SshOptions,
    StatusOptions,
    StopOptions,
    UpOptions,
    delete_workspace_folder,
    grace_period_token,
)
from devpod_core.config import DevpodConfig
from devpod_core.errors import CommandError, DevpodError, OptionsError
from devpod_core.io_utils import MultiWriter
from devpod_core.locks import ClientLocks
from devpod_core.log import JsonStreamWriter, read_json_stream
from devpod_core.options import parse_options, resolve_and_save_options_workspace
from devpod_core.provider import ProviderConfig
from devpod_core.status import Status, parse_status_envelope
from devpod_core.workspace import PlatformOptions, Workspace

DEVPOD_FLAGS_UP = "DEVPOD_FLAGS_UP"
DEVPOD_FLAGS_SSH = "DEVPOD_FLAGS_SSH"
DEVPOD_FLAGS_DELETE = "DEVPOD_FLAGS_DELETE"
DEVPOD_FLAGS_STATUS = "DEVPOD_FLAGS_STATUS"
DEVPOD_PLATFORM_OPTIONS = "DEVPOD_PLATFORM_OPTIONS"

T = TypeVar("T")


def encode_options(options: Any, name: str) -> dict[str, str]:
    """Serialize ``options`` as compact JSON under the environment variable ``name``."""
    if options is None:
        return {}
    return {name: json.dumps(options.to_dict(), separators=(",", ":"))}


def decode_options_from_env(name: str, cls: type[T]) -> T | None:
    raw = os.environ.get(name, "")
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise OptionsError(f"decode {name}: {exc}") from exc
    if not isinstance(data, dict):
        raise OptionsError(f"decode {name}: expected a JSON object")
    return cls.from_dict(data)  # type: ignore[attr-defined]


def decode_platform_options_from_env() -> PlatformOptions | None:
    return decode_options_from_env(DEVPOD_PLATFORM_OPTIONS, PlatformOptions)


class ProxyClient(BaseClient):
    """Delegates every lifecycle verb to a remote platform through ``exec.proxy`` commands.

    Options travel as compact JSON in ``DEVPOD_FLAGS_*`` variables. Provider
    helpers write JSON log records on stderr, which are re-emitted through the
    client logger.
    """

    def __init__(
        self,
        config: DevpodConfig,
        provider: ProviderConfig,
        workspace: Workspace,
        log: logging.Logger | None = None,
    ):
        super().__init__(config, provider, log)
        self._workspace = workspace
        self._locks = ClientLocks(workspace.context, workspace_id=workspace.id, log=self._log)

    @property
    def workspace(self) -> str:
        with self._mutex:
            return self._workspace.id

    @property
    def context(self) -> str:
        return self._workspace.context

    def workspace_config(self) -> Workspace:
        with self._mutex:
            return self._workspace.clone()

    def _execute(
        self,
        command: list[str],
        *,
        extra_env: dict[str, str] | None = None,
        stdin: Any = None,
        stdout: Any = None,
        stderr: Any = None,
        cancel: CancelToken | None = None,
    ) -> None:
        self._run(
            command,
            workspace=self._workspace,
            extra_env=extra_env,
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            cancel=cancel,
        )

    def _execute_with_json_log(self, command: list[str], **kwargs: Any) -> None:
        writer = JsonStreamWriter(self._log)
        try:
            self._execute(command, stderr=writer, **kwargs)
        finally:
            writer.close()

    def refresh_options(self, raw_options: list[str], reconfigure: bool = False) -> None:
        with self._mutex:
            try:
                user_options = parse_options(raw_options)
            except OptionsError as exc:
                raise OptionsError(f"parse options: {exc}") from exc

            workspace = resolve_and_save_options_workspace(
                self._config, self._provider, self._workspace, user_options, self._log
            )
            if reconfigure:
                self._update_instance()
            self._workspace = workspace

    def _update_instance(self, cancel: CancelToken | None = None) -> None:
        if not sys.stdin.isatty():
            raise DevpodError("unable to update instance through CLI if stdin is not a terminal")
        self._execute(
            self._provider.exec.proxy.update_workspace,
            stdin=sys.stdin,
            stdout=sys.stdout,
            stderr=sys.stderr,
            cancel=cancel,
        )

    def create(
        self, options: CreateOptions | None = None, cancel: CancelToken | None = None
    ) -> None:
        options = options or CreateOptions()
        try:
            self._execute(
                self._provider.exec.proxy.create_workspace,
                stdin=options.stdin,
                stdout=options.stdout,
                stderr=options.stderr,
                cancel=cancel,
            )
        except DevpodError as exc:
            raise DevpodError(f"create remote workspace : {exc}") from exc

    def ssh(self, options: SshOptions, cancel: CancelToken | None = None) -> None:
        self._execute_with_json_log(
            self._provider.exec.proxy.ssh,
            extra_env=encode_options(options, DEVPOD_FLAGS_SSH),
            stdin=options.stdin,
            stdout=options.stdout,
            cancel=cancel,
        )

    def stop(self, options: StopOptions | None = None, cancel: CancelToken | None = None) -> None:
        with self._mutex:
            self._execute_with_json_log(self._provider.exec.proxy.stop, cancel=cancel)

    def up(self, options: UpOptions, cancel: CancelToken | None = None) -> None:
        extra_env = encode_options(options.cli_options, DEVPOD_FLAGS_UP)
        if options.debug:
            extra_env["DEBUG"] = "true"
        self._execute_with_json_log(
            self._provider.exec.proxy.up,
            extra_env=extra_env,
            stdin=options.stdin,
            stdout=options.stdout,
            cancel=cancel,
        )

    def delete(
        self, options: DeleteOptions | None = None, cancel: CancelToken | None = None
    ) -> None:
        options = options or DeleteOptions()
        with self._mutex:
            cancel = grace_period_token(cancel, options.grace_period)
            try:
                self._execute_with_json_log(
                    self._provider.exec.proxy.delete,
                    extra_env=encode_options(options, DEVPOD_FLAGS_DELETE),
                    cancel=cancel,
                )
            except DevpodError as exc:
                if not options.force:
                    raise DevpodError(f"error deleting workspace: {exc}") from exc
                self._log.error("Error deleting workspace: %s", exc)
            finally:
                delete_workspace_folder(
                    self._workspace.context,
                    self._workspace.id,
                    self._workspace.ssh_config_path,
                    self._workspace.ssh_config_include_path,
                    self._log,
                )

    def status(
        self, options: StatusOptions | None = None, cancel: CancelToken | None = None
    ) -> Status:
        options = options or StatusOptions()
        with self._mutex:
            stdout = io.BytesIO()
            combined = io.BytesIO()
            try:
                self._execute(
                    self._provider.exec.proxy.status,
                    extra_env=encode_options(options, DEVPOD_FLAGS_STATUS),
                    stdout=MultiWriter(stdout, combined),
                    stderr=combined,
                    cancel=cancel,
                )
            except CommandError as exc:
                output = combined.getvalue().decode("utf-8", errors="replace")
                raise CommandError(
                    f"error retrieving container status: {output}{exc}",
                    command=exc.command,
                    exit_code=exc.exit_code,
                    stdout=exc.stdout,
                    stderr=exc.stderr,
                ) from exc

            read_json_stream(combined.getvalue(), self._log)
            return parse_status_envelope(stdout.getvalue())
