from __future__ import annotations

import io
import logging
from typing import Any

from devpod_core.cancel import CancelToken
from devpod_core.client import (
    BaseClient,
    CommandOptions,
    CreateOptions,
    DeleteOptions,
    StartOptions,
    StatusOptions,
    StopOptions,
    delete_machine_folder,
    grace_period_token,
)
from devpod_core.config import DevpodConfig
from devpod_core.environment import COMMAND_ENV
from devpod_core.errors import CommandError, DevpodError, OptionsError
from devpod_core.io_utils import MultiWriter
from devpod_core.locks import ClientLocks
from devpod_core.log import LogWriter
from devpod_core.options import (
    parse_options,
    resolve_agent_config,
    resolve_and_save_options_machine,
)
from devpod_core.progress import heartbeat
from devpod_core.provider import ProviderConfig
from devpod_core.status import Status, parse_status
from devpod_core.workspace import Machine


class MachineClient(BaseClient):
    """Drives the create/start/stop/status/delete commands of a machine provider."""

    def __init__(
        self,
        config: DevpodConfig,
        provider: ProviderConfig,
        machine: Machine,
        log: logging.Logger | None = None,
    ):
        super().__init__(config, provider, log)
        self._machine = machine
        self._locks = ClientLocks(machine.context, machine_id=machine.id, log=self._log)

    @property
    def machine(self) -> str:
        return self._machine.id

    @property
    def context(self) -> str:
        return self._machine.context

    def machine_config(self) -> Machine:
        with self._mutex:
            return self._machine.clone()

    def refresh_options(self, raw_options: list[str], reconfigure: bool = False) -> None:
        try:
            user_options = parse_options(raw_options)
        except OptionsError as exc:
            raise OptionsError(f"parse options: {exc}") from exc
        with self._mutex:
            self._machine = resolve_and_save_options_machine(
                self._config, self._provider, self._machine, user_options, self._log
            )

    @property
    def agent_path(self) -> str:
        return resolve_agent_config(self._config, self._provider, None, self._machine).path

    @property
    def agent_local(self) -> bool:
        agent = resolve_agent_config(self._config, self._provider, None, self._machine)
        return agent.local == "true"

    @property
    def agent_url(self) -> str:
        agent = resolve_agent_config(self._config, self._provider, None, self._machine)
        return agent.download_url

    def _execute(
        self,
        name: str,
        command: list[str],
        *,
        stdout: Any = None,
        stderr: Any = None,
        stdin: Any = None,
        extra_env: dict[str, str] | None = None,
        cancel: CancelToken | None = None,
        progress: bool = False,
        start_message: str = "",
        done_message: str = "",
    ) -> None:
        def run() -> None:
            if start_message:
                self._log.info(start_message)
            self._run(
                command,
                machine=self._machine,
                extra_env=extra_env,
                stdin=stdin,
                stdout=stdout,
                stderr=stderr,
                cancel=cancel,
            )
            if done_message:
                self._log.info(done_message)

        if not progress:
            run()
            return
        with heartbeat(f"Devpod {name} operation is in progress", self._log):
            run()

    def _lifecycle(
        self, name: str, command: list[str], verb: str, past: str, cancel: CancelToken | None
    ) -> None:
        writer = LogWriter(self._log)
        try:
            self._execute(
                name,
                command,
                stdout=writer,
                stderr=writer,
                cancel=cancel,
                progress=True,
                start_message=f"{verb} machine",
                done_message=f"{past} machine",
            )
        finally:
            writer.close()

    def create(
        self, options: CreateOptions | None = None, cancel: CancelToken | None = None
    ) -> None:
        self._lifecycle("create", self._provider.exec.create, "creating", "created", cancel)

    def start(
        self, options: StartOptions | None = None, cancel: CancelToken | None = None
    ) -> None:
        self._lifecycle("start", self._provider.exec.start, "starting", "started", cancel)

    def stop(
        self, options: StopOptions | None = None, cancel: CancelToken | None = None
    ) -> None:
        self._lifecycle("stop", self._provider.exec.stop, "stopping", "stopped", cancel)

    def command(self, options: CommandOptions, cancel: CancelToken | None = None) -> None:
        self._execute(
            "command",
            self._provider.exec.command,
            stdin=options.stdin,
            stdout=options.stdout,
            stderr=options.stderr,
            extra_env={COMMAND_ENV: options.command},
            cancel=cancel,
        )

    def status(
        self, options: StatusOptions | None = None, cancel: CancelToken | None = None
    ) -> Status:
        stdout = io.BytesIO()
        stderr = io.BytesIO()
        writer = LogWriter(self._log, logging.DEBUG)
        try:
            self._execute(
                "status",
                self._provider.exec.status,
                stdout=stdout,
                stderr=MultiWriter(stderr, writer),
                cancel=cancel,
            )
        except CommandError as exc:
            out = stdout.getvalue().decode("utf-8", errors="replace").strip()
            err = stderr.getvalue().decode("utf-8", errors="replace").strip()
            raise CommandError(
                f"get status: {out}{err}",
                command=exc.command,
                exit_code=exc.exit_code,
                stdout=out,
                stderr=err,
            ) from exc
        finally:
            writer.close()
        return parse_status(stdout.getvalue().decode("utf-8", errors="replace"))

    def delete(
        self, options: DeleteOptions | None = None, cancel: CancelToken | None = None
    ) -> None:
        options = options or DeleteOptions()
        cancel = grace_period_token(cancel, options.grace_period)
        writer = LogWriter(self._log)
        try:
            self._execute(
                "delete",
                self._provider.exec.delete,
                stdout=writer,
                stderr=writer,
                cancel=cancel,
                progress=True,
                start_message="deleting machine",
                done_message="deleted machine",
            )
        except DevpodError as exc:
            if not options.force:
                raise
            self._log.error("failed to delete machine %s: %s", self._machine.id, exc)
        finally:
            writer.close()
            delete_machine_folder(self._machine.context, self._machine.id)
