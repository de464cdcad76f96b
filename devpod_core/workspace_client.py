from __future__ import annotations

import io
import json
import logging

from devpod_core import paths
from devpod_core.agent import build_agent_command, compress
from devpod_core.cancel import CancelToken
from devpod_core.client import (
    BaseClient,
    CommandOptions,
    CreateOptions,
    DeleteOptions,
    StartOptions,
    StatusOptions,
    StopOptions,
    delete_workspace_folder,
    grace_period_token,
    new_machine_client,
)
from devpod_core.config import (
    CONTEXT_OPTION_AGENT_INJECT_TIMEOUT,
    CONTEXT_OPTION_REGISTRY_CACHE,
    DevpodConfig,
)
from devpod_core.environment import COMMAND_ENV
from devpod_core.errors import (
    CancelledError,
    CommandError,
    ConfigurationError,
    DeadlineExceeded,
    DevpodError,
    OptionsError,
    StatusError,
)
from devpod_core.io_utils import MultiWriter
from devpod_core.locks import ClientLocks
from devpod_core.log import LogWriter
from devpod_core.options import (
    parse_options,
    resolve_agent_config,
    resolve_and_save_options_machine,
    resolve_and_save_options_workspace,
)
from devpod_core.provider import CUSTOM_DRIVER, ProviderConfig
from devpod_core.status import Status, parse_status
from devpod_core.workspace import (
    AgentConfig,
    AgentWorkspaceInfo,
    CLIOptions,
    Machine,
    Workspace,
    load_workspace_result,
)


class WorkspaceClient(BaseClient):
    """Lifecycle client for direct and machine-backed workspaces.

    Without a machine provider the workspace folder is the source of truth and
    stop/delete go through the provider's generic command. With a machine
    provider create/start/stop are delegated to a ``MachineClient``; when the
    workspace does not own its machine (``auto_delete`` unset) only the
    container is stopped or deleted.
    """

    def __init__(
        self,
        config: DevpodConfig,
        provider: ProviderConfig,
        workspace: Workspace,
        machine: Machine | None = None,
        log: logging.Logger | None = None,
    ):
        super().__init__(config, provider, log)
        self._workspace = workspace
        self._machine = machine
        self._locks = ClientLocks(
            workspace.context,
            workspace_id=workspace.id,
            machine_id=machine.id if machine is not None else "",
            log=self._log,
        )

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

    def machine_config(self) -> Machine | None:
        with self._mutex:
            return self._machine.clone() if self._machine is not None else None

    def _is_machine_provider(self) -> bool:
        return self._provider.is_machine_provider()

    def _agent_config(self) -> AgentConfig:
        return resolve_agent_config(self._config, self._provider, self._workspace, self._machine)

    @property
    def agent_path(self) -> str:
        with self._mutex:
            return self._agent_config().path

    @property
    def agent_local(self) -> bool:
        with self._mutex:
            return self._agent_config().local == "true"

    @property
    def agent_url(self) -> str:
        with self._mutex:
            return self._agent_config().download_url

    def agent_inject_git_credentials(self, cli_options: CLIOptions) -> bool:
        with self._mutex:
            return self._agent_info(cli_options).agent.inject_git_credentials == "true"

    def agent_inject_docker_credentials(self, cli_options: CLIOptions) -> bool:
        with self._mutex:
            return self._agent_info(cli_options).agent.inject_docker_credentials == "true"

    def agent_info(self, cli_options: CLIOptions) -> tuple[str, AgentWorkspaceInfo]:
        """Return the compressed agent payload together with the info it encodes."""
        with self._mutex:
            return self._compressed_agent_info(cli_options)

    def _compressed_agent_info(self, cli_options: CLIOptions) -> tuple[str, AgentWorkspaceInfo]:
        info = self._agent_info(cli_options)
        return compress(json.dumps(info.to_dict(), separators=(",", ":"))), info

    def _agent_info(self, cli_options: CLIOptions) -> AgentWorkspaceInfo:
        try:
            result = load_workspace_result(self._workspace.context, self._workspace.id)
        except (OSError, ValueError) as exc:
            self._log.debug("error loading workspace result: %s", exc)
            result = None
        last_config = None
        if result is not None:
            last_config = result.get("DevContainerConfigWithPath")

        info = AgentWorkspaceInfo(
            workspace=self._workspace,
            machine=self._machine,
            agent=self._agent_config(),
            cli_options=cli_options,
            workspace_origin=self._workspace.origin,
            last_dev_container_config=last_config,
            options=self._config.provider_options(self._provider.name),
        )
        if cli_options.platform.enabled:
            info.agent.inject_git_credentials = "true"
            info.agent.inject_docker_credentials = "true"

        # provider options may hold secrets that must not reach the container
        if info.agent.driver != CUSTOM_DRIVER and (
            cli_options.platform.enabled or cli_options.disable_daemon
        ):
            info.options = {}
            info.workspace = self._workspace.clone()
            info.workspace.provider.options = {}
            if self._machine is not None:
                info.machine = self._machine.clone()
                info.machine.provider.options = {}

        info.inject_timeout = self._config.context_duration(CONTEXT_OPTION_AGENT_INJECT_TIMEOUT)
        info.registry_cache = self._config.context_option(CONTEXT_OPTION_REGISTRY_CACHE)
        return info

    def refresh_options(self, raw_options: list[str], reconfigure: bool = False) -> None:
        with self._mutex:
            try:
                user_options = parse_options(raw_options)
            except OptionsError as exc:
                raise OptionsError(f"parse options: {exc}") from exc

            if self._is_machine_provider():
                if self._machine is None:
                    return
                self._machine = resolve_and_save_options_machine(
                    self._config, self._provider, self._machine, user_options, self._log
                )
                return

            try:
                self._workspace = resolve_and_save_options_workspace(
                    self._config, self._provider, self._workspace, user_options, self._log
                )
            except DevpodError as exc:
                self._log.error("failed to resolve and save options workspace: %s", exc)
                raise
            self._log.debug("refreshed workspace options for %s", self._workspace.id)

    def _machine_client(self):
        return new_machine_client(self._config, self._provider, self._machine, self._log)

    def create(
        self, options: CreateOptions | None = None, cancel: CancelToken | None = None
    ) -> None:
        with self._mutex:
            if not self._is_machine_provider():
                return
            if self._machine is None:
                raise ConfigurationError("machine is not defined")
            machine_client = self._machine_client()
            if machine_client.status(StatusOptions(), cancel=cancel) is not Status.NOT_FOUND:
                return
            machine_client.create(CreateOptions(), cancel=cancel)

    def start(
        self, options: StartOptions | None = None, cancel: CancelToken | None = None
    ) -> None:
        with self._mutex:
            if not self._is_machine_provider() or self._machine is None:
                return
            self._machine_client().start(options, cancel=cancel)

    def _run_agent_verb(self, verb: str, *, stdout, stderr, cancel: CancelToken | None) -> None:
        compressed, info = self._compressed_agent_info(CLIOptions())
        command = build_agent_command(info.agent.path, verb, compressed)
        self._run(
            self._provider.exec.command,
            workspace=self._workspace,
            machine=self._machine,
            extra_env={COMMAND_ENV: command},
            stdout=stdout,
            stderr=stderr,
            cancel=cancel,
        )

    def stop(
        self, options: StopOptions | None = None, cancel: CancelToken | None = None
    ) -> None:
        with self._mutex:
            if self._is_machine_provider() and self._workspace.machine.auto_delete:
                self._machine_client().stop(options, cancel=cancel)
                return

            writer = LogWriter(self._log)
            try:
                self._log.info("stopping container")
                self._run_agent_verb("stop", stdout=writer, stderr=writer, cancel=cancel)
            finally:
                writer.close()
            self._log.info("stopped container")

    def _is_machine_running(self, cancel: CancelToken | None) -> bool:
        if not self._is_machine_provider():
            return True
        try:
            status = self._machine_client().status(StatusOptions(), cancel=cancel)
        except CancelledError:
            raise
        except DevpodError as exc:
            raise DevpodError(f"retrieve machine status: {exc}") from exc
        return status is Status.RUNNING

    def delete(
        self, options: DeleteOptions | None = None, cancel: CancelToken | None = None
    ) -> None:
        options = options or DeleteOptions()
        with self._mutex:
            cancel = grace_period_token(cancel, options.grace_period)
            try:
                if not self._is_machine_provider() or not self._workspace.machine.auto_delete:
                    self._delete_container(options, cancel)
                elif self._machine is not None and self._provider.exec.delete:
                    self._machine_client().delete(options, cancel=cancel)
            finally:
                delete_workspace_folder(
                    self._workspace.context,
                    self._workspace.id,
                    self._workspace.ssh_config_path,
                    self._workspace.ssh_config_include_path,
                    self._log,
                )

    def _delete_container(self, options: DeleteOptions, cancel: CancelToken | None) -> None:
        try:
            running = self._is_machine_running(cancel)
        except DevpodError:
            if not options.force:
                raise
            return
        if not running:
            return

        writer = LogWriter(self._log)
        try:
            self._log.info("deleting workspace container")
            self._run_agent_verb("delete", stdout=writer, stderr=writer, cancel=cancel)
        except DevpodError as exc:
            if not options.force:
                raise
            if not isinstance(exc, DeadlineExceeded):
                self._log.error("error deleting container: %s", exc)
        finally:
            writer.close()

    def command(self, options: CommandOptions, cancel: CancelToken | None = None) -> None:
        with self._mutex:
            workspace = self._workspace
            machine = self._machine
        self._run(
            self._provider.exec.command,
            workspace=workspace,
            machine=machine,
            extra_env={COMMAND_ENV: options.command},
            stdin=options.stdin,
            stdout=options.stdout,
            stderr=options.stderr,
            cancel=cancel,
        )

    def status(
        self, options: StatusOptions | None = None, cancel: CancelToken | None = None
    ) -> Status:
        options = options or StatusOptions()
        with self._mutex:
            if self._is_machine_provider() and self._provider.exec.status:
                if self._machine is None:
                    return Status.NOT_FOUND
                status = self._machine_client().status(options, cancel=cancel)
                if status is Status.RUNNING and options.container_status:
                    return self._container_status(cancel)
                return status

            if options.container_status:
                return self._container_status(cancel)

            workspace_dir = paths.workspace_dir(self._workspace.context, self._workspace.id)
            return Status.RUNNING if workspace_dir.exists() else Status.NOT_FOUND

    def _container_status(self, cancel: CancelToken | None) -> Status:
        stdout = io.BytesIO()
        combined = io.BytesIO()
        try:
            self._run_agent_verb(
                "status", stdout=MultiWriter(stdout, combined), stderr=combined, cancel=cancel
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

        try:
            parsed = parse_status(stdout.getvalue().decode("utf-8", errors="replace"))
        except StatusError as exc:
            output = combined.getvalue().decode("utf-8", errors="replace")
            raise StatusError(f"error parsing container status: {output}{exc}") from exc
        self._log.debug("container status command output: %s", combined.getvalue())
        return parsed
