from __future__ import annotations

import base64
import gzip
import logging
import os
import threading
from dataclasses import dataclass
from typing import IO, Any, Callable

from devpod_core.cancel import CancelToken, background, with_timeout
from devpod_core.client import CommandOptions
from devpod_core.errors import (
    CancelledError,
    DeadlineExceeded,
    DevpodError,
    InjectTimeoutError,
    TunnelError,
)
from devpod_core.log import LogWriter, is_debug
from devpod_core.runner import run_emulated_shell
from devpod_core.tunnel import Handler, TunnelServer
from devpod_core.workspace import CLIOptions

logger = logging.getLogger(__name__)

REMOTE_AGENT_PATH = "/tmp/devpod/agent"
DEFAULT_DOWNLOAD_URL = "https://github.com/loft-sh/devpod/releases/latest/download"
INJECT_TIMEOUT_SECONDS = 300.0
JOIN_GRACE_SECONDS = 5.0

ExecFunc = Callable[[str, Any, Any, Any, CancelToken], None]


def compress(text: str) -> str:
    return base64.b64encode(gzip.compress(text.encode("utf-8"))).decode("ascii")


def decompress(text: str) -> str:
    return gzip.decompress(base64.b64decode(text)).decode("utf-8")


def build_agent_command(
    agent_path: str, verb: str, workspace_info: str, debug: bool = False
) -> str:
    command = f"'{agent_path}' agent workspace {verb} --workspace-info '{workspace_info}'"
    if debug:
        command += " --debug"
    return command


def inject_script(agent_path: str, download_url: str, command: str) -> str:
    """Shell script that installs the agent at ``agent_path`` if needed and runs ``command``."""
    url = download_url.rstrip("/")
    return "\n".join(
        [
            "set -e",
            f"AGENT='{agent_path}'",
            'if [ ! -x "$AGENT" ]; then',
            '  case "$(uname -m)" in',
            "    x86_64|amd64) ARCH=amd64 ;;",
            "    aarch64|arm64) ARCH=arm64 ;;",
            '    *) echo "unsupported architecture $(uname -m)" >&2; exit 1 ;;',
            "  esac",
            f"  URL='{url}/devpod-linux-'\"$ARCH\"",
            '  mkdir -p "$(dirname "$AGENT")"',
            "  if command -v curl >/dev/null 2>&1; then",
            '    curl -fsSL "$URL" -o "$AGENT.tmp"',
            "  elif command -v wget >/dev/null 2>&1; then",
            '    wget -q "$URL" -O "$AGENT.tmp"',
            "  else",
            '    echo "neither curl nor wget is available" >&2; exit 1',
            "  fi",
            '  chmod +x "$AGENT.tmp"',
            '  mv "$AGENT.tmp" "$AGENT"',
            "fi",
            command,
        ]
    )


@dataclass
class InjectOptions:
    exec: ExecFunc
    command: str
    is_local: bool = False
    remote_agent_path: str = REMOTE_AGENT_PATH
    download_url: str = DEFAULT_DOWNLOAD_URL
    timeout: float = 0.0
    stdin: Any = None
    stdout: Any = None
    stderr: Any = None
    cancel: CancelToken | None = None
    log: logging.Logger | None = None


def inject_agent(opts: InjectOptions) -> None:
    """Run ``opts.command`` next to the agent, installing it on the remote first.

    Remote injection is bounded by ``opts.timeout`` (five minutes when unset);
    hitting that bound raises ``InjectTimeoutError``.
    """
    log = opts.log or logger
    if opts.is_local:
        if not opts.command:
            return
        log.debug("execute command locally")
        run_emulated_shell(
            opts.command,
            stdin=opts.stdin,
            stdout=opts.stdout,
            stderr=opts.stderr,
            cancel=opts.cancel,
        )
        return

    timeout = opts.timeout or INJECT_TIMEOUT_SECONDS
    token = with_timeout(opts.cancel, timeout)
    script = inject_script(
        opts.remote_agent_path or REMOTE_AGENT_PATH,
        opts.download_url or DEFAULT_DOWNLOAD_URL,
        opts.command,
    )
    log.debug("inject agent to %s", opts.remote_agent_path)
    try:
        opts.exec(script, opts.stdin, opts.stdout, opts.stderr, token)
    except DeadlineExceeded as exc:
        if opts.cancel is not None and opts.cancel.expired:
            raise
        raise InjectTimeoutError(
            f"injection timeout: agent did not finish within {timeout:g}s"
        ) from exc


def _close_all(handles: list[IO[bytes]]) -> None:
    for handle in handles:
        try:
            handle.close()
        except OSError:
            pass


def build_agent_client(
    cancel: CancelToken | None,
    client: Any,
    cli_options: CLIOptions,
    agent_command: str,
    log: logging.Logger | None = None,
    tunnel_handlers: dict[str, Handler] | None = None,
) -> dict[str, Any]:
    """Start the agent through ``client.command`` and serve its tunnel until it reports.

    The agent's stdout and stdin are wired to two in-process pipes. Injection
    runs on a worker thread under a child of ``cancel`` and the tunnel server
    runs on the calling thread; when either side ends the other is torn down.
    """
    log = log or logger
    compressed, info = client.agent_info(cli_options)
    command = build_agent_command(client.agent_path, agent_command, compressed, is_debug(log))

    stdout_read_fd, stdout_write_fd = os.pipe()
    stdin_read_fd, stdin_write_fd = os.pipe()
    stdout_reader = os.fdopen(stdout_read_fd, "rb")
    stdout_writer = os.fdopen(stdout_write_fd, "wb", buffering=0)
    stdin_reader = os.fdopen(stdin_read_fd, "rb", buffering=0)
    stdin_writer = os.fdopen(stdin_write_fd, "wb", buffering=0)

    token = (cancel or background()).child()
    command_errors: list[BaseException] = []

    def run_command(script: str, stdin: Any, stdout: Any, stderr: Any, exec_cancel: CancelToken):
        client.command(
            CommandOptions(command=script, stdin=stdin, stdout=stdout, stderr=stderr),
            cancel=exec_cancel,
        )

    def inject() -> None:
        writer = LogWriter(log)
        try:
            inject_agent(
                InjectOptions(
                    exec=run_command,
                    command=command,
                    is_local=client.agent_local,
                    remote_agent_path=client.agent_path,
                    download_url=client.agent_url,
                    timeout=info.inject_timeout,
                    stdin=stdin_reader,
                    stdout=stdout_writer,
                    stderr=writer,
                    cancel=token,
                    log=log,
                )
            )
        except Exception as exc:
            command_errors.append(exc)
        finally:
            writer.close()
            log.debug("up command completed")
            token.cancel()
            _close_all([stdout_writer])

    worker = threading.Thread(target=inject, name="agent-inject", daemon=True)
    worker.start()
    try:
        server = TunnelServer(
            stdout_reader,
            stdin_writer,
            workspace=client.workspace_config(),
            git_credentials=client.agent_inject_git_credentials(cli_options),
            docker_credentials=client.agent_inject_docker_credentials(cli_options),
            log=log,
            handlers=tunnel_handlers,
        )
        try:
            result = server.run(cancel)
        except TunnelError as exc:
            token.cancel()
            worker.join(JOIN_GRACE_SECONDS)
            if not command_errors:
                raise DevpodError(f"run tunnel server: {exc}") from exc
            cause = command_errors[0]
            if isinstance(cause, CancelledError):
                raise cause from exc
            raise DevpodError(f"run tunnel server: {exc}: {cause}") from cause
        except BaseException:
            token.cancel()
            raise
        # the agent exits once its stdin closes
        _close_all([stdin_writer])
        worker.join()
    finally:
        token.cancel()
        _close_all([stdin_writer, stdout_reader])
        worker.join(JOIN_GRACE_SECONDS)
        _close_all([stdin_reader, stdout_writer])

    if command_errors:
        raise command_errors[0]
    return result
