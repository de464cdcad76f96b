from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from typing import IO, Any, Mapping, Sequence

from devpod_core.cancel import CancelToken
from devpod_core.errors import CommandError
from devpod_core.log import is_debug

DEBUG_ENV = "DEVPOD_DEBUG"
SHELL = "/bin/sh"
_TAIL_BYTES = 64 * 1024
_CHUNK = 32 * 1024
_POLL_SECONDS = 0.1
_TERMINATE_GRACE_SECONDS = 2.0


def _fileno(stream: Any) -> int | None:
    if stream is None:
        return None
    try:
        return stream.fileno()
    except (AttributeError, OSError, ValueError):
        return None


def _write(sink: Any, data: bytes) -> None:
    try:
        sink.write(data)
    except TypeError:
        sink.write(data.decode("utf-8", errors="replace"))
    flush = getattr(sink, "flush", None)
    if flush is not None:
        flush()


class _OutputPump(threading.Thread):
    """Copies a child pipe into a caller sink while keeping a tail for error messages."""

    def __init__(self, source: IO[bytes], sink: Any):
        super().__init__(daemon=True)
        self._source = source
        self._sink = sink
        self._tail = bytearray()
        self.error: BaseException | None = None

    def run(self) -> None:
        read = getattr(self._source, "read1", self._source.read)
        try:
            while True:
                chunk = read(_CHUNK)
                if not chunk:
                    break
                self._tail.extend(chunk)
                del self._tail[:-_TAIL_BYTES]
                if self._sink is not None:
                    try:
                        _write(self._sink, chunk)
                    except (OSError, ValueError) as exc:
                        # sink went away (e.g. the reader closed its pipe); keep draining
                        self.error = exc
                        self._sink = None
        finally:
            self._source.close()

    @property
    def text(self) -> str:
        return bytes(self._tail).decode("utf-8", errors="replace")


def _pump_stdin(source: Any, sink: IO[bytes]) -> None:
    try:
        while True:
            chunk = source.read(_CHUNK)
            if not chunk:
                break
            if isinstance(chunk, str):
                chunk = chunk.encode("utf-8")
            sink.write(chunk)
            sink.flush()
    except (OSError, ValueError):
        pass
    finally:
        try:
            sink.close()
        except OSError:
            pass


def _kill(proc: subprocess.Popen[bytes]) -> None:
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        return
    try:
        proc.wait(timeout=_TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
        proc.wait()


def _execute(
    argv: Sequence[str],
    display: str,
    *,
    env: Mapping[str, str] | None,
    stdin: Any,
    stdout: Any,
    stderr: Any,
    cancel: CancelToken | None,
) -> None:
    stdin_fd = _fileno(stdin)
    if stdin is None:
        stdin_arg: Any = subprocess.DEVNULL
    elif stdin_fd is not None:
        stdin_arg = stdin_fd
    else:
        stdin_arg = subprocess.PIPE

    if cancel is not None:
        cancel.check()
    try:
        proc = subprocess.Popen(
            list(argv),
            stdin=stdin_arg,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=dict(env) if env is not None else None,
            start_new_session=True,
        )
    except FileNotFoundError as exc:
        raise CommandError(f"Error: Command not found: {argv[0]}", command=display) from exc
    except OSError as exc:
        raise CommandError(
            f"Error: Could not run command '{display}': {exc}", command=display
        ) from exc

    if stdin_arg is subprocess.PIPE and proc.stdin is not None:
        threading.Thread(target=_pump_stdin, args=(stdin, proc.stdin), daemon=True).start()
    out_pump = _OutputPump(proc.stdout, stdout)
    err_pump = _OutputPump(proc.stderr, stderr)
    out_pump.start()
    err_pump.start()

    cancelled = False
    while True:
        try:
            proc.wait(timeout=_POLL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.cancelled:
                cancelled = True
                _kill(proc)
                break

    out_pump.join(_TERMINATE_GRACE_SECONDS if cancelled else None)
    err_pump.join(_TERMINATE_GRACE_SECONDS if cancelled else None)
    if cancelled and cancel is not None:
        cancel.check()
    if proc.returncode != 0:
        raise CommandError.from_exit(
            display, proc.returncode, stdout=out_pump.text, stderr=err_pump.text
        )


def run_emulated_shell(
    command: str,
    *,
    env: Mapping[str, str] | None = None,
    stdin: Any = None,
    stdout: Any = None,
    stderr: Any = None,
    cancel: CancelToken | None = None,
) -> None:
    script = command.replace("\r", "")
    _execute(
        [SHELL, "-c", script],
        script,
        env=env if env is not None else dict(os.environ),
        stdin=stdin,
        stdout=stdout,
        stderr=stderr,
        cancel=cancel,
    )


def run_command(
    command: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    stdin: Any = None,
    stdout: Any = None,
    stderr: Any = None,
    cancel: CancelToken | None = None,
    log: logging.Logger | None = None,
) -> None:
    """Run a provider command.

    A single-element command is a shell script, anything longer is an argument
    vector. Raises ``CommandError`` with the captured output on failure and
    ``CancelledError`` when ``cancel`` fires while the command runs.
    """
    if not command:
        return
    environ = dict(env) if env is not None else dict(os.environ)
    if is_debug(log):
        environ[DEBUG_ENV] = "true"
    if len(command) == 1:
        run_emulated_shell(
            command[0], env=environ, stdin=stdin, stdout=stdout, stderr=stderr, cancel=cancel
        )
        return
    _execute(
        command,
        " ".join(command),
        env=environ,
        stdin=stdin,
        stdout=stdout,
        stderr=stderr,
        cancel=cancel,
    )
