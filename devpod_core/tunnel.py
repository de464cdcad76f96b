from __future__ import annotations

import json
import logging
import threading
from typing import IO, Any, Callable

from devpod_core.cancel import CancelToken
from devpod_core.errors import TunnelError
from devpod_core.log import parse_level
from devpod_core.workspace import Workspace

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Any]

METHOD_PING = "ping"
METHOD_LOG = "log"
METHOD_WORKSPACE = "workspace"
METHOD_GIT_CREDENTIALS = "git_credentials_enabled"
METHOD_DOCKER_CREDENTIALS = "docker_credentials_enabled"
METHOD_SEND_RESULT = "send_result"


def _encode(frame: dict[str, Any]) -> bytes:
    return json.dumps(frame, separators=(",", ":")).encode("utf-8") + b"\n"


def _decode(line: bytes) -> dict[str, Any]:
    try:
        frame = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise TunnelError(f"malformed tunnel frame: {exc}") from exc
    if not isinstance(frame, dict):
        raise TunnelError("malformed tunnel frame: expected an object")
    return frame


class TunnelServer:
    """Answers agent requests on a newline-delimited JSON byte stream.

    The exchange ends when the agent calls ``send_result``; its params are the
    result handed back to the caller.
    """

    def __init__(
        self,
        reader: IO[bytes],
        writer: IO[bytes],
        *,
        workspace: Workspace | None = None,
        git_credentials: bool = False,
        docker_credentials: bool = False,
        log: logging.Logger | None = None,
        handlers: dict[str, Handler] | None = None,
    ):
        self._reader = reader
        self._writer = writer
        self._log = log or logger
        self._handlers: dict[str, Handler] = {
            METHOD_PING: lambda params: "pong",
            METHOD_LOG: self._handle_log,
            METHOD_WORKSPACE: lambda params: workspace.to_dict() if workspace else None,
            METHOD_GIT_CREDENTIALS: lambda params: git_credentials,
            METHOD_DOCKER_CREDENTIALS: lambda params: docker_credentials,
        }
        self._handlers.update(handlers or {})

    def _handle_log(self, params: dict[str, Any]) -> None:
        level = parse_level(str(params.get("level", "info")))
        self._log.log(level, "%s", str(params.get("message", "")).rstrip("\n"))

    def _reply(self, frame: dict[str, Any]) -> None:
        try:
            self._writer.write(_encode(frame))
            self._writer.flush()
        except (OSError, ValueError) as exc:
            raise TunnelError(f"write tunnel response: {exc}") from exc

    def run(self, cancel: CancelToken | None = None) -> dict[str, Any]:
        while True:
            try:
                line = self._reader.readline()
            except (OSError, ValueError) as exc:
                if cancel is not None:
                    cancel.check()
                raise TunnelError(f"read tunnel request: {exc}") from exc
            if not line:
                if cancel is not None:
                    cancel.check()
                raise TunnelError("tunnel closed before the agent sent a result")
            if not line.strip():
                continue

            frame = _decode(line)
            request_id = frame.get("id")
            method = str(frame.get("method", ""))
            params = frame.get("params") or {}
            if method == METHOD_SEND_RESULT:
                self._reply({"id": request_id, "result": True})
                return params if isinstance(params, dict) else {"result": params}

            handler = self._handlers.get(method)
            if handler is None:
                self._reply({"id": request_id, "error": f"unknown method '{method}'"})
                continue
            try:
                result = handler(params)
            except Exception as exc:
                self._log.debug("tunnel handler %s failed: %s", method, exc)
                self._reply({"id": request_id, "error": str(exc)})
                continue
            self._reply({"id": request_id, "result": result})


class TunnelClient:
    """Agent side of the tunnel: sends requests and waits for the matching response."""

    def __init__(self, reader: IO[bytes], writer: IO[bytes]):
        self._reader = reader
        self._writer = writer
        self._next_id = 0
        self._mutex = threading.Lock()

    def call(self, method: str, params: dict[str, Any] | None = None) -> Any:
        with self._mutex:
            self._next_id += 1
            request_id = self._next_id
            try:
                self._writer.write(
                    _encode({"id": request_id, "method": method, "params": params or {}})
                )
                self._writer.flush()
                line = self._reader.readline()
            except (OSError, ValueError) as exc:
                raise TunnelError(f"tunnel call {method}: {exc}") from exc
        if not line:
            raise TunnelError(f"tunnel closed while waiting for {method}")
        frame = _decode(line)
        if frame.get("id") != request_id:
            raise TunnelError(f"unexpected response id {frame.get('id')} for {method}")
        if "error" in frame:
            raise TunnelError(str(frame["error"]))
        return frame.get("result")

    def ping(self) -> str:
        return self.call(METHOD_PING)

    def log(self, level: str, message: str) -> None:
        self.call(METHOD_LOG, {"level": level, "message": message})

    def workspace(self) -> Workspace | None:
        data = self.call(METHOD_WORKSPACE)
        return Workspace.from_dict(data) if data else None

    def git_credentials_enabled(self) -> bool:
        return bool(self.call(METHOD_GIT_CREDENTIALS))

    def docker_credentials_enabled(self) -> bool:
        return bool(self.call(METHOD_DOCKER_CREDENTIALS))

    def send_result(self, result: dict[str, Any]) -> None:
        self.call(METHOD_SEND_RESULT, result)
