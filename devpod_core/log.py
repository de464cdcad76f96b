from __future__ import annotations

import json
import logging
import sys
import threading

ROOT_LOGGER_NAME = "devpod_core"
_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "done": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}


def parse_level(name: str) -> int:
    return _LEVELS.get(name.lower(), logging.INFO)


def setup_logging(level: int | str = logging.INFO) -> logging.Logger:
    if isinstance(level, str):
        level = parse_level(level)
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(message)s", "%H:%M:%S"))
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False
    return root


def is_debug(logger: logging.Logger | None) -> bool:
    return logger is not None and logger.isEnabledFor(logging.DEBUG)


class LogWriter:
    """File-like sink that emits one log record per written line."""

    def __init__(self, logger: logging.Logger, level: int = logging.INFO):
        self._logger = logger
        self._level = level
        self._buffer = ""
        self._lock = threading.Lock()
        self.closed = False

    def _emit(self, line: str) -> None:
        line = line.rstrip("\r")
        if line:
            self._logger.log(self._level, "%s", line)

    def write(self, data: bytes | str) -> int:
        text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
        with self._lock:
            self._buffer += text
            *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self._emit(line)
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        with self._lock:
            rest, self._buffer = self._buffer, ""
            self.closed = True
        self._emit(rest)


def _emit_json_line(line: str, logger: logging.Logger) -> None:
    line = line.strip()
    if not line:
        return
    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        record = None
    if not isinstance(record, dict):
        logger.info("%s", line)
        return
    if "message" not in record:
        logger.debug("%s", line)
        return
    level = parse_level(str(record.get("level", "info")))
    logger.log(level, "%s", str(record["message"]).rstrip("\n"))


def read_json_stream(data: bytes | str, logger: logging.Logger) -> None:
    """Re-emit a line oriented JSON log stream (as written by provider helpers)."""
    text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
    for line in text.splitlines():
        _emit_json_line(line, logger)


class JsonStreamWriter(LogWriter):
    def __init__(self, logger: logging.Logger):
        super().__init__(logger)

    def _emit(self, line: str) -> None:
        _emit_json_line(line, self._logger)
