from __future__ import annotations

import fcntl
import logging
import os
import threading
import time
from pathlib import Path
from typing import IO

from devpod_core import paths
from devpod_core.cancel import CancelToken
from devpod_core.errors import DevpodError
from devpod_core.progress import HEARTBEAT_SECONDS

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


LOCK_TIMEOUT_SECONDS = _env_int("DEVPOD_LOCK_TIMEOUT_SECONDS", 300)
LOCK_RETRY_SECONDS = _env_int("DEVPOD_LOCK_RETRY_SECONDS", 1)


class LockError(DevpodError):
    """Raised when a workspace or machine lock cannot be acquired."""


class FileLock:
    """Advisory, process-crossing lock backed by ``flock`` on ``path``."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._handle: IO[str] | None = None
        self._mutex = threading.Lock()

    @property
    def locked(self) -> bool:
        return self._handle is not None

    def try_lock(self) -> bool:
        with self._mutex:
            if self._handle is not None:
                return True
            self.path.parent.mkdir(parents=True, exist_ok=True)
            handle = self.path.open("a")
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                handle.close()
                return False
            except OSError:
                handle.close()
                raise
            self._handle = handle
            return True

    def unlock(self) -> None:
        with self._mutex:
            handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()


def try_lock(
    cancel: CancelToken | None,
    lock: FileLock,
    name: str,
    log: logging.Logger | None = None,
    *,
    timeout: float | None = None,
    retry: float | None = None,
) -> None:
    """Poll ``lock`` until it is held, the timeout passes or ``cancel`` fires."""
    log = log or logger
    timeout = LOCK_TIMEOUT_SECONDS if timeout is None else timeout
    retry = LOCK_RETRY_SECONDS if retry is None else retry
    started = time.monotonic()
    next_notice = started + HEARTBEAT_SECONDS
    while True:
        if cancel is not None:
            cancel.check()
        try:
            if lock.try_lock():
                return
        except OSError as exc:
            raise LockError(f"lock {name}: {exc}") from exc

        now = time.monotonic()
        if now - started >= timeout:
            raise LockError(
                f"timed out waiting to lock {name}, seems like there is another process "
                "running on this machine that blocks it"
            )
        if now >= next_notice:
            log.info(
                "Trying to lock %s, seems like another process is running that blocks this %s",
                name,
                name,
            )
            next_notice = now + HEARTBEAT_SECONDS
        if cancel is not None:
            if cancel.wait(retry):
                cancel.check()
        else:
            time.sleep(retry)


class ClientLocks:
    """Workspace and machine locks owned by one lifecycle client.

    Lock files are created once on first use. ``lock`` takes the workspace lock
    before the machine lock; ``unlock`` releases both and never raises.
    """

    def __init__(
        self,
        context: str,
        workspace_id: str = "",
        machine_id: str = "",
        log: logging.Logger | None = None,
        *,
        timeout: float | None = None,
        retry: float | None = None,
    ):
        self._context = context
        self._workspace_id = workspace_id
        self._machine_id = machine_id
        self._log = log or logger
        self._timeout = timeout
        self._retry = retry
        self._init_mutex = threading.Lock()
        self._initialized = False
        self._workspace_lock: FileLock | None = None
        self._machine_lock: FileLock | None = None

    def _init_locks(self) -> None:
        with self._init_mutex:
            if self._initialized:
                return
            root = paths.locks_dir(self._context)
            if self._workspace_id:
                self._workspace_lock = FileLock(root / f"{self._workspace_id}.workspace.lock")
            if self._machine_id:
                self._machine_lock = FileLock(root / f"{self._machine_id}.machine.lock")
            self._initialized = True

    def lock(self, cancel: CancelToken | None = None) -> None:
        self._init_locks()
        if self._workspace_lock is not None:
            try:
                try_lock(
                    cancel,
                    self._workspace_lock,
                    "workspace",
                    self._log,
                    timeout=self._timeout,
                    retry=self._retry,
                )
            except LockError as exc:
                raise LockError(f"error locking workspace: {exc}") from exc
        if self._machine_lock is not None:
            try:
                try_lock(
                    cancel,
                    self._machine_lock,
                    "machine",
                    self._log,
                    timeout=self._timeout,
                    retry=self._retry,
                )
            except LockError as exc:
                self.unlock()
                raise LockError(f"error locking machine: {exc}") from exc
            except BaseException:
                self.unlock()
                raise

    def unlock(self) -> str | None:
        self._init_locks()
        warning = None
        for kind, lock in (("workspace", self._workspace_lock), ("machine", self._machine_lock)):
            if lock is None:
                continue
            try:
                lock.unlock()
            except OSError as exc:
                warning = f"error unlocking {kind}: {exc}"
                self._log.warning(warning)
        return warning
