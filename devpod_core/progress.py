from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

HEARTBEAT_SECONDS = 5.0


def schedule_log_message(
    message: str, logger: logging.Logger, interval: float = HEARTBEAT_SECONDS
) -> threading.Event:
    """Log ``message`` every ``interval`` seconds until the returned event is set."""
    done = threading.Event()

    def _run() -> None:
        while not done.wait(interval):
            logger.info(message)

    threading.Thread(target=_run, name="heartbeat", daemon=True).start()
    return done


@contextmanager
def heartbeat(
    message: str, logger: logging.Logger, interval: float = HEARTBEAT_SECONDS
) -> Iterator[None]:
    done = schedule_log_message(message, logger, interval)
    try:
        yield
    finally:
        done.set()
