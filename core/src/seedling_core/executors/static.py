from __future__ import annotations

import logging
import threading

from seedling_core.catalog import ServiceDefinition
from seedling_core.executors.base import InstallAttempt

logger = logging.getLogger(__name__)


class StaticExecutor:
    """Executor for development without a cluster.

    Every start succeeds at once and the live URL is derived from the
    service's endpoint template and allocated port.
    """

    name = "static"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._status: dict[str, str] = {}
        self._current: dict[str, int] = {}

    def start(self, definition: ServiceDefinition, attempt: InstallAttempt) -> str:
        live_url = definition.live_url(attempt.port)
        with self._lock:
            previous = self._current.get(attempt.key)
            if previous is not None and previous != attempt.attempt_id:
                self._status.pop(InstallAttempt(attempt.key, previous).handle, None)
            self._current[attempt.key] = attempt.attempt_id
            self._status[attempt.handle] = "running"
        logger.info("Static start of %s -> %s", attempt.handle, live_url)
        return live_url

    def stop(self, definition: ServiceDefinition, attempt: InstallAttempt) -> None:
        with self._lock:
            self._status[attempt.handle] = "stopped"

    def uninstall(self, definition: ServiceDefinition, attempt: InstallAttempt) -> None:
        with self._lock:
            self._status.pop(attempt.handle, None)
            self._current.pop(attempt.key, None)

    def cancel(self, attempt: InstallAttempt) -> bool:
        return False

    def status(self, attempt: InstallAttempt) -> str | None:
        with self._lock:
            return self._status.get(attempt.handle)
