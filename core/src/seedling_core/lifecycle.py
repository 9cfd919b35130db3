from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from seedling_core.catalog import ServiceCatalog, ServiceDefinition
from seedling_core.db.events import append_service_event
from seedling_core.db.installations import (
    INSTALLABLE_FROM,
    InstallationRow,
    InstallState,
    fail_interrupted_installs,
    get_installation,
    transition,
)
from seedling_core.errors import ConflictError, InstallTimeoutError, SeedlingError
from seedling_core.executors.base import ExternalExecutor, InstallAttempt
from seedling_core.ports import PortAllocator

logger = logging.getLogger(__name__)


def _error_payload(exc: BaseException) -> dict[str, Any]:
    code = exc.code if isinstance(exc, SeedlingError) else "execution_error"
    return {"code": code, "message": str(exc) or exc.__class__.__name__}


class LifecycleManager:
    """Drives install/stop/uninstall for catalog services.

    The guarded transition into `installing` is the per-key mutual exclusion
    point. The executor call then runs on a daemon thread while a timer
    enforces the install ceiling; whichever finishes second loses the attempt
    fence and is discarded.
    """

    def __init__(
        self,
        *,
        db_path: Path,
        catalog: ServiceCatalog,
        executor: ExternalExecutor,
        port_allocator: PortAllocator,
        install_timeout_s: float = 300.0,
    ) -> None:
        self.db_path = db_path
        self.catalog = catalog
        self.executor = executor
        self.port_allocator = port_allocator
        self.install_timeout_s = install_timeout_s
        self._lock = threading.Lock()
        self._timers: dict[str, threading.Timer] = {}
        self._workers: dict[str, threading.Thread] = {}

    def _event(
        self,
        key: str,
        message: str,
        *,
        level: str = "info",
        attempt_id: int | None = None,
        data: Any | None = None,
    ) -> None:
        append_service_event(
            self.db_path, key=key, level=level, message=message, attempt_id=attempt_id, data=data
        )

    def get(self, key: str) -> InstallationRow:
        self.catalog.get(key)
        return get_installation(self.db_path, key=key)

    def install(self, key: str, *, user_id: int | None = None) -> InstallationRow:
        """Accept an install for `key` and return the `installing` row at once."""

        definition = self.catalog.get(key)
        port = self.port_allocator.allocate(key, preferred=definition.default_port)

        row = transition(
            self.db_path,
            key=key,
            expected=INSTALLABLE_FROM,
            new_state=InstallState.INSTALLING,
            fields={"port": port, "installed_by": user_id},
        )
        attempt = InstallAttempt(key=key, attempt_id=row.attempt_id, port=port)
        logger.info("Install of %s accepted (attempt %d, port %d)", key, attempt.attempt_id, port)
        self._event(
            key,
            "Install started",
            attempt_id=attempt.attempt_id,
            data={"port": port, "user_id": user_id, "executor": self.executor.name},
        )

        timer = threading.Timer(self.install_timeout_s, self._on_timeout, args=(attempt,))
        timer.daemon = True
        worker = threading.Thread(
            target=self._run_install,
            args=(definition, attempt),
            name=f"seedling-install-{attempt.handle}",
            daemon=True,
        )
        with self._lock:
            self._timers[attempt.handle] = timer
            self._workers[attempt.handle] = worker
        timer.start()
        worker.start()
        return row

    def _run_install(self, definition: ServiceDefinition, attempt: InstallAttempt) -> None:
        try:
            try:
                live_url = self.executor.start(definition, attempt)
            except Exception as e:
                logger.warning("Install of %s failed: %s", attempt.handle, e)
                self._settle(
                    attempt,
                    InstallState.FAILED,
                    fields={"last_error": _error_payload(e)},
                    message="Install failed",
                    level="error",
                )
                return

            self._settle(
                attempt,
                InstallState.RUNNING,
                fields={"live_url": live_url},
                message="Install completed",
            )
        finally:
            with self._lock:
                self._workers.pop(attempt.handle, None)

    def _settle(
        self,
        attempt: InstallAttempt,
        new_state: InstallState,
        *,
        fields: dict[str, Any],
        message: str,
        level: str = "info",
    ) -> bool:
        self._cancel_timer(attempt)
        try:
            transition(
                self.db_path,
                key=attempt.key,
                expected=InstallState.INSTALLING,
                new_state=new_state,
                attempt_id=attempt.attempt_id,
                fields=fields,
            )
        except ConflictError as e:
            logger.info("Discarding %s result for %s: %s", new_state.value, attempt.handle, e)
            self._event(
                attempt.key,
                "Discarded stale executor result",
                level="warning",
                attempt_id=attempt.attempt_id,
                data={"result": new_state.value, "reason": e.message},
            )
            return False

        self._event(attempt.key, message, level=level, attempt_id=attempt.attempt_id, data=fields)
        return True

    def _on_timeout(self, attempt: InstallAttempt) -> None:
        with self._lock:
            self._timers.pop(attempt.handle, None)

        err = InstallTimeoutError(f"Install exceeded {self.install_timeout_s:g}s")
        try:
            transition(
                self.db_path,
                key=attempt.key,
                expected=InstallState.INSTALLING,
                new_state=InstallState.FAILED,
                attempt_id=attempt.attempt_id,
                fields={"last_error": _error_payload(err)},
            )
        except ConflictError:
            return

        logger.warning("Install of %s timed out", attempt.handle)
        self._event(
            attempt.key,
            "Install timed out",
            level="error",
            attempt_id=attempt.attempt_id,
            data={"timeout_s": self.install_timeout_s},
        )

        try:
            canceled = self.executor.cancel(attempt)
        except Exception:
            logger.exception("Executor cancel failed for %s", attempt.handle)
            canceled = False
        if not canceled:
            logger.info("Executor could not cancel %s; a late result will be discarded", attempt.handle)

    def _cancel_timer(self, attempt: InstallAttempt) -> None:
        with self._lock:
            timer = self._timers.pop(attempt.handle, None)
        if timer is not None:
            timer.cancel()

    def stop(self, key: str) -> InstallationRow:
        """Stop a running service. Executor failures leave it running."""

        definition = self.catalog.get(key)
        current = get_installation(self.db_path, key=key)
        if current.state is not InstallState.RUNNING:
            raise ConflictError(
                f"Service {key} is {current.state.value}",
                details={"key": key, "state": current.state.value},
            )

        attempt = InstallAttempt(key=key, attempt_id=current.attempt_id, port=current.port)
        self.executor.stop(definition, attempt)
        row = transition(
            self.db_path,
            key=key,
            expected=InstallState.RUNNING,
            new_state=InstallState.STOPPED,
            attempt_id=current.attempt_id,
        )
        self._event(key, "Service stopped", attempt_id=current.attempt_id)
        return row

    def uninstall(self, key: str) -> InstallationRow:
        """Remove a service, stopping it first when running, and free its port."""

        definition = self.catalog.get(key)
        current = get_installation(self.db_path, key=key)
        if current.state is InstallState.NOT_INSTALLED:
            raise ConflictError(f"Service {key} is not installed", details={"key": key})
        if current.state is InstallState.INSTALLING:
            raise ConflictError(f"Service {key} is still installing", details={"key": key})
        if current.state is InstallState.RUNNING:
            current = self.stop(key)

        attempt = InstallAttempt(key=key, attempt_id=current.attempt_id, port=current.port)
        self.executor.uninstall(definition, attempt)
        row = transition(
            self.db_path,
            key=key,
            expected=[InstallState.STOPPED, InstallState.FAILED],
            new_state=InstallState.NOT_INSTALLED,
            attempt_id=current.attempt_id,
        )
        self.port_allocator.release(key)
        logger.info("Uninstalled %s", key)
        self._event(key, "Service uninstalled", attempt_id=current.attempt_id)
        return row

    def executor_status(self, key: str) -> str | None:
        current = get_installation(self.db_path, key=key)
        if not current.is_recorded:
            return None
        attempt = InstallAttempt(key=key, attempt_id=current.attempt_id, port=current.port)
        return self.executor.status(attempt)

    def reconcile(self) -> list[str]:
        """Fail installs left in `installing` by a previous process."""

        keys = fail_interrupted_installs(self.db_path)
        for key in keys:
            logger.warning("Install of %s was interrupted by a restart", key)
            self._event(key, "Install interrupted by restart", level="error")
        return keys

    def wait_idle(self, timeout_s: float | None = None) -> None:
        """Join outstanding install workers (used on shutdown and in tests)."""

        with self._lock:
            workers = list(self._workers.values())
        for w in workers:
            w.join(timeout_s)

    def shutdown(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for t in timers:
            t.cancel()
