from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from seedling_core.catalog import ServiceDefinition


@dataclass(frozen=True)
class InstallAttempt:
    """Identifies one install attempt; the executor keys status and cancel by it."""

    key: str
    attempt_id: int
    port: int | None = None

    @property
    def handle(self) -> str:
        return f"{self.key}#{self.attempt_id}"


@runtime_checkable
class ExternalExecutor(Protocol):
    """The runtime that actually runs services (container/process manager).

    `start` may block for minutes and is only ever called from a worker thread.
    Failures are reported by raising seedling_core.errors.ExecutionError.
    """

    name: str

    def start(self, definition: ServiceDefinition, attempt: InstallAttempt) -> str:
        """Install and start the service; return its live URL."""
        ...

    def stop(self, definition: ServiceDefinition, attempt: InstallAttempt) -> None: ...

    def uninstall(self, definition: ServiceDefinition, attempt: InstallAttempt) -> None: ...

    def cancel(self, attempt: InstallAttempt) -> bool:
        """Abandon an in-flight `start`; return False if cancellation is unsupported."""
        ...

    def status(self, attempt: InstallAttempt) -> str | None: ...
