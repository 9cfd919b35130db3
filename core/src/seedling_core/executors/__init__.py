from __future__ import annotations

from seedling_core.config import CoreConfig
from seedling_core.executors.base import ExternalExecutor, InstallAttempt
from seedling_core.executors.helm import HelmExecutor
from seedling_core.executors.static import StaticExecutor


def build_executor(config: CoreConfig) -> ExternalExecutor:
    if config.executor.kind == "helm":
        return HelmExecutor(
            config.executor.helm,
            timeout_s=config.executor.install_timeout_seconds,
        )
    return StaticExecutor()


__all__ = [
    "ExternalExecutor",
    "HelmExecutor",
    "InstallAttempt",
    "StaticExecutor",
    "build_executor",
]
