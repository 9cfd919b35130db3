from __future__ import annotations

import json
import logging
import shutil
import subprocess
import threading
from dataclasses import dataclass

from seedling_core.catalog import HelmChart, ServiceDefinition
from seedling_core.config import HelmConfig
from seedling_core.errors import ExecutionError
from seedling_core.executors.base import InstallAttempt

logger = logging.getLogger(__name__)

PORT_ALLOCATOR_MANAGER = "port_allocator"


@dataclass(frozen=True)
class ChartValues:
    set_values: list[str]
    set_json_values: list[str]


def build_chart_values(chart: HelmChart, *, port: int | None) -> ChartValues:
    """Turn catalog value declarations into `--set` / `--set-json` arguments.

    A path with a `key` is written as a JSON object so charts that expect a
    map at that path receive one.
    """

    set_values: list[str] = []
    set_json_values: list[str] = []
    for value in chart.values:
        if value.manager == PORT_ALLOCATOR_MANAGER:
            if port is None:
                raise ExecutionError(f"Chart value {value.name!r} needs a port but none was allocated")
            raw = str(port)
        else:
            raw = value.default

        for p in value.paths:
            if not p.key:
                set_values.append(f"{p.path}={raw}")
            else:
                set_json_values.append(f"{p.path}={json.dumps({p.key: raw})}")

    return ChartValues(set_values=set_values, set_json_values=set_json_values)


def release_name(definition: ServiceDefinition) -> str:
    chart = definition.helm
    fmt = chart.release_name_format if chart is not None else "{key}"
    return fmt.format(key=definition.key)


class HelmExecutor:
    """Runs services as Helm releases by shelling out to the `helm` CLI."""

    name = "helm"

    def __init__(self, config: HelmConfig, *, timeout_s: float) -> None:
        self._config = config
        self._timeout_s = timeout_s
        self._lock = threading.Lock()
        self._procs: dict[str, subprocess.Popen] = {}
        self._canceled: set[str] = set()
        self._status: dict[str, str] = {}
        self._current: dict[str, int] = {}

    def _binary(self) -> str:
        resolved = shutil.which(self._config.binary)
        if resolved is None:
            raise ExecutionError(f"helm binary not found: {self._config.binary}")
        return resolved

    def _common_args(self) -> list[str]:
        args = ["--namespace", self._config.namespace]
        if self._config.kube_context:
            args.extend(["--kube-context", self._config.kube_context])
        return args

    def build_install_args(self, definition: ServiceDefinition, attempt: InstallAttempt) -> list[str]:
        chart = definition.helm
        if chart is None:
            raise ExecutionError(f"Service {definition.key} has no helm chart configured")

        values = build_chart_values(chart, port=attempt.port)
        args = [
            "upgrade",
            "--install",
            release_name(definition),
            chart.chart,
            *self._common_args(),
            "--create-namespace",
            "--timeout",
            f"{int(self._timeout_s)}s",
        ]
        if chart.version:
            args.extend(["--version", chart.version])
        if self._config.wait:
            args.append("--wait")
        for v in values.set_values:
            args.extend(["--set", v])
        for v in values.set_json_values:
            args.extend(["--set-json", v])
        return args

    def _run(self, args: list[str], *, handle: str | None = None) -> str:
        cmd = [self._binary(), *args]
        logger.info("Running %s", " ".join(cmd))
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as e:
            raise ExecutionError(f"Failed to launch helm: {e}") from e

        if handle is not None:
            with self._lock:
                self._procs[handle] = proc
        canceled = False
        try:
            stdout, stderr = proc.communicate()
        finally:
            if handle is not None:
                with self._lock:
                    self._procs.pop(handle, None)
                    canceled = handle in self._canceled
                    self._canceled.discard(handle)

        if proc.returncode != 0:
            if canceled:
                raise ExecutionError("helm install canceled")
            message = (stderr or stdout or "").strip() or f"helm exited with {proc.returncode}"
            raise ExecutionError(message, details={"returncode": proc.returncode})
        return stdout

    def _set_status(self, attempt: InstallAttempt, status: str) -> None:
        # Caller holds self._lock. Only the newest attempt per key is tracked.
        current = self._current.get(attempt.key)
        if current is not None and attempt.attempt_id < current:
            return
        if current != attempt.attempt_id:
            self._current[attempt.key] = attempt.attempt_id
            if current is not None:
                self._status.pop(InstallAttempt(attempt.key, current).handle, None)
        self._status[attempt.handle] = status

    def start(self, definition: ServiceDefinition, attempt: InstallAttempt) -> str:
        with self._lock:
            self._set_status(attempt, "installing")
        try:
            self._run(self.build_install_args(definition, attempt), handle=attempt.handle)
        except ExecutionError:
            with self._lock:
                self._set_status(attempt, "failed")
            raise
        with self._lock:
            self._set_status(attempt, "running")
        return definition.live_url(attempt.port)

    def stop(self, definition: ServiceDefinition, attempt: InstallAttempt) -> None:
        # Keeping history lets a later `upgrade --install` restore the same release.
        self._run(["uninstall", release_name(definition), *self._common_args(), "--keep-history"])
        with self._lock:
            self._set_status(attempt, "stopped")

    def uninstall(self, definition: ServiceDefinition, attempt: InstallAttempt) -> None:
        try:
            self._run(["uninstall", release_name(definition), *self._common_args()])
        except ExecutionError as e:
            if "not found" not in e.message:
                raise
            logger.info("Release %s already absent", release_name(definition))
        with self._lock:
            self._status.pop(attempt.handle, None)
            self._current.pop(attempt.key, None)

    def cancel(self, attempt: InstallAttempt) -> bool:
        with self._lock:
            proc = self._procs.get(attempt.handle)
            if proc is None:
                return False
            self._canceled.add(attempt.handle)
            self._set_status(attempt, "canceled")
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()
        return True

    def status(self, attempt: InstallAttempt) -> str | None:
        with self._lock:
            return self._status.get(attempt.handle)
