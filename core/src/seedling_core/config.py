from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from seedling_core.home import SeedlingPaths


class NetworkConfig(BaseModel):
    bind_host: str = Field(default="127.0.0.1")
    core_port: int = Field(default=8081, ge=1, le=65535)


class PathOverrides(BaseModel):
    db_dir: str | None = None
    logs_dir: str | None = None


class BootstrapAdminConfig(BaseModel):
    """Admin account created at startup when the users table has no admin yet."""

    email: str | None = None
    username: str | None = None
    password: str | None = None

    @property
    def is_complete(self) -> bool:
        return bool(
            (self.email or "").strip() and (self.username or "").strip() and self.password
        )


class AuthConfig(BaseModel):
    session_ttl_seconds: int = Field(
        default=30 * 24 * 60 * 60, ge=60, description="Lifetime of an issued session token."
    )
    bcrypt_rounds: int = Field(default=10, ge=4, le=16)
    allow_registration: bool = Field(default=True)
    bootstrap_admin: BootstrapAdminConfig = Field(default_factory=BootstrapAdminConfig)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    max_size_mb: int = Field(
        default=10, ge=1, description="Max size of a log file in MB before rolling."
    )
    backup_count: int = Field(default=5, ge=1, description="Number of log archives to keep.")


class CatalogConfig(BaseModel):
    path: str | None = Field(
        default=None,
        description=(
            "Optional catalog JSON file; if relative, resolved under SEEDLING_HOME. "
            "The bundled catalog is used when omitted."
        ),
    )


class HelmConfig(BaseModel):
    binary: str = Field(default="helm", description="helm executable name or path")
    namespace: str = Field(default="seedling")
    kube_context: str | None = None
    wait: bool = Field(default=True)


class ExecutorConfig(BaseModel):
    kind: Literal["static", "helm"] = Field(
        default="static",
        description="'helm' shells out to the helm CLI; 'static' marks installs running at once.",
    )
    install_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Ceiling for a single install attempt before it is marked failed.",
    )
    helm: HelmConfig = Field(default_factory=HelmConfig)


class PortAllocatorConfig(BaseModel):
    start_port: int = Field(default=30000, ge=1, le=65535)
    end_port: int = Field(default=30999, ge=1, le=65535)

    @model_validator(mode="after")
    def _check_range(self) -> PortAllocatorConfig:
        if self.end_port < self.start_port:
            raise ValueError("end_port must be >= start_port")
        return self


class CoreConfig(BaseModel):
    version: str = Field(default="1")
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    paths: PathOverrides = Field(default_factory=PathOverrides)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    port_allocator: PortAllocatorConfig = Field(default_factory=PortAllocatorConfig)


def _read_json(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def load_core_config(paths: SeedlingPaths) -> CoreConfig:
    """Load config from ${SEEDLING_HOME}/config/core.json.

    - If missing: returns defaults.
    - Validation is performed by Pydantic.
    """

    config_path = paths.core_config_path
    if not config_path.exists():
        return CoreConfig()

    raw = _read_json(config_path)
    return CoreConfig.model_validate(raw)


def resolve_home_relative(paths: SeedlingPaths, raw: str | None) -> Path | None:
    if raw is None or not str(raw).strip():
        return None
    candidate = Path(raw).expanduser()
    if not candidate.is_absolute():
        candidate = paths.home / candidate
    return candidate.resolve()


def resolve_configured_paths(paths: SeedlingPaths, config: CoreConfig) -> SeedlingPaths:
    """Apply user-configurable path overrides from config.

    config/ itself is never relocatable.
    """

    db_dir = resolve_home_relative(paths, config.paths.db_dir) or paths.db_dir
    logs_dir = resolve_home_relative(paths, config.paths.logs_dir) or paths.logs_dir

    for p in (db_dir, logs_dir):
        p.mkdir(parents=True, exist_ok=True)

    return SeedlingPaths(
        home=paths.home,
        db_dir=db_dir,
        logs_dir=logs_dir,
        config_dir=paths.config_dir,
    )
