from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path

from pydantic import BaseModel, Field

from seedling_core.config import CoreConfig, resolve_home_relative
from seedling_core.errors import ServiceNotFoundError
from seedling_core.home import SeedlingPaths

logger = logging.getLogger(__name__)

BUNDLED_CATALOG_PATH = Path(__file__).resolve().parent / "data" / "catalog.json"


class ServiceLink(BaseModel):
    name: str
    url: str


class HelmValuePath(BaseModel):
    path: str = Field(min_length=1)
    key: str | None = None


class HelmValue(BaseModel):
    """One chart value; `manager` names the allocator that supplies it, if any."""

    name: str
    paths: list[HelmValuePath] = Field(default_factory=list)
    default: str = ""
    description: str | None = None
    manager: str | None = None


class HelmChart(BaseModel):
    chart: str = Field(min_length=1, description="OCI reference or repo/chart name")
    version: str | None = None
    release_name_format: str = Field(default="{key}")
    values: list[HelmValue] = Field(default_factory=list)


class ServiceDefinition(BaseModel):
    model_config = {"frozen": True}

    key: str = Field(min_length=1, pattern=r"^[a-z0-9][a-z0-9-]*$")
    name: str = Field(min_length=1)
    description: str = ""
    project_url: str = ""
    icon: str = ""
    tags: list[str] = Field(default_factory=list)
    links: list[ServiceLink] = Field(default_factory=list)
    endpoint_template: str = Field(default="http://localhost:{port}")
    default_port: int | None = Field(default=None, ge=1, le=65535)
    helm: HelmChart | None = None

    def live_url(self, port: int | None) -> str:
        return self.endpoint_template.format(port=port if port is not None else "", key=self.key)


class CatalogFile(BaseModel):
    services: list[ServiceDefinition] = Field(default_factory=list)


class ServiceCatalog:
    """Read-only registry of installable services, in file order."""

    def __init__(self, services: list[ServiceDefinition]) -> None:
        by_key: dict[str, ServiceDefinition] = {}
        for svc in services:
            if svc.key in by_key:
                raise ValueError(f"Duplicate service key in catalog: {svc.key}")
            by_key[svc.key] = svc
        self._services = tuple(services)
        self._by_key = by_key

    def list(self) -> list[ServiceDefinition]:
        return list(self._services)

    def get(self, key: str) -> ServiceDefinition:
        svc = self._by_key.get(key)
        if svc is None:
            raise ServiceNotFoundError(key)
        return svc

    def keys(self) -> list[str]:
        return [s.key for s in self._services]

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def __iter__(self) -> Iterator[ServiceDefinition]:
        return iter(self._services)

    def __len__(self) -> int:
        return len(self._services)


def load_catalog(path: Path) -> ServiceCatalog:
    with path.open("r", encoding="utf-8") as f:
        raw = json.load(f)
    parsed = CatalogFile.model_validate(raw)
    logger.info("Loaded %d service definitions from %s", len(parsed.services), path)
    return ServiceCatalog(parsed.services)


def resolve_catalog_path(paths: SeedlingPaths, config: CoreConfig) -> Path:
    return resolve_home_relative(paths, config.catalog.path) or BUNDLED_CATALOG_PATH
