from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import AliasChoices, BaseModel, Field

from seedling_core.api.models import ApiResponse, ok
from seedling_core.auth import AuthenticatedUser, require_installer
from seedling_core.catalog import ServiceDefinition, ServiceLink
from seedling_core.db.events import ServiceEventRow, list_service_events
from seedling_core.db.installations import (
    INSTALLABLE_FROM,
    InstallationRow,
    InstallState,
    implicit_installation,
    list_installations,
)
from seedling_core.errors import ServiceNotFoundError
from seedling_core.lifecycle import LifecycleManager

router = APIRouter(prefix="/services", tags=["services"])

_INSTALLED_STATES = frozenset({InstallState.INSTALLING, InstallState.RUNNING, InstallState.STOPPED})


class Service(BaseModel):
    key: str
    name: str
    description: str
    project_url: str
    icon: str
    tags: list[str] = Field(default_factory=list)
    links: list[ServiceLink] = Field(default_factory=list)
    is_installed: bool
    is_available: bool
    is_running: bool
    status: str


class InstalledService(BaseModel):
    name: str
    description: str
    live_url: str | None = None
    status: str
    last_error: dict[str, Any] | None = None
    attempt_id: int
    updated_at: str | None = None
    executor_status: str | None = None
    service: Service


def _to_service(definition: ServiceDefinition, row: InstallationRow) -> Service:
    return Service(
        key=definition.key,
        name=definition.name,
        description=definition.description,
        project_url=definition.project_url,
        icon=definition.icon,
        tags=list(definition.tags),
        links=list(definition.links),
        is_installed=row.state in _INSTALLED_STATES,
        is_available=row.state in INSTALLABLE_FROM,
        is_running=row.state is InstallState.RUNNING,
        status=row.state.value,
    )


def _to_installed(
    definition: ServiceDefinition, row: InstallationRow, *, executor_status: str | None = None
) -> InstalledService:
    return InstalledService(
        name=definition.name,
        description=definition.description,
        live_url=row.live_url,
        status=row.state.value,
        last_error=row.last_error,
        attempt_id=row.attempt_id,
        updated_at=row.updated_at,
        executor_status=executor_status,
        service=_to_service(definition, row),
    )


def _lifecycle(request: Request) -> LifecycleManager:
    lifecycle = getattr(request.app.state, "lifecycle", None)
    if lifecycle is None:
        raise HTTPException(status_code=500, detail="Lifecycle manager not initialized")
    return lifecycle


@router.get("/info", response_model=ApiResponse[list[Service]])
def services_info(request: Request) -> ApiResponse[list[Service]]:
    lifecycle = _lifecycle(request)
    rows = list_installations(lifecycle.db_path)

    items: list[Service] = []
    for definition in lifecycle.catalog.list():
        row = rows.get(definition.key) or implicit_installation(definition.key)
        items.append(_to_service(definition, row))
    return ok(items)


@router.get("/info/{key}", response_model=ApiResponse[Service])
def services_info_one(request: Request, key: str) -> ApiResponse[Service]:
    lifecycle = _lifecycle(request)
    definition = lifecycle.catalog.get(key)
    return ok(_to_service(definition, lifecycle.get(key)))


@router.get("/installed", response_model=ApiResponse[list[InstalledService]])
def services_installed(request: Request) -> ApiResponse[list[InstalledService]]:
    lifecycle = _lifecycle(request)
    rows = list_installations(
        lifecycle.db_path,
        states=[s for s in InstallState if s is not InstallState.NOT_INSTALLED],
    )

    items: list[InstalledService] = []
    for definition in lifecycle.catalog.list():
        row = rows.get(definition.key)
        if row is not None:
            items.append(_to_installed(definition, row))
    return ok(items)


@router.get("/installed/{key}", response_model=ApiResponse[InstalledService])
def services_installed_one(request: Request, key: str) -> ApiResponse[InstalledService]:
    lifecycle = _lifecycle(request)
    definition = lifecycle.catalog.get(key)
    row = lifecycle.get(key)
    if row.state is InstallState.NOT_INSTALLED:
        raise ServiceNotFoundError(key, f"Service not installed: {key}")
    return ok(_to_installed(definition, row, executor_status=lifecycle.executor_status(key)))


class ServiceEvent(BaseModel):
    event_id: int
    attempt_id: int | None = None
    ts: str
    level: str
    message: str
    data: Any | None = None


def _to_event(row: ServiceEventRow) -> ServiceEvent:
    return ServiceEvent(
        event_id=row.event_id,
        attempt_id=row.attempt_id,
        ts=row.ts,
        level=row.level,
        message=row.message,
        data=row.data,
    )


class ServiceEventsResponse(BaseModel):
    items: list[ServiceEvent]
    next_after_id: int


@router.get("/installed/{key}/events", response_model=ApiResponse[ServiceEventsResponse])
def services_events(
    request: Request,
    key: str,
    after_id: int = Query(default=0, ge=0),
    limit: int = Query(default=500, ge=1, le=2000),
) -> ApiResponse[ServiceEventsResponse]:
    lifecycle = _lifecycle(request)
    lifecycle.catalog.get(key)

    rows = list_service_events(lifecycle.db_path, key=key, after_id=after_id, limit=limit)
    items = [_to_event(r) for r in rows]
    next_after = items[-1].event_id if items else after_id
    return ok(ServiceEventsResponse(items=items, next_after_id=next_after))


class InstallRequest(BaseModel):
    # Older dashboard builds post `name`; both spellings carry the service key.
    key: str = Field(min_length=1, validation_alias=AliasChoices("key", "name"))


@router.post("/install", response_model=ApiResponse[InstalledService])
def services_install(
    request: Request,
    payload: InstallRequest,
    user: AuthenticatedUser = Depends(require_installer),  # noqa: B008
) -> ApiResponse[InstalledService]:
    lifecycle = _lifecycle(request)
    key = payload.key.strip()
    definition = lifecycle.catalog.get(key)
    row = lifecycle.install(key, user_id=user.user_id)
    return ok(_to_installed(definition, row))


# Extension point: no dashboard screen calls this yet; it drives the
# running -> stopped -> not_installed edges of the lifecycle.
@router.post("/uninstall/{key}", response_model=ApiResponse[InstalledService])
def services_uninstall(
    request: Request,
    key: str,
    user: AuthenticatedUser = Depends(require_installer),  # noqa: B008
) -> ApiResponse[InstalledService]:
    lifecycle = _lifecycle(request)
    definition = lifecycle.catalog.get(key)
    row = lifecycle.uninstall(key)
    return ok(_to_installed(definition, row))
