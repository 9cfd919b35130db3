from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from seedling_core import __version__
from seedling_core.api.models import ApiResponse, ok
from seedling_core.api.v1.services import router as services_router
from seedling_core.api.v1.users import router as users_router
from seedling_core.auth import require_user

router = APIRouter(prefix="/v1", tags=["v1"])

# Users carry their own per-route auth (login and registration are public).
router.include_router(users_router)
router.include_router(services_router, dependencies=[Depends(require_user)])


class SystemInfo(BaseModel):
    version: str
    executor: str
    install_timeout_seconds: float
    catalog_size: int


@router.get(
    "/system/info",
    response_model=ApiResponse[SystemInfo],
    dependencies=[Depends(require_user)],
)
def system_info(request: Request) -> ApiResponse[SystemInfo]:
    lifecycle = request.app.state.lifecycle
    info = SystemInfo(
        version=__version__,
        executor=lifecycle.executor.name,
        install_timeout_seconds=lifecycle.install_timeout_s,
        catalog_size=len(lifecycle.catalog),
    )
    return ok(info)
