from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from seedling_core import __version__
from seedling_core.api.models import error_response, fail
from seedling_core.api.v1.router import router as v1_router
from seedling_core.auth import ensure_bootstrap_admin
from seedling_core.catalog import load_catalog, resolve_catalog_path
from seedling_core.config import load_core_config, resolve_configured_paths
from seedling_core.db import resolve_db_path
from seedling_core.db.migrate import apply_migrations
from seedling_core.db.users import delete_expired_sessions
from seedling_core.errors import InvalidCredentialsError, SeedlingError
from seedling_core.executors import ExternalExecutor, build_executor
from seedling_core.home import ensure_seedling_layout, resolve_seedling_home
from seedling_core.lifecycle import LifecycleManager
from seedling_core.ports import PortAllocator

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]


def cors_origins(environ: dict[str, str] | None = None) -> list[str]:
    """Dashboard origins allowed to call the API; SEEDLING_CORS_ORIGINS adds more."""

    env = os.environ if environ is None else environ
    origins = list(DEFAULT_CORS_ORIGINS)
    extra = env.get("SEEDLING_CORS_ORIGINS", "")
    if extra:
        origins.extend(o.strip() for o in extra.split(",") if o.strip())
    return origins


def create_app(*, executor: ExternalExecutor | None = None) -> FastAPI:
    """Build the API app.

    `executor` replaces the one selected by config (tests pass a fake here).
    """

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        home = resolve_seedling_home()
        paths = ensure_seedling_layout(home)
        config = load_core_config(paths)
        paths = resolve_configured_paths(paths, config)

        log_path = paths.logs_dir / "core.log"
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=config.logging.max_size_mb * 1024 * 1024,
            backupCount=config.logging.backup_count,
            encoding="utf-8",
        )
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        file_handler.setFormatter(formatter)

        root = logging.getLogger()
        root.setLevel(config.logging.level.upper())
        # Avoid adding duplicate handlers if reloaded
        if not any(isinstance(h, RotatingFileHandler) for h in root.handlers):
            root.addHandler(file_handler)

        logger.info("Seedling Core starting up")
        logger.info(f"Logs directory: {paths.logs_dir}")

        db_path = resolve_db_path(paths)
        apply_migrations(db_path)
        ensure_bootstrap_admin(db_path, config.auth)
        purged = delete_expired_sessions(db_path)
        if purged:
            logger.info("Purged %d expired sessions", purged)

        catalog = load_catalog(resolve_catalog_path(paths, config))
        lifecycle = LifecycleManager(
            db_path=db_path,
            catalog=catalog,
            executor=executor if executor is not None else build_executor(config),
            port_allocator=PortAllocator.from_config(db_path, config.port_allocator),
            install_timeout_s=config.executor.install_timeout_seconds,
        )
        lifecycle.reconcile()

        app.state.seedling_home = home
        app.state.seedling_paths = paths
        app.state.seedling_config = config
        app.state.db_path = db_path
        app.state.catalog = catalog
        app.state.lifecycle = lifecycle

        try:
            yield
        finally:
            lifecycle.shutdown()
            logger.info("Seedling Core stopped")

    app = FastAPI(title="Seedling Core", version=__version__, lifespan=_lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        response = await call_next(request)
        logger.info(f"{request.method} {request.url.path} - {response.status_code}")
        return response

    @app.exception_handler(InvalidCredentialsError)
    async def _login_error_handler(request: Request, exc: InvalidCredentialsError):
        # The login form shows this body verbatim.
        return PlainTextResponse(status_code=exc.status_code, content=exc.message)

    @app.exception_handler(SeedlingError)
    async def _domain_error_handler(request: Request, exc: SeedlingError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content=fail(
                code="validation_error",
                message="Request validation failed",
                details=jsonable_encoder(exc.errors()),
            ).model_dump(mode="json"),
        )

    def _status_to_code(status_code: int) -> str:
        if status_code == 401:
            return "unauthorized"
        if status_code == 403:
            return "forbidden"
        if status_code == 404:
            return "not_found"
        if status_code == 405:
            return "method_not_allowed"
        if status_code == 409:
            return "conflict"
        if 400 <= status_code < 500:
            return "client_error"
        return "server_error"

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=fail(
                code=_status_to_code(exc.status_code),
                message=str(exc.detail),
            ).model_dump(mode="json"),
            headers=exc.headers,
        )

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=fail(
                code=_status_to_code(exc.status_code),
                message=exc.detail if isinstance(exc.detail, str) else "HTTP error",
            ).model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=fail(code="internal_error", message="Internal server error").model_dump(
                mode="json"
            ),
        )

    app.include_router(v1_router)

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    return app
