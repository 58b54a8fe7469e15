from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from orchestrator import __version__
from orchestrator.core.logging import NOTICE, get_logger
from orchestrator.preview.models import (
    ApplyDiffRequest,
    ApplyDiffResponse,
    DeployRequest,
    DeployResponse,
    HealthResponse,
    InstallRequest,
    InstallResponse,
    PreviewStatusRequest,
    PreviewStatusResponse,
    StartPreviewRequest,
    StartPreviewResponse,
    StopPreviewRequest,
    StopPreviewResponse,
)
from orchestrator.preview.proxy import PreviewProxyMiddleware
from orchestrator.preview.service import PreviewService, get_preview_service
from orchestrator.shared import PreviewError

logger = get_logger(__name__)


def _validation_message(exc: RequestValidationError) -> str:
    fields: list[str] = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part != "body"]
        name = ".".join(location) or "body"
        if name not in fields:
            fields.append(name)
    return f"Missing or invalid field(s): {', '.join(fields)}"


def create_app(service: PreviewService | None = None) -> FastAPI:
    preview_service = service or get_preview_service()

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        settings = preview_service.settings
        logger.log(NOTICE, f"Preview orchestrator v{__version__} listening on port {settings.port}")
        logger.log(NOTICE, f"   Preview domain: {settings.preview_domain}")
        logger.log(NOTICE, f"   Workspaces dir: {preview_service.workspaces.root}")
        yield
        await preview_service.shutdown()
        logger.info("Shutting down preview orchestrator")

    application = FastAPI(
        title="Preview Orchestrator",
        version=__version__,
        lifespan=lifespan,
    )
    application.state.preview_service = preview_service

    # Runs before routing so proxied bodies and upgrades stay untouched.
    application.add_middleware(
        PreviewProxyMiddleware,
        registry=preview_service.registry,
        settings=preview_service.settings,
    )

    @application.exception_handler(PreviewError)
    async def preview_error_handler(request: Request, exc: PreviewError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.url.path} failed: {exc}")
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})

    @application.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": _validation_message(exc)})

    @application.exception_handler(StarletteHTTPException)
    async def http_error_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @application.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.url.path}")
        return JSONResponse(status_code=500, content={"error": str(exc)})

    @application.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return preview_service.health()

    @application.post("/preview/start", response_model=StartPreviewResponse)
    async def start_preview(request: StartPreviewRequest) -> StartPreviewResponse:
        return await preview_service.start(request.site_id, request.repo_url, request.branch)

    @application.post("/preview/apply", response_model=ApplyDiffResponse)
    async def apply_diff(request: ApplyDiffRequest) -> ApplyDiffResponse:
        return await preview_service.apply(request.site_id, request.unified_diff)

    @application.post("/preview/status", response_model=PreviewStatusResponse)
    async def preview_status(request: PreviewStatusRequest) -> PreviewStatusResponse:
        return preview_service.status(request.site_id)

    @application.post("/preview/install", response_model=InstallResponse)
    async def install_packages(request: InstallRequest) -> InstallResponse:
        return await preview_service.install(
            request.site_id, request.packages, request.preset
        )

    @application.post("/preview/stop", response_model=StopPreviewResponse)
    async def stop_preview(request: StopPreviewRequest) -> StopPreviewResponse:
        return preview_service.stop(request.site_id)

    @application.post("/preview/deploy", response_model=DeployResponse)
    async def deploy_preview(request: DeployRequest) -> DeployResponse:
        return await preview_service.deploy(
            request.site_id, request.mode, request.title, request.body
        )

    return application
