from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from ..core.logging import setup_logging
from ..core.config import settings
from ..core.errors import ApprovalGatewayError, LedgerError
from .deps import ServiceContainer, build_services
from .routers import health, maintenance, operations, transfers

logger = setup_logging()

HTTP_ERROR_KINDS = {401: "unauthorized", 403: "permission_denied", 404: "not_found"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.services is None:
        app.state.services = build_services()

    sweeper = app.state.services.sweeper
    if settings.expiry_sweep_enabled:
        await sweeper.start()
    try:
        yield
    finally:
        await sweeper.stop()


def create_app(services: ServiceContainer | None = None) -> FastAPI:
    """
    Build the API. Pass a prebuilt container to control storage, clock and
    ledger (tests); otherwise services are built from settings on startup.
    """
    app = FastAPI(title="Voucher Approval Gateway", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(ApprovalGatewayError)
    async def workflow_exception_handler(request: Request, exc: ApprovalGatewayError):
        content = {"error": exc.kind, "detail": exc.message}
        if isinstance(exc, LedgerError):
            content["retryable"] = exc.retryable
        return JSONResponse(status_code=exc.status_code, content=content)

    # Malformed request bodies/queries are client errors like any other ValidationError
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.error("Request validation failed", path=request.url.path, errors=str(exc.errors()))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "validation_error", "detail": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": HTTP_ERROR_KINDS.get(exc.status_code, "http_error"), "detail": exc.detail},
        )

    # Configure CORS to allow frontend access
    # CORS_ORIGINS can be set in .env as comma-separated list
    allowed_origins = [origin.strip() for origin in settings.cors_origins.split(",")]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(operations.router)
    app.include_router(maintenance.router)
    app.include_router(transfers.router)
    return app


app = create_app()
