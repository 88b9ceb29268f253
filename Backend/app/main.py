import logging

from fastapi import Depends, FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import HTTPConnection
from starlette.websockets import WebSocketState

from .booking_lifecycle import BookingError
from .core.config import get_settings
from .core.db import AsyncSessionLocal, Base, engine
from .core.request_context import AuthenticationError, AuthorizationError
from .core.responses import ErrorCodes, code_for_status, error_response
from .router_cron import router as cron_router
from .routes_scoped import router as scoped_router
from .seed import seed_initial_data
from .tenancy import TenantContext, get_tenant_context_from_host


settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

app = FastAPI(title="Agenda Barber Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(scoped_router)
app.include_router(cron_router)


# ────────────────────────────────────────────────────────────────
# Error envelope: {"error": {"code", "message", "details"}, "status": "error"}
# ────────────────────────────────────────────────────────────────

@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(exc.code, exc.message, exc.details),
    )


@app.exception_handler(AuthenticationError)
async def authentication_error_handler(request: Request, exc: AuthenticationError):
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(exc.code, exc.message),
        headers={"WWW-Authenticate": "Bearer"},
    )


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError):
    return JSONResponse(status_code=403, content=error_response(exc.code, exc.message))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(code_for_status(exc.status_code), message),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content=error_response(
            ErrorCodes.VALIDATION_ERROR,
            "Request validation failed",
            {"errors": jsonable_encoder(exc.errors())},
        ),
    )


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: HTTPConnection, exc: SQLAlchemyError):
    method = request.scope.get("method", request.scope["type"])
    logger.exception(f"Database error on {method} {request.url.path}")
    if request.scope["type"] == "websocket":
        if request.application_state != WebSocketState.DISCONNECTED:
            await request.close(code=status.WS_1011_INTERNAL_ERROR)
        return None
    return JSONResponse(
        status_code=500,
        content=error_response(ErrorCodes.DATABASE_ERROR, "A database error occurred."),
    )


# ────────────────────────────────────────────────────────────────
# Lifecycle & root endpoints
# ────────────────────────────────────────────────────────────────

@app.on_event("startup")
async def on_startup():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    if settings.seed_demo_data:
        async with AsyncSessionLocal() as session:
            await seed_initial_data(session)
    logger.info("Application started")


@app.get("/health")
async def healthcheck():
    return {"ok": True}


@app.get("/tenant")
async def resolve_tenant_by_host(ctx: TenantContext = Depends(get_tenant_context_from_host)):
    """Map a white-label sub-domain (Host header) to its tenant slug."""
    return {
        "slug": ctx.slug,
        "name": ctx.name,
        "timezone": ctx.timezone,
        "source": ctx.source.value,
    }
