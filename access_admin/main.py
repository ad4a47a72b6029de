from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi.errors import RateLimitExceeded
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from access_admin.core import config
from access_admin.features.rbac.dependencies import close_registry, limiter
from access_admin.features.rbac.exceptions import AssignmentError, FetchError, InvalidTransition
from access_admin.features.rbac.routes import router as rbac_router
from access_admin.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="Access Admin",
    description="Effective-permission aggregation and bulk role assignment for project-scoped RBAC",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
app.state.limiter = limiter


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.access_admin.features."), timing=timing, tags=tags))


app.add_middleware(TimingMiddleware, client=PrintTimings(), metric_namer=StarletteScopeToName("main", app))

if config.ENABLE_DOCS:
    log.warning("Docs enabled")
if config.ALLOW_ORIGIN:
    log.warning("Setting allow origin to %s", config.ALLOW_ORIGIN)
    origins = [config.ALLOW_ORIGIN]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError):
    errors = dict()
    for error in exc.errors():
        if "loc" not in error or "msg" not in error:
            continue
        key = error["loc"][-1]
        if key == "__root__":
            key = "root"
        errors[key] = error["msg"]
    log.info("Request validation error %s", errors)
    return JSONResponse(status_code=400, content=jsonable_encoder(errors))


@app.exception_handler(RateLimitExceeded)
def rate_limit_exceeded_handler(_request: Request, _exc: RateLimitExceeded) -> Response:
    return JSONResponse({"error": "You are going too fast"}, status_code=429)


@app.exception_handler(FetchError)
async def fetch_error_handler(_request: Request, exc: FetchError) -> Response:
    return JSONResponse({"error": exc.message}, status_code=502)


@app.exception_handler(AssignmentError)
async def assignment_error_handler(_request: Request, exc: AssignmentError) -> Response:
    return JSONResponse({"error": exc.message}, status_code=409)


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(_request: Request, exc: InvalidTransition) -> Response:
    return JSONResponse({"error": exc.message}, status_code=409)


@app.on_event("shutdown")
async def shutdown():
    """Stop refresh timers and drop per-project state."""
    log.info("Closing RBAC registry")
    await close_registry()


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "Access Admin API",
        "version": "0.1.0",
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authority": config.AUTHORITY_BASE_URL,
        "features": {
            "effective_permissions": "Per-project cache of effective permissions with provenance and conflicts",
            "analytics": "Coverage, conflict roll-up and permission comparison over tracked users",
            "assignments": "Single and bulk role assignment with dry-run validation",
            "workflows": "Guided select-users / select-roles / review / assign flow"
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# RBAC administration routes
app.include_router(rbac_router, prefix="/rbac", tags=["rbac"])
