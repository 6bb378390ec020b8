"""
Audit Vault API — FastAPI entry point

  uvicorn auditvault.main:app

The API is stateless. A dataroom audit is a row in PostgreSQL, and every
/run call (browser poll or Celery beat) advances it by one bounded batch,
so any replica can serve any request.

Layers, outermost first:
  request-id middleware   X-Request-ID echoed or minted, one log line per request
  TrustedHost             production only
  CORS                    "*" in development, the web app origin otherwise
  GZip                    final reports can run to tens of KB

Every 4xx/5xx body is an ErrorResponse envelope; stack traces never leave
the process.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from auditvault.api.v1.audit_jobs import router as audit_jobs_router
from auditvault.core.config import settings
from auditvault.db.session import check_db_health, engine
from auditvault.schemas.jobs import HTTP_ERROR_MAP, ErrorDetail, ErrorResponse, JobErrors

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

WEB_ORIGINS   = ["https://app.auditvault.io"]
TRUSTED_HOSTS = ["api.auditvault.io", "*.auditvault.io"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Audit Vault starting | env=%s bucket=%s model=%s batch_max_files=%d timeout=%.0fs",
        settings.app_env, settings.s3_bucket, settings.llm_model,
        settings.batch_max_files, settings.per_file_timeout_seconds,
    )
    db = await check_db_health()
    if db["status"] != "ok":
        logger.critical("Audit Vault cannot start | database=%s", db)
        raise RuntimeError(f"Database unreachable at startup: {db.get('detail')}")

    yield

    await engine.dispose()
    logger.info("Audit Vault stopped | connection pool disposed")


# ---------------------------------------------------------------------------
# Operations router (load balancer / k8s probes)
# ---------------------------------------------------------------------------

ops_router = APIRouter(tags=["Operations"])


@ops_router.get("/health", summary="Liveness probe, no external checks")
async def health() -> dict:
    return {"status": "ok", "service": "audit-vault-api"}


@ops_router.get("/ready", summary="Readiness probe, 503 while the database is unreachable")
@ops_router.get("/health/ready", include_in_schema=False)
async def ready() -> JSONResponse:
    db = await check_db_health()
    ok = db["status"] == "ok"
    return JSONResponse(
        status_code=status.HTTP_200_OK if ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if ok else "not_ready", "database": db},
    )


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

def _install_middleware(app: FastAPI) -> None:
    # Starlette wraps in reverse: the last one added sees the request first
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else WEB_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Location"],
    )
    if settings.is_production:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=TRUSTED_HOSTS)

    @app.middleware("http")
    async def tag_and_time(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        t0 = time.perf_counter()

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP | %s %s status=%d elapsed_ms=%.1f request_id=%s",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - t0) * 1000, request_id,
        )
        return response


# ---------------------------------------------------------------------------
# Error envelopes
# ---------------------------------------------------------------------------

def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")


def _envelope(status_code: int, body: ErrorResponse) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def _install_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        code = HTTP_ERROR_MAP[422]
        details = [
            ErrorDetail(
                field=".".join(str(part) for part in err["loc"]),
                message=err["msg"],
                code=code,
            )
            for err in exc.errors()
        ]
        return _envelope(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            ErrorResponse(
                error_code=code,
                message="Request validation failed.",
                details=details,
                request_id=_request_id(request),
            ),
        )

    @app.exception_handler(StarletteHTTPException)
    async def on_http_error(request: Request, exc: StarletteHTTPException):
        # Unknown routes and wrong methods still get the envelope
        return _envelope(
            exc.status_code,
            ErrorResponse(
                error_code=HTTP_ERROR_MAP.get(exc.status_code, f"HTTP_{exc.status_code}"),
                message=str(exc.detail),
                request_id=_request_id(request),
            ),
        )

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        request_id = _request_id(request) or str(uuid.uuid4())
        logger.exception("Unhandled error | %s %s request_id=%s", request.method, request.url.path, request_id)
        response = _envelope(status.HTTP_500_INTERNAL_SERVER_ERROR, JobErrors.internal_error(request_id))
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    docs = not settings.is_production
    app = FastAPI(
        title="Audit Vault Forensic Pipeline",
        description=(
            "Resumable forensic audits over a dataroom of financial documents. "
            "Files are extracted in small batches and synthesized into one "
            "risk-scored report."
        ),
        version="1.0.0",
        docs_url="/api/docs" if docs else None,
        redoc_url="/api/redoc" if docs else None,
        openapi_url="/api/openapi.json" if docs else None,
        lifespan=lifespan,
    )

    _install_middleware(app)
    _install_error_handlers(app)

    app.include_router(audit_jobs_router, prefix="/api/v1")
    app.include_router(ops_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "auditvault.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
