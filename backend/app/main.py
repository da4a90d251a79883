from contextlib import asynccontextmanager
import json
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .config import settings
from .limiter import limiter
from .routers import admin, cron, health, payments, usage, users
from .routers import credits as credits_router


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    force=True,
)
logger = logging.getLogger("credits.api")


def _truncate(text: str, limit: int = 900) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}... [truncated]"


def _body_preview(raw: bytes, content_type: str) -> str:
    if not raw:
        return "-"
    if "application/json" in content_type:
        try:
            parsed = json.loads(raw.decode("utf-8"))
            return _truncate(json.dumps(parsed, ensure_ascii=False, separators=(",", ":")))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return _truncate(raw.decode("utf-8", errors="replace"))
    return f"<{len(raw)} bytes; {content_type or 'unknown'}>"


class ApiAuditMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        request_id = uuid4().hex[:8]
        started_at = time.perf_counter()

        method = request.method
        path = request.url.path
        query = request.url.query
        full_path = f"{path}?{query}" if query else path
        user_id = request.headers.get("x-user-id") or "-"
        auth_mode = "internal" if request.headers.get("x-internal-api-key") else "dev"

        # Payment payloads carry customer data; log their size only.
        request_preview = "-"
        if not path.startswith("/v1/payments/internal"):
            content_length = int(request.headers.get("content-length", 0) or 0)
            if 0 < content_length <= 16384:
                request_preview = _body_preview(await request.body(), request.headers.get("content-type", ""))
        else:
            request_preview = f"<{request.headers.get('content-length', '0')} bytes>"

        try:
            response = await call_next(request)
        except Exception:
            elapsed_ms = (time.perf_counter() - started_at) * 1000
            logger.exception(
                "API %s %s | status=500 | user=%s | auth=%s | t=%.1fms | req=%s | req_id=%s",
                method,
                full_path,
                user_id,
                auth_mode,
                elapsed_ms,
                request_preview,
                request_id,
            )
            raise

        elapsed_ms = (time.perf_counter() - started_at) * 1000
        logger.info(
            "API %s %s | status=%s | user=%s | auth=%s | t=%.1fms | req=%s | req_id=%s",
            method,
            full_path,
            response.status_code,
            user_id,
            auth_mode,
            elapsed_ms,
            request_preview,
            request_id,
        )
        response.headers["X-Request-Id"] = request_id
        return response


logging.getLogger("uvicorn.access").disabled = True
logging.getLogger("httpx").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Credits API starting | env=%s", settings.app_env)
    yield
    logger.info("Credits API shutting down")


app = FastAPI(title="Credits API", version="0.1.0", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.add_middleware(SlowAPIMiddleware)
app.add_middleware(ApiAuditMiddleware)

if settings.cors_origins():
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-User-Id", "X-User-Email", "X-Internal-Api-Key"],
    )

app.include_router(health.router)
app.include_router(users.router)
app.include_router(credits_router.router)
app.include_router(usage.router)
app.include_router(payments.router)
app.include_router(admin.router)
app.include_router(cron.router)
