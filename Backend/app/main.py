# Backend/app/main.py
from __future__ import annotations

# --- ensure project root is on sys.path so `api.*` and `app.*` are both importable ---
import sys
from pathlib import Path
THIS_FILE = Path(__file__).resolve()
BACKEND_ROOT = THIS_FILE.parents[1]  # .../Backend
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))
# -------------------------------------------------------------------------

import uuid
from typing import Dict, Optional

from fastapi import FastAPI, Response, APIRouter, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# --- Logging & request-id ---
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response as StarletteResponse

from app.config import settings
from app.core.logging import configure_logging, logger
from app.core.request_id import set_request_id, clear_request_id
from services.db_service import close_db_pool, init_db_pool
from services.nearby_engine import close_nearby_engine

# Routers from the top-level `api/routers` package:
from api.routers.nearby import router as nearby_router
from api.routers.admin_nearby import router as admin_nearby_router

# Configureer logging voor de API
configure_logging(service_name="api")

app = FastAPI(
    title="Nearby Engine - Backend",
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

ALLOWED_ORIGINS = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]


def _cors_headers(origin: Optional[str]) -> Dict[str, str]:
    if origin and origin in ALLOWED_ORIGINS:
        return {
            "Access-Control-Allow-Origin": origin,
            "Access-Control-Allow-Credentials": "true",
            "Vary": "Origin",
        }
    return {}


@app.on_event("startup")
async def _startup_db_pool() -> None:
    await init_db_pool()


@app.on_event("shutdown")
async def _shutdown_cleanup() -> None:
    # Pending scheduled runs are cancelled; cron picks the queue up again.
    await close_nearby_engine()
    await close_db_pool()


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        req_id = request.headers.get("x-request-id") or request.headers.get("X-Request-Id")
        if not req_id:
            req_id = uuid.uuid4().hex
        set_request_id(req_id)

        logger.info("request_started", method=request.method, path=str(request.url.path))
        try:
            response: StarletteResponse = await call_next(request)
        except Exception as exc:
            logger.error("request_exception", error=str(exc.__class__.__name__))
            clear_request_id()
            raise
        logger.info("request_ended", status_code=response.status_code)
        response.headers["X-Request-Id"] = req_id
        clear_request_id()
        return response


# --- CORS ---
# First added = outermost; CORS headers end up on every response.
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS", "HEAD"],
    allow_headers=["*"],
    expose_headers=["Content-Length", "X-Request-Id"],
)

app.add_middleware(RequestIdMiddleware)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    origin = request.headers.get("origin") or request.headers.get("Origin")
    headers = dict(exc.headers or {})
    headers.update(_cors_headers(origin))
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=headers)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    origin = request.headers.get("origin") or request.headers.get("Origin")
    headers = _cors_headers(origin)
    logger.exception("unhandled_exception", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"}, headers=headers)


# --- Health endpoints ---
@app.get("/")
async def root():
    return {"ok": True, "app": "Nearby Engine", "message": "Up & running"}


@app.head("/")
async def root_head():
    return Response(status_code=200)


@app.get("/healthz")
async def healthz():
    return {"status": "healthy"}


@app.get("/health")
async def health():
    return {"ok": True, "version": settings.APP_VERSION}


# --- API v1 router ---
api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(nearby_router)
api_v1_router.include_router(admin_nearby_router)

app.include_router(api_v1_router)
