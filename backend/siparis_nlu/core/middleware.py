# backend/siparis_nlu/core/middleware.py
from fastapi import FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
import logging
import traceback

from .config import settings
from .errors import AlreadyRecorded, MenuExportError, MenuIndexStale, NluError, NotFound

logger = logging.getLogger(__name__)

DEFAULT_TENANT_ID = "default"


class DefaultTenantMiddleware(BaseHTTPMiddleware):
    """
    DEV ortamında: X-Tenant-Id yoksa "default" olarak enjekte eder.
    PROD ortamında: X-Tenant-Id yoksa 400 döner (yanlış konfigürasyonu erken yakalar).

    Public endpoint'ler (health, version, docs) için bypass edilir.
    """
    PUBLIC_PATHS = [
        "/health",
        "/version",
        "/docs",
        "/redoc",
        "/openapi.json",
    ]

    async def dispatch(self, request: Request, call_next):
        # OPTIONS preflight request'leri bypass (CORS için)
        if request.method == "OPTIONS":
            return await call_next(request)

        path = request.url.path
        if path == "/" or any(path.startswith(public_path) for public_path in self.PUBLIC_PATHS):
            return await call_next(request)

        if "x-tenant-id" in request.headers:
            return await call_next(request)

        if settings.ENV == "prod":
            return JSONResponse(
                {"ok": False, "error_code": "MISSING_TENANT_ID", "detail": "X-Tenant-Id header zorunlu (prod)."},
                status_code=400,
            )
        # dev: yoksa default ekle; scope['headers'] içine enjekte et (ASGI'de güvenli yöntem)
        request.scope["headers"] = list(request.scope.get("headers") or [])
        request.scope["headers"].append((b"x-tenant-id", DEFAULT_TENANT_ID.encode("utf-8")))
        return await call_next(request)


class ErrorMiddleware(BaseHTTPMiddleware):
    """
    Tüm beklenmeyen hataları tek biçimde döndürür.
    DEV: stack izini de ekler.
    """
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Unhandled exception in {request.method} {request.url.path}: {e}", exc_info=True)
            payload = {
                "ok": False,
                "error_code": "INTERNAL_ERROR",
                "detail": "Internal Server Error" if settings.ENV == "prod" else str(e),
            }
            if settings.ENV != "prod":
                payload["stack"] = traceback.format_exc()

            # CORS header'larını manuel olarak ekle (exception durumunda CORS middleware çalışmayabilir)
            headers = {}
            origin = request.headers.get("origin")
            if origin and (origin in settings.CORS_ORIGINS or "*" in settings.CORS_ORIGINS):
                headers["Access-Control-Allow-Origin"] = origin
            return JSONResponse(payload, status_code=500, headers=headers)


def _error_response(status_code: int, error_code: str, exc: Exception) -> JSONResponse:
    return JSONResponse({"ok": False, "error_code": error_code, "detail": str(exc)}, status_code=status_code)


def register_error_handlers(app: FastAPI) -> None:
    """NLU hata sınıflarını HTTP durum kodlarına eşler."""

    @app.exception_handler(NotFound)
    async def _not_found(request: Request, exc: NotFound):
        return _error_response(404, "NOT_FOUND", exc)

    @app.exception_handler(AlreadyRecorded)
    async def _already_recorded(request: Request, exc: AlreadyRecorded):
        return _error_response(409, "ALREADY_RECORDED", exc)

    @app.exception_handler(MenuIndexStale)
    async def _menu_stale(request: Request, exc: MenuIndexStale):
        return _error_response(409, "MENU_INDEX_STALE", exc)

    @app.exception_handler(MenuExportError)
    async def _menu_export(request: Request, exc: MenuExportError):
        return _error_response(422, "INVALID_MENU_EXPORT", exc)

    @app.exception_handler(NluError)
    async def _nlu_error(request: Request, exc: NluError):
        logger.error(f"Unhandled NLU error in {request.method} {request.url.path}: {exc}", exc_info=exc)
        return _error_response(500, "NLU_ERROR", exc)
