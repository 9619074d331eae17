# backend/siparis_nlu/main.py
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi  # << Swagger özelleştirme için

from .core.config import settings
from .core.logging_config import get_logger, setup_logging
from .core.middleware import DefaultTenantMiddleware, ErrorMiddleware, register_error_handlers
from .db.database import connect_all, disconnect_all
from .db.schema import create_tables
from .routers import all_routers
from .services.container import ServiceContainer, build_container

# Setup logging first, before anything else
setup_logging(log_level=settings.LOG_LEVEL, json_logs=settings.ENV == "prod")
logger = get_logger(__name__)


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Uygulamayı kurar. Testler hazır bir ServiceContainer verebilir
    (sahte dil modeli, bellek içi intent deposu).
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.VERSION,
        docs_url="/docs" if settings.ENV != "prod" else None,
        redoc_url="/redoc" if settings.ENV != "prod" else None,
    )
    app.state.container = container or build_container(settings)

    # ---- Hata eşlemeleri ----
    register_error_handlers(app)

    # ---- Middleware'ler (son eklenen ilk çalışır) ----
    app.add_middleware(DefaultTenantMiddleware)
    app.add_middleware(ErrorMiddleware)
    # CORS middleware EN SON eklenmeli (en önce çalışmalı - OPTIONS preflight için)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---- DB Yaşam Döngüsü ----
    @app.on_event("startup")
    async def on_startup():
        logger.info("startup", env=settings.ENV)
        database = app.state.container.database
        if database is None:
            logger.info("startup_intent_store", store="memory")
            return
        await connect_all(database)
        logger.info("startup_database_connected")
        await create_tables(database)

    @app.on_event("shutdown")
    async def on_shutdown():
        database = app.state.container.database
        if database is not None:
            await disconnect_all(database)
        logger.info("shutdown")

    # ---- Router Kayıtları ----
    for router in all_routers:
        app.include_router(router)

    # ---- Root kısa bilgi ----
    @app.get("/")
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.VERSION,
            "env": settings.ENV,
            "docs": "/docs",
            "health": "/health",
        }

    # ==== Swagger/OpenAPI: X-Tenant-Id tek seferde tanımlansın, UI hatırlasın ====
    def custom_openapi():
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title=app.title,
            version=app.version,
            description=app.description,
            routes=app.routes,
        )
        components = schema.setdefault("components", {}).setdefault("securitySchemes", {})
        components["X-Tenant-Id"] = {
            "type": "apiKey",
            "in": "header",
            "name": "X-Tenant-Id",
            "description": "Tenant seçimi. Dev ortamında boş bırakılırsa 'default' kullanılır.",
        }
        schema["security"] = [{"X-Tenant-Id": []}]
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi
    return app


app = create_app()
