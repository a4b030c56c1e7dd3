from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from webengine.apps.api.errors import register_exception_handlers
from webengine.apps.api.response import API_VERSION
from webengine.apps.api.routes.auth import router as auth_router
from webengine.apps.api.routes.backups import router as backups_router
from webengine.apps.api.routes.comments import router as comments_router
from webengine.apps.api.routes.contact import router as contact_router
from webengine.apps.api.routes.health import router as health_router
from webengine.apps.api.routes.moderation import router as moderation_router
from webengine.apps.api.routes.portfolio import router as portfolio_router
from webengine.apps.api.routes.settings_admin import router as settings_admin_router
from webengine.apps.api.routes.tickets import router as tickets_router
from webengine.core.config import get_settings
from webengine.core.logging import configure_logging


_ROUTERS = (
    health_router,
    auth_router,
    backups_router,
    settings_admin_router,
    moderation_router,
    portfolio_router,
    comments_router,
    tickets_router,
    contact_router,
)
# Endpoints reachable without a session cookie.
_PUBLIC_PATHS = {"/v1/health", "/v1/auth/csrf", "/v1/auth/login", "/v1/auth/register", "/v1/contact"}


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=f"{settings.app_name} API", docs_url=None, redoc_url=None)

    @app.middleware("http")
    async def assign_request_id(request: Request, call_next):  # type: ignore[override]
        request.state.request_id = request.headers.get("X-Request-Id") or uuid4().hex
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request.state.request_id)
        return response

    register_exception_handlers(app)
    for router in _ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")

    # Serve versioned OpenAPI JSON and docs endpoints for v1 consumers.
    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title=f"{settings.app_name} API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Document the session cookie and CSRF header used by every unsafe request.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title=f"{settings.app_name} API",
            version=API_VERSION,
            routes=app.routes,
        )
        schema["servers"] = [{"url": settings.site_url}]
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["SessionCookie"] = {
            "type": "apiKey",
            "in": "cookie",
            "name": settings.session_cookie_name,
        }
        security_schemes["CsrfHeader"] = {"type": "apiKey", "in": "header", "name": "X-CSRF-Token"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS or path.startswith("/v1/public"):
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"SessionCookie": [], "CsrfHeader": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
