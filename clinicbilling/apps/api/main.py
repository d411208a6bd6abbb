from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from clinicbilling.apps.api.errors import (
    billing_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from clinicbilling.apps.api.response import API_VERSION
from clinicbilling.apps.api.routes.admin import router as admin_router
from clinicbilling.apps.api.routes.catalog import router as catalog_router
from clinicbilling.apps.api.routes.entitlements import router as entitlements_router
from clinicbilling.apps.api.routes.health import router as health_router
from clinicbilling.apps.api.routes.subscription import router as subscription_router
from clinicbilling.apps.api.routes.webhooks import router as webhooks_router
from clinicbilling.core.config import get_settings
from clinicbilling.core.errors import BillingError
from clinicbilling.core.logging import configure_logging
from clinicbilling.domain.features import validate_feature_map
from clinicbilling.services.telemetry import record_request


def create_app() -> FastAPI:
    configure_logging()
    # Refuse to serve with an incomplete feature map.
    validate_feature_map()
    app = FastAPI(title="Clinic Billing API", version=API_VERSION)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(BillingError)
    async def _billing_exception_handler(request: Request, exc: BillingError):
        return await billing_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    # Versioned billing routes.
    app.include_router(catalog_router, prefix=f"/{API_VERSION}")
    app.include_router(subscription_router, prefix=f"/{API_VERSION}")
    app.include_router(entitlements_router, prefix=f"/{API_VERSION}")
    app.include_router(admin_router, prefix=f"/{API_VERSION}")
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    # Load balancer probes use the bare path.
    app.include_router(health_router, include_in_schema=False)

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title=f"{get_settings().app_name} v1")

    return app


app = create_app()
