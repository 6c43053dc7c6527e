import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from storefront.core.config import settings
from storefront.routers.auth import router as auth_router
from storefront.routers.payments import router as payments_router
from storefront.routers.webhooks import router as webhooks_router
from storefront.routers.downloads import router as downloads_router
from storefront.routers.invoices import router as invoices_router

from storefront.core.logging import configure_logging, new_request_id, request_id_ctx
from storefront.core.errors import (
    AppError,
    app_error_handler,
    http_exception_handler,
    validation_exception_handler,
    unhandled_exception_handler,
)

configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger("storefront")


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("x-request-id") or new_request_id()
        token = request_id_ctx.set(rid)
        try:
            response = await call_next(request)
            response.headers["x-request-id"] = rid
            return response
        finally:
            request_id_ctx.reset(token)


app = FastAPI(title="Storefront API")
app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


app.include_router(auth_router)
app.include_router(payments_router)
app.include_router(webhooks_router)
app.include_router(downloads_router)
app.include_router(invoices_router)


app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

logger.info(
    "storefront started env=%s stripe_mode=%s webhook_secret=%s",
    settings.ENV,
    settings.stripe_mode,
    settings.active_webhook_secret_source or "missing",
)


@app.get("/health")
def health():
    return {"ok": True}
