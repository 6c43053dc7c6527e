import logging
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("storefront.errors")


class AppError(Exception):
    """Error carrying a user-facing (French) message and an HTTP status."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class BadRequestError(AppError):
    status_code = 400


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    status_code = 409


class UpstreamError(AppError):
    """Payment processor, mail provider or database failure."""

    status_code = 500


def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("AppError %s path=%s: %s", exc.status_code, request.url.path, exc.message)
    else:
        logger.info("AppError %s path=%s", exc.status_code, request.url.path)
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


def http_exception_handler(request: Request, exc: StarletteHTTPException):
    # exc.detail is meant for clients; never log request bodies here
    logger.info("HTTPException %s path=%s", exc.status_code, request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.info("ValidationError path=%s", request.url.path)
    return JSONResponse(status_code=422, content={"message": "Requête invalide"})


def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("UnhandledException path=%s", request.url.path)
    return JSONResponse(
        status_code=500, content={"message": "Erreur interne du serveur"}
    )
