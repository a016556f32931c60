import logging
from typing import Optional

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from civic_identity.core.config import settings

logger = logging.getLogger(__name__)


class VerificationError(Exception):
    """Base for errors reported to the client as {"success": false, "message": ...}"""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class StepValidationError(VerificationError):
    status_code = status.HTTP_400_BAD_REQUEST


class VerificationNotFound(VerificationError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, message: str = "Verification not found"):
        super().__init__(message)


class InvalidTransition(VerificationError):
    status_code = status.HTTP_409_CONFLICT


class ConcurrentUpdate(VerificationError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message: str = "Verification was modified by another request. Please retry."):
        super().__init__(message)


class OtpDeliveryFailed(VerificationError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message: str = "Could not send the verification email. Please try again later."):
        super().__init__(message)


class RateLimited(VerificationError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


async def verification_exception_handler(_: Request, exc: VerificationError):
    headers = None
    if isinstance(exc, RateLimited) and exc.retry_after is not None:
        headers = {"Retry-After": str(exc.retry_after)}

    logger.info("Verification request refused [%s]: %s", exc.status_code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message},
        headers=headers,
    )


async def http_exception_handler(_: Request, exc: StarletteHTTPException):
    """
    Keeps every manual 'raise HTTPException' in the same JSON shape
    as the domain errors.
    """
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"success": False, "message": "Invalid request", "errors": jsonable_encoder(exc.errors())},
    )


async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc, exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "message": "An unexpected internal server error occurred. Please contact support.",
            "error_details": str(exc) if settings.is_development_mode else None,
        },
    )


def register_exception_handlers(app) -> None:
    app.add_exception_handler(VerificationError, verification_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
