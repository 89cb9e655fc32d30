"""
Error taxonomy for the NGO API and the failure boundary every route runs in.

Every error leaves the service as ``{"error": "<message>"}``.
"""
import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional

from bson.errors import InvalidId
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ApiError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(ApiError):
    """One or more field rules failed; ``messages`` keeps them individually."""

    status_code = 400

    def __init__(self, messages):
        if isinstance(messages, str):
            messages = [messages]
        self.messages: List[str] = list(messages)
        super().__init__(", ".join(self.messages))


class InvalidIdentifier(ApiError):
    status_code = 400


class DuplicateField(ApiError):
    status_code = 400


class Unauthenticated(ApiError):
    status_code = 401


class Forbidden(ApiError):
    status_code = 403


class NotFound(ApiError):
    status_code = 404


@contextmanager
def failure_boundary(message: str, invalid_id: Optional[str] = None) -> Iterator[None]:
    """Classify whatever escapes a route body.

    ``message`` is the generic text for unclassified failures, ``invalid_id``
    the text used when an identifier turns out not to be an ObjectId.
    """
    try:
        yield
    except ApiError:
        raise
    except InvalidId:
        raise InvalidIdentifier(invalid_id or "Invalid ID format")
    except DuplicateKeyError:
        raise DuplicateField("Email already exists")
    except Exception as e:
        logger.exception("%s: %s", message, e)
        raise ApiError(message) from e


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def api_error_handler(request: Request, exc: ApiError):
    return error_response(exc.status_code, exc.message)


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return error_response(404, "Route not found")
    return error_response(exc.status_code, str(exc.detail))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p != "body"]
        field = ".".join(loc)
        messages.append(f"{field}: {err.get('msg')}" if field else err.get("msg"))
    return error_response(400, ", ".join(messages) or "Invalid request body")


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "Something went wrong!")


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
