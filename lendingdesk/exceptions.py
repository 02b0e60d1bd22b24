from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

logger = logging.getLogger(__name__)


class LibraryException(Exception):
    """Base exception for library-related errors."""

    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# 400: validation and conflict class


class InvalidBookDataError(LibraryException):
    def __init__(self, message: str):
        super().__init__(f"Invalid book data: {message}")


class EmailAlreadyRegisteredError(LibraryException):
    def __init__(self, email: str):
        self.email = email
        super().__init__("User already registered")


class DuplicateCategoryError(LibraryException):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Category '{name}' already exists")


class BookNotAvailableError(LibraryException):
    def __init__(self, book_id: str):
        self.book_id = book_id
        super().__init__(f"Book with ID {book_id} is not available for borrowing")


class ResourceInUseError(LibraryException):
    def __init__(self, resource: str, resource_id: str, reason: str):
        self.resource_id = resource_id
        super().__init__(f"{resource} with ID {resource_id} cannot be deleted: {reason}")


class InventoryConflictError(LibraryException):
    def __init__(self, book_id: str, reason: str):
        self.book_id = book_id
        super().__init__(f"Copy counts for book {book_id} {reason}")


# 401: credentials


class InvalidCredentialsError(LibraryException):
    status_code = 401

    def __init__(self):
        super().__init__("Invalid email or password")


class RefreshTokenError(LibraryException):
    status_code = 401


# 403: access token gate


class AccessTokenError(LibraryException):
    status_code = 403


# 404: missing entities


class NotFoundError(LibraryException):
    status_code = 404
    resource = "Resource"

    def __init__(self, resource_id: str):
        self.resource_id = resource_id
        super().__init__(f"{self.resource} with ID {resource_id} not found")


class UserNotFoundError(NotFoundError):
    def __init__(self, email: str):
        self.resource_id = email
        LibraryException.__init__(self, "User not found")


class BookNotFoundError(NotFoundError):
    resource = "Book"


class CategoryNotFoundError(NotFoundError):
    resource = "Category"


class ReaderNotFoundError(NotFoundError):
    resource = "Reader"


class LendingNotFoundError(NotFoundError):
    resource = "Lending"


class LendingAlreadyReturnedError(LendingNotFoundError):
    def __init__(self, lending_id: str):
        self.resource_id = lending_id
        LibraryException.__init__(
            self, f"Lending with ID {lending_id} not found or already returned"
        )


# 5xx


class DatabaseError(LibraryException):
    status_code = 500

    def __init__(self, operation: str, details: str):
        super().__init__(f"Database error during {operation}: {details}")


class MessagingUnavailableError(LibraryException):
    status_code = 503

    def __init__(self):
        super().__init__("Messaging is not configured")


# Exception handlers

INTERNAL_ERROR_DETAIL = "An unexpected error occurred. Please contact support."


def _error_response(status_code: int, detail, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail, **extra})


async def library_exception_handler(request: Request, exc: LibraryException):
    logger.error(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")
    return _error_response(exc.status_code, exc.message)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = {}
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"] if part != "body")
        errors[field or "body"] = error["msg"]
    logger.error(f"{request.method} {request.url.path} rejected: {errors}")
    return _error_response(
        400, "Invalid request parameters. Please check your input.", errors=errors
    )


async def starlette_http_handler(request: Request, exc: StarletteHTTPException):
    # Unknown routes and disallowed methods.
    logger.error(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    if isinstance(exc, ResponseValidationError):
        logger.error(f"Response for {request.url.path} failed validation: {exc.errors()}")
    else:
        logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    return _error_response(500, INTERNAL_ERROR_DETAIL)


def add_exception_handlers(app: FastAPI):
    handlers = {
        LibraryException: library_exception_handler,
        RequestValidationError: validation_exception_handler,
        StarletteHTTPException: starlette_http_handler,
        ResponseValidationError: unhandled_exception_handler,
        Exception: unhandled_exception_handler,
    }
    for exc_class, handler in handlers.items():
        app.add_exception_handler(exc_class, handler)
