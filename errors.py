"""
Error Module

Failure currency of the container management layer and the classifier that
turns opaque engine failures into a fixed set of semantic kinds.
"""

from enum import Enum
from typing import Any, Optional

from docker.errors import APIError, ImageNotFound, NotFound
from pydantic import ValidationError


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    IMAGE_NOT_FOUND = "image_not_found"
    ALREADY_EXISTS = "already_exists"
    RESOURCE_CONSTRAINT = "resource_constraint"
    GENERIC = "generic"


# Last-resort matchers, checked in order against the engine's message text
_MESSAGE_PATTERNS = (
    ("No such container", ErrorKind.NOT_FOUND),
    ("No such image", ErrorKind.IMAGE_NOT_FOUND),
    ("Conflict", ErrorKind.ALREADY_EXISTS),
    ("Resource constraints exceeded", ErrorKind.RESOURCE_CONSTRAINT),
)


class InvalidInputError(ValueError):
    """Caller supplied a value the engine request cannot be built from"""


class ClientError(Exception):
    """Failure of a single engine client operation.

    Carries the operation name (``connect``, ``create_container``, ``inspect``
    ...), the underlying failure and an optional human readable detail.
    """

    def __init__(self, op: str, cause: BaseException, details: str = ""):
        self.op = op
        self.cause = cause
        self.details = details
        super().__init__(self._format())

    def _format(self) -> str:
        if self.details:
            return f"docker {self.op} failed: {self.cause} ({self.details})"
        return f"docker {self.op} failed: {self.cause}"

    @property
    def kind(self) -> "ErrorKind":
        return classify(self)


def _unwrap(err: BaseException) -> BaseException:
    while isinstance(err, ClientError):
        err = err.cause
    return err


def _classify_status(err: APIError) -> Optional[ErrorKind]:
    if isinstance(err, ImageNotFound):
        return ErrorKind.IMAGE_NOT_FOUND
    status = err.status_code
    if isinstance(err, NotFound) or status == 404:
        # The engine answers 404 for both missing containers and missing images
        if "no such image" in str(err.explanation or "").lower():
            return ErrorKind.IMAGE_NOT_FOUND
        return ErrorKind.NOT_FOUND
    if status == 409:
        return ErrorKind.ALREADY_EXISTS
    return None


def _classify_message(message: str) -> ErrorKind:
    for needle, kind in _MESSAGE_PATTERNS:
        if needle in message:
            return kind
    return ErrorKind.GENERIC


def classify(err: Optional[BaseException]) -> Optional[ErrorKind]:
    """Map an engine failure (raw or wrapped in ClientError) to an ErrorKind.

    Structured information (HTTP status, SDK exception type) wins; the
    message text is only consulted when it gives no answer. Returns None
    for None.
    """
    if err is None:
        return None
    cause = _unwrap(err)
    if isinstance(cause, APIError):
        kind = _classify_status(cause)
        if kind is not None:
            return kind
        return _classify_message(str(cause.explanation or cause))
    return _classify_message(str(cause))


def is_not_found(err: Optional[BaseException]) -> bool:
    return classify(err) == ErrorKind.NOT_FOUND


def is_image_not_found(err: Optional[BaseException]) -> bool:
    return classify(err) == ErrorKind.IMAGE_NOT_FOUND


def is_conflict(err: Optional[BaseException]) -> bool:
    return classify(err) == ErrorKind.ALREADY_EXISTS


def is_resource_constraint(err: Optional[BaseException]) -> bool:
    return classify(err) == ErrorKind.RESOURCE_CONSTRAINT


def is_validation_error(err: Optional[BaseException]) -> bool:
    """True for rejected input: model validation or an unparsable request field."""
    if err is None:
        return False
    return isinstance(_unwrap(err), (InvalidInputError, ValidationError))


# HTTP layer exceptions
class ApiError(Exception):
    """Error surfaced to API callers with a status code and machine code"""

    def __init__(
        self,
        message: str,
        error_code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        details: Any = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)

    @classmethod
    def from_client_error(cls, err: ClientError, message: str) -> "ApiError":
        if is_validation_error(err):
            return cls(message, "VALIDATION_ERROR", 400, str(err))
        kind = classify(err)
        status_code, error_code = _KIND_STATUS[kind]
        return cls(message, error_code, status_code, str(err))


_KIND_STATUS = {
    ErrorKind.NOT_FOUND: (404, "CONTAINER_NOT_FOUND"),
    ErrorKind.IMAGE_NOT_FOUND: (404, "IMAGE_NOT_FOUND"),
    ErrorKind.ALREADY_EXISTS: (409, "CONFLICT"),
    ErrorKind.RESOURCE_CONSTRAINT: (422, "RESOURCE_CONSTRAINT"),
    ErrorKind.GENERIC: (500, "ENGINE_ERROR"),
}


class NotFoundError(ApiError):
    def __init__(self, message: str = "Container not found"):
        super().__init__(message, "CONTAINER_NOT_FOUND", 404)


class AuthenticationError(ApiError):
    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message, "AUTH_ERROR", 401)


class AuthorizationError(ApiError):
    def __init__(self, message: str = "Access denied"):
        super().__init__(message, "FORBIDDEN", 403)
