"""
Application error model.

Domain code raises AppError with a kind; the RPC layer translates the kind
to a transport status exactly once, at the handler boundary.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Transport-independent error categories."""
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    BAD_REQUEST = "bad_request"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    INTERNAL = "internal"
    UNIMPLEMENTED = "unimplemented"


class AppError(Exception):
    """
    Domain error carrying an ErrorKind.

    Attributes:
        kind: Error category
        message: Human-readable message (safe to return to callers)
        cause: Underlying exception, if any (never returned to callers)
    """

    def __init__(self, kind: ErrorKind, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.cause = cause

    def __repr__(self) -> str:
        return f"AppError(kind={self.kind.value!r}, message={self.message!r})"


class ConfigError(Exception):
    """Fatal configuration problem detected at startup."""


def not_found(message: str) -> AppError:
    return AppError(ErrorKind.NOT_FOUND, message)


def conflict(message: str) -> AppError:
    return AppError(ErrorKind.CONFLICT, message)


def bad_request(message: str) -> AppError:
    return AppError(ErrorKind.BAD_REQUEST, message)


def unauthorized(message: str) -> AppError:
    return AppError(ErrorKind.UNAUTHORIZED, message)


def forbidden(message: str) -> AppError:
    return AppError(ErrorKind.FORBIDDEN, message)


def internal(message: str, cause: Optional[BaseException] = None) -> AppError:
    return AppError(ErrorKind.INTERNAL, message, cause)


def unimplemented(message: str = "not implemented") -> AppError:
    return AppError(ErrorKind.UNIMPLEMENTED, message)


def _is_kind(err: BaseException, kind: ErrorKind) -> bool:
    return isinstance(err, AppError) and err.kind == kind


def is_not_found(err: BaseException) -> bool:
    return _is_kind(err, ErrorKind.NOT_FOUND)


def is_conflict(err: BaseException) -> bool:
    return _is_kind(err, ErrorKind.CONFLICT)


def is_bad_request(err: BaseException) -> bool:
    return _is_kind(err, ErrorKind.BAD_REQUEST)


def is_unauthorized(err: BaseException) -> bool:
    return _is_kind(err, ErrorKind.UNAUTHORIZED)


def is_forbidden(err: BaseException) -> bool:
    return _is_kind(err, ErrorKind.FORBIDDEN)


def is_internal(err: BaseException) -> bool:
    """Anything that is not a typed AppError counts as internal."""
    if not isinstance(err, AppError):
        return True
    return err.kind == ErrorKind.INTERNAL
