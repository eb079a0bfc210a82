"""Error codes raised by the record store and the identity provider."""

from enum import Enum


class ErrorCode(str, Enum):
    """Codes surfaced to callers so they can branch on the failure kind."""

    UNIQUE_VIOLATION = "23505"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INVALID = "invalid"
    INTERNAL = "internal"

    INVALID_EMAIL = "invalid_email"
    USER_NOT_FOUND = "user_not_found"
    RATE_LIMITED = "rate_limited"
    INVALID_CODE = "invalid_code"
    CODE_EXPIRED = "code_expired"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    DELIVERY_FAILED = "delivery_failed"


class HachError(Exception):
    """Base error with code and user-safe message."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class StoreError(HachError):
    """Raised by the record store."""

    @property
    def is_unique_violation(self) -> bool:
        return self.code == ErrorCode.UNIQUE_VIOLATION


class AuthError(HachError):
    """Raised by the identity provider."""


class ValidationError(HachError):
    """Raised when input fails checks before it reaches the store."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.INVALID, message)
