"""Exceptions raised across the session store and the protocol orchestrator."""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every error the authentication core reports."""

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation

    def __str__(self) -> str:
        message = super().__str__()
        if self.operation:
            return f"{self.operation}: {message}"
        return message


class AuthenticationFailed(AuthError):
    """Generic login failure.

    Callers outside the core only ever see this class for a failed login so
    that an unknown user, an expired challenge and a wrong response are
    indistinguishable.
    """


class NotFound(AuthenticationFailed):
    """Entity is absent or has expired. The two cases are never told apart."""


class VerificationFailed(AuthenticationFailed):
    """The proof engine rejected the response; the challenge is still live."""


class DuplicateUser(AuthError):
    """The username is already registered."""


class InvalidInput(AuthError):
    """A username, commitment or response value is malformed."""


class StoreUnavailable(AuthError):
    """The backing store cannot be reached. Transient and retryable."""


class StoreCorruption(AuthError):
    """A persisted value could not be decoded."""


__all__ = [
    "AuthError",
    "AuthenticationFailed",
    "DuplicateUser",
    "InvalidInput",
    "NotFound",
    "StoreCorruption",
    "StoreUnavailable",
    "VerificationFailed",
]
