"""Typed failures raised by the catalog services."""

from __future__ import annotations


class CatalogError(Exception):
    """Base class for every failure surfaced by the catalog subsystem."""

    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class InvalidInputError(CatalogError, ValueError):
    """Raised when a caller passes an empty id or key."""


class TransportError(CatalogError):
    """The remote API could not be reached or the request timed out."""

    retryable = True


class InvalidResponseError(CatalogError):
    """The remote API answered with a non-2xx status."""

    retryable = True

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DecodingError(CatalogError):
    """The remote payload did not match the expected structure."""

    retryable = True


class NotFoundError(CatalogError, KeyError):
    """A record is logically absent, e.g. an empty detail array."""

    def __str__(self) -> str:
        return self.message


class PersistenceError(CatalogError):
    """A local read or write against the key-value store failed."""


class CatalogUnavailableError(CatalogError):
    """Every remote catalog source failed; stale data should be preferred."""

    retryable = True

    def __init__(self, message: str, causes: list[CatalogError] | None = None):
        super().__init__(message)
        self.causes = list(causes or [])


REMOTE_ERRORS: tuple[type[CatalogError], ...] = (
    TransportError,
    InvalidResponseError,
    DecodingError,
)
