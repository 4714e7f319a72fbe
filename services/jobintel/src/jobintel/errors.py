from __future__ import annotations


class JobIntelError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(JobIntelError, ValueError):
    status_code = 422


class NotFoundError(JobIntelError, KeyError):
    status_code = 404

    def __str__(self) -> str:
        return self.message


class ForbiddenError(JobIntelError):
    status_code = 403


class AuthorizationError(JobIntelError):
    status_code = 401


class SourceFetchError(JobIntelError):
    """A worker could not reach or parse its source."""

    status_code = 502


class StoreUnavailable(JobIntelError):
    status_code = 503
