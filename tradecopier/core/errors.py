"""Exception taxonomy for the copier relay."""


class CopierError(Exception):
    """Base class for all relay errors."""


class ValidationFailed(CopierError):
    """Request is missing required fields or carries malformed values.

    Nothing is persisted and no event id is consumed.
    """


class AuthorizationFailed(CopierError):
    """Credential missing, unknown, expired or bound to another slave."""

    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code


class PersistenceError(CopierError):
    """Durable write of a record failed.

    Fatal for the current request only. The caller retries the identical
    request, which idempotent ingestion makes safe.
    """
