class ServiceError(Exception):
    """Base class for errors surfaced to callers with a stable tag."""

    tag = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError, ValueError):
    tag = "validation"


class NotFoundError(ServiceError, LookupError):
    tag = "not_found"


class ConflictError(ServiceError):
    tag = "conflict"


class PermissionDeniedError(ServiceError):
    tag = "permission"


class MalformedTimestampError(ServiceError, ValueError):
    tag = "malformed_timestamp"


class DependencyError(ServiceError):
    tag = "dependency"


class AuthenticationError(ServiceError):
    tag = "unauthenticated"
