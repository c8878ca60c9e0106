from starlette import status


class CohortLabError(Exception):
    """Base class for errors surfaced by the assignment core.

    Every error carries an HTTP-style ``code`` so the API layer can return a
    structured ``{"code", "detail"}`` body without guessing.
    """

    code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "detail": self.message}


class NotFoundError(CohortLabError):
    code = status.HTTP_404_NOT_FOUND


class StateError(CohortLabError):
    code = status.HTTP_409_CONFLICT


class InstanceFullError(StateError):
    """Raised when an instance has reached its capacity."""


class AuthorizationError(CohortLabError):
    code = status.HTTP_403_FORBIDDEN


class ExternalServiceError(CohortLabError):
    """Failure reported by a marketplace or email client. Never swallowed."""

    code = status.HTTP_502_BAD_GATEWAY
