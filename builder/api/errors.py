"""Translation of service errors into HTTP errors."""

from fastapi import HTTPException, status

from builder.core.errors import (
    ConfigurationError,
    GitHubError,
    InvalidTransitionError,
    NotFoundError,
    PullRequestError,
    SandboxUnavailableError,
    ValidationError,
)

_STATUS_CODES = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (ConfigurationError, status.HTTP_400_BAD_REQUEST),
    (PullRequestError, status.HTTP_400_BAD_REQUEST),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (SandboxUnavailableError, status.HTTP_410_GONE),
    (GitHubError, status.HTTP_502_BAD_GATEWAY),
]

# Errors route handlers translate; anything else propagates as a 500
SERVICE_ERRORS = tuple(cls for cls, _ in _STATUS_CODES)


def http_error(exc: Exception) -> HTTPException:
    """HTTPException for a service error, keeping its message as the detail."""
    for cls, code in _STATUS_CODES:
        if isinstance(exc, cls):
            return HTTPException(status_code=code, detail=str(exc))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error"
    )
