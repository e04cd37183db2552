"""
shared/utils/exceptions.py
Domain errors raised by the booking core. Each carries a stable `code`
that the app-level handler returns alongside `detail`.
"""

from typing import Optional

from fastapi import HTTPException, status


class AppError(HTTPException):
    """Base application error."""

    code = "error"

    def __init__(
        self,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail: str = "An unexpected error occurred",
        headers: Optional[dict] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)


class NotFound(AppError):
    code = "not_found"

    def __init__(self, resource: str = "Resource", identifier: Optional[object] = None):
        detail = f"{resource} not found"
        if identifier is not None:
            detail = f"{resource} '{identifier}' not found"
        super().__init__(status.HTTP_404_NOT_FOUND, detail)


class BadRequest(AppError):
    code = "bad_request"

    def __init__(self, detail: str = "Invalid request"):
        super().__init__(status.HTTP_400_BAD_REQUEST, detail)


class Unauthorized(AppError):
    code = "unauthorized"

    def __init__(self, detail: str = "Authentication required"):
        super().__init__(
            status.HTTP_401_UNAUTHORIZED,
            detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class Forbidden(AppError):
    code = "forbidden"

    def __init__(self, detail: str = "You are not allowed to perform this action"):
        super().__init__(status.HTTP_403_FORBIDDEN, detail)


class InvalidTransition(AppError):
    code = "invalid_transition"

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(
            status.HTTP_409_CONFLICT,
            f"Cannot transition booking from '{current}' to '{requested}'",
        )


class Conflict(AppError):
    code = "conflict"

    def __init__(self, detail: str = "The resource was modified concurrently"):
        super().__init__(status.HTTP_409_CONFLICT, detail)


class NoProviderAvailable(AppError):
    code = "no_provider_available"

    def __init__(self, detail: str = "No eligible provider is available for this booking"):
        super().__init__(status.HTTP_409_CONFLICT, detail)


class StoreUnavailable(AppError):
    code = "store_unavailable"

    def __init__(self, detail: str = "The booking store is temporarily unavailable"):
        super().__init__(status.HTTP_503_SERVICE_UNAVAILABLE, detail)
