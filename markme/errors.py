from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class InvalidTimezoneError(ApiError):
    def __init__(self, timezone_name: str | None):
        super().__init__(
            status_code=422,
            code="INVALID_TIMEZONE",
            message=f"Unknown timezone: {timezone_name!r}.",
        )
        self.timezone_name = timezone_name


class NoActiveSessionError(ApiError):
    def __init__(self, message: str = "No active session to sign out"):
        super().__init__(status_code=400, code="NO_ACTIVE_SESSION", message=message)


class SessionAlreadyClosedError(ApiError):
    def __init__(self, session_id: int):
        super().__init__(
            status_code=409,
            code="SESSION_ALREADY_CLOSED",
            message="Session is already signed out.",
        )
        self.session_id = session_id


class SignOutBeforeSignInError(ApiError):
    def __init__(self, session_id: int | None = None):
        super().__init__(
            status_code=409,
            code="SIGN_OUT_BEFORE_SIGN_IN",
            message="Sign-out time cannot be earlier than sign-in time.",
        )
        self.session_id = session_id


class NotFoundError(ApiError):
    def __init__(self, code: str, message: str):
        super().__init__(status_code=404, code=code, message=message)


class PersistenceError(ApiError):
    def __init__(self, operation: str):
        super().__init__(status_code=500, code="PERSISTENCE_ERROR", message="Server error")
        self.operation = operation


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)
