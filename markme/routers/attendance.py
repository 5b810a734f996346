from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request, status
from sqlalchemy.orm import Session

from markme.db import get_db
from markme.errors import ApiError
from markme.schemas import (
    AttendanceActionRequest,
    AttendanceActionResponse,
    AttendanceSessionRead,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordResetRequest,
    UserSummary,
)
from markme.security import (
    ROLE_ADMIN,
    ROLE_STAFF,
    create_access_token,
    ensure_login_attempt_allowed,
    register_login_failure,
    register_login_success,
    require_user,
    user_id_from_claims,
)
from markme.audit import client_ip
from markme.models import UserRole
from markme.services.attendance import (
    list_today_sessions,
    list_user_history,
    list_week_sessions,
    sign_in,
    sign_out,
)
from markme.services.attendance_store import AttendanceSessionSnapshot
from markme.services.timezones import TimezoneResolver, get_timezone_resolver
from markme.services.users import authenticate, reset_password

router = APIRouter(tags=["attendance"])

TIMEZONE_HEADERS = ("x-user-tz", "x-timezone")


def _requested_timezone(
    request: Request,
    payload: AttendanceActionRequest | None,
    query_timezone: str | None,
) -> str | None:
    if payload is not None and payload.timezone:
        return payload.timezone
    if query_timezone:
        return query_timezone
    for header in TIMEZONE_HEADERS:
        value = request.headers.get(header)
        if value:
            return value
    return None


def _session_read(snapshot: AttendanceSessionSnapshot) -> AttendanceSessionRead:
    return AttendanceSessionRead.model_validate(snapshot, from_attributes=True)


@router.post("/login", response_model=LoginResponse)
def login(
    payload: LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> LoginResponse:
    ip = client_ip(request)
    if ip:
        ensure_login_attempt_allowed(ip)

    user = authenticate(db, payload.email, payload.password)
    if user is None:
        if ip:
            register_login_failure(ip)
        raise ApiError(status_code=401, code="INVALID_CREDENTIALS", message="Invalid email or password.")

    if ip:
        register_login_success(ip)
    token, expires_in, _ = create_access_token(
        sub=str(user.id),
        role=ROLE_ADMIN if user.role == UserRole.ADMIN else ROLE_STAFF,
        name=user.name,
        email=user.email,
    )
    request.state.actor = "user"
    request.state.actor_id = str(user.id)
    return LoginResponse(
        token=token,
        expires_in=expires_in,
        user=UserSummary(id=user.id, name=user.name, email=user.email),
    )


@router.post("/reset-password", response_model=MessageResponse)
def reset_user_password(
    payload: PasswordResetRequest,
    db: Session = Depends(get_db),
) -> MessageResponse:
    reset_password(db, email=payload.email, new_password=payload.new_password)
    return MessageResponse(message="Password reset successful")


@router.post(
    "/attendance/signin",
    response_model=AttendanceActionResponse,
    status_code=status.HTTP_201_CREATED,
)
def attendance_sign_in(
    request: Request,
    payload: AttendanceActionRequest | None = Body(default=None),
    timezone: str | None = Query(default=None, max_length=64),
    claims: dict[str, Any] = Depends(require_user),
    resolver: TimezoneResolver = Depends(get_timezone_resolver),
    db: Session = Depends(get_db),
) -> AttendanceActionResponse:
    user_id = user_id_from_claims(claims)
    request.state.user_id = user_id
    session = sign_in(
        db,
        user_id=user_id,
        timezone_name=_requested_timezone(request, payload, timezone),
        resolver=resolver,
    )
    request.state.session_id = session.id
    return AttendanceActionResponse(message="Signed in successfully", attendance=_session_read(session))


@router.post("/attendance/signout", response_model=AttendanceActionResponse)
def attendance_sign_out(
    request: Request,
    payload: AttendanceActionRequest | None = Body(default=None),
    timezone: str | None = Query(default=None, max_length=64),
    claims: dict[str, Any] = Depends(require_user),
    resolver: TimezoneResolver = Depends(get_timezone_resolver),
    db: Session = Depends(get_db),
) -> AttendanceActionResponse:
    user_id = user_id_from_claims(claims)
    request.state.user_id = user_id
    session = sign_out(
        db,
        user_id=user_id,
        timezone_name=_requested_timezone(request, payload, timezone),
        resolver=resolver,
    )
    request.state.session_id = session.id
    return AttendanceActionResponse(message="Signed out successfully", attendance=_session_read(session))


@router.get("/attendance/today", response_model=list[AttendanceSessionRead])
def attendance_today(
    request: Request,
    timezone: str | None = Query(default=None, max_length=64),
    claims: dict[str, Any] = Depends(require_user),
    resolver: TimezoneResolver = Depends(get_timezone_resolver),
    db: Session = Depends(get_db),
) -> list[AttendanceSessionRead]:
    sessions = list_today_sessions(
        db,
        user_id=user_id_from_claims(claims),
        timezone_name=_requested_timezone(request, None, timezone),
        resolver=resolver,
    )
    return [_session_read(item) for item in sessions]


@router.get("/attendance/week", response_model=list[AttendanceSessionRead])
def attendance_week(
    request: Request,
    timezone: str | None = Query(default=None, max_length=64),
    claims: dict[str, Any] = Depends(require_user),
    resolver: TimezoneResolver = Depends(get_timezone_resolver),
    db: Session = Depends(get_db),
) -> list[AttendanceSessionRead]:
    sessions = list_week_sessions(
        db,
        user_id=user_id_from_claims(claims),
        timezone_name=_requested_timezone(request, None, timezone),
        resolver=resolver,
    )
    return [_session_read(item) for item in sessions]


@router.get("/attendance/me", response_model=list[AttendanceSessionRead])
def attendance_history(
    claims: dict[str, Any] = Depends(require_user),
    db: Session = Depends(get_db),
) -> list[AttendanceSessionRead]:
    sessions = list_user_history(db, user_id=user_id_from_claims(claims))
    return [_session_read(item) for item in sessions]
