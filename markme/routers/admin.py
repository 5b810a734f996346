from datetime import date
from typing import Literal

from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from markme.audit import client_ip, log_audit, log_request_audit
from markme.db import get_db
from markme.errors import ApiError
from markme.models import AttendanceSession, AuditActorType, AuditLog, UserRole
from markme.schemas import (
    AbsenceSweepRunRequest,
    AbsenceSweepRunResponse,
    AdminAttendanceRead,
    AdminAuthResponse,
    AdminLoginRequest,
    AttendanceMarkRequest,
    AttendanceSessionRead,
    AttendanceSessionUpdateRequest,
    AuditLogRead,
    DeleteResponse,
    UserCreateRequest,
    UserRead,
    UserUpdateRequest,
    WorkingHoursUpdateRequest,
)
from markme.security import (
    ROLE_ADMIN,
    create_access_token,
    ensure_login_attempt_allowed,
    register_login_failure,
    register_login_success,
    require_admin,
    verify_admin_credentials,
    verify_password,
)
from markme.services.absence_sweeper import run_absence_sweep
from markme.services.admin_attendance import (
    delete_session,
    list_attendance,
    mark_attendance,
    update_session,
)
from markme.services.attendance_store import AttendanceSessionSnapshot
from markme.services.timezones import TimezoneResolver, get_timezone_resolver
from markme.services.users import (
    create_user,
    delete_user,
    find_user_by_email,
    get_user,
    list_users,
    update_user,
)

router = APIRouter(tags=["admin"])


def _admin_attendance_read(row: AttendanceSession) -> AdminAttendanceRead:
    base = AttendanceSessionRead.model_validate(AttendanceSessionSnapshot.from_row(row), from_attributes=True)
    return AdminAttendanceRead(
        **base.model_dump(exclude={"signed_in_local", "signed_out_local"}),
        user_name=row.user.name if row.user is not None else None,
        user_email=row.user.email if row.user is not None else None,
    )


def _session_read(snapshot: AttendanceSessionSnapshot) -> AttendanceSessionRead:
    return AttendanceSessionRead.model_validate(snapshot, from_attributes=True)


@router.post("/api/admin/auth/login", response_model=AdminAuthResponse)
def admin_login(
    payload: AdminLoginRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AdminAuthResponse:
    email = payload.email.strip().lower()
    ip = client_ip(request)
    user_agent = request.headers.get("user-agent")
    request_id = getattr(request.state, "request_id", None)
    request.state.actor = "system"
    request.state.actor_id = "system"

    if ip:
        try:
            ensure_login_attempt_allowed(ip)
        except ApiError:
            log_audit(
                db,
                actor_type=AuditActorType.SYSTEM,
                actor_id=email,
                action="ADMIN_LOGIN_FAIL",
                success=False,
                ip=ip,
                user_agent=user_agent,
                details={"reason": "TOO_MANY_ATTEMPTS"},
                request_id=request_id,
            )
            raise

    subject: str | None = None
    name: str | None = None
    if verify_admin_credentials(email, payload.password):
        subject = "admin"
    else:
        user = find_user_by_email(db, email)
        if user is not None and user.role == UserRole.ADMIN and verify_password(payload.password, user.password_hash):
            subject = str(user.id)
            name = user.name

    if subject is None:
        if ip:
            register_login_failure(ip)
        log_audit(
            db,
            actor_type=AuditActorType.SYSTEM,
            actor_id=email,
            action="ADMIN_LOGIN_FAIL",
            success=False,
            ip=ip,
            user_agent=user_agent,
            details={"reason": "INVALID_CREDENTIALS"},
            request_id=request_id,
        )
        raise ApiError(status_code=401, code="INVALID_CREDENTIALS", message="Invalid credentials.")

    if ip:
        register_login_success(ip)
    token, expires_in, _ = create_access_token(sub=subject, role=ROLE_ADMIN, name=name, email=email)
    request.state.actor = "admin"
    request.state.actor_id = email
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=email,
        action="ADMIN_LOGIN_SUCCESS",
        success=True,
        ip=ip,
        user_agent=user_agent,
        request_id=request_id,
    )
    return AdminAuthResponse(access_token=token, expires_in=expires_in)


@router.get("/api/admin/users", response_model=list[UserRead], dependencies=[Depends(require_admin)])
def admin_list_users(db: Session = Depends(get_db)) -> list[UserRead]:
    return [UserRead.model_validate(user) for user in list_users(db)]


@router.post("/api/admin/users", response_model=UserRead, status_code=201, dependencies=[Depends(require_admin)])
def admin_create_user(
    payload: UserCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> UserRead:
    user = create_user(
        db,
        name=payload.name,
        email=payload.email,
        password=payload.password,
        role=payload.role,
        phone=payload.phone,
        working_hours=payload.working_hours,
        timezone_name=payload.timezone,
    )
    log_request_audit(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        action="USER_CREATED",
        entity_type="user",
        entity_id=str(user.id),
        details={"email": user.email, "role": user.role.value},
    )
    return UserRead.model_validate(user)


@router.patch("/api/admin/users/{user_id}", response_model=UserRead, dependencies=[Depends(require_admin)])
def admin_update_user(
    user_id: int,
    payload: UserUpdateRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> UserRead:
    user = update_user(
        db,
        user_id,
        name=payload.name,
        email=payload.email,
        role=payload.role,
        phone=payload.phone,
        password=payload.password,
        working_hours=payload.working_hours,
        timezone_name=payload.timezone,
    )
    log_request_audit(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        action="USER_UPDATED",
        entity_type="user",
        entity_id=str(user.id),
        details={"fields": sorted(field for field in payload.model_fields_set if field != "password")},
    )
    return UserRead.model_validate(user)


@router.delete("/api/admin/users/{user_id}", response_model=DeleteResponse, dependencies=[Depends(require_admin)])
def admin_delete_user(
    user_id: int,
    request: Request,
    db: Session = Depends(get_db),
) -> DeleteResponse:
    delete_user(db, user_id)
    log_request_audit(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        action="USER_DELETED",
        entity_type="user",
        entity_id=str(user_id),
    )
    return DeleteResponse(ok=True, id=user_id)


@router.put(
    "/api/admin/users/{user_id}/working-hours",
    response_model=UserRead,
    dependencies=[Depends(require_admin)],
)
def admin_update_working_hours(
    user_id: int,
    payload: WorkingHoursUpdateRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> UserRead:
    user = update_user(db, user_id, working_hours=payload.working_hours)
    log_request_audit(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        action="USER_WORKING_HOURS_UPDATED",
        entity_type="user",
        entity_id=str(user.id),
        details={"working_hours": user.working_hours},
    )
    return UserRead.model_validate(user)


@router.get(
    "/api/admin/users/{user_id}/attendance",
    response_model=list[AdminAttendanceRead],
    dependencies=[Depends(require_admin)],
)
def admin_user_attendance(
    user_id: int,
    db: Session = Depends(get_db),
) -> list[AdminAttendanceRead]:
    get_user(db, user_id)
    rows = list_attendance(db, user_id=user_id)
    return [_admin_attendance_read(row) for row in rows]


@router.get(
    "/api/admin/attendance",
    response_model=list[AdminAttendanceRead],
    dependencies=[Depends(require_admin)],
)
def admin_list_attendance(
    name: str | None = Query(default=None, max_length=255),
    on_date: date | None = Query(default=None, alias="date"),
    range_key: Literal["today", "week", "month"] | None = Query(default=None, alias="range"),
    resolver: TimezoneResolver = Depends(get_timezone_resolver),
    db: Session = Depends(get_db),
) -> list[AdminAttendanceRead]:
    rows = list_attendance(db, name=name, on_date=on_date, range_key=range_key, resolver=resolver)
    return [_admin_attendance_read(row) for row in rows]


@router.patch(
    "/api/admin/attendance/{session_id}",
    response_model=AttendanceSessionRead,
    dependencies=[Depends(require_admin)],
)
def admin_update_attendance(
    session_id: int,
    payload: AttendanceSessionUpdateRequest,
    request: Request,
    resolver: TimezoneResolver = Depends(get_timezone_resolver),
    db: Session = Depends(get_db),
) -> AttendanceSessionRead:
    changes = {field: getattr(payload, field) for field in payload.model_fields_set}
    session = update_session(db, session_id, changes=changes, resolver=resolver)
    log_request_audit(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        action="ATTENDANCE_SESSION_UPDATED",
        entity_type="attendance_session",
        entity_id=str(session.id),
        details={
            field: value.isoformat() if value is not None else None
            for field, value in changes.items()
        },
    )
    return _session_read(session)


@router.delete(
    "/api/admin/attendance/{session_id}",
    response_model=DeleteResponse,
    dependencies=[Depends(require_admin)],
)
def admin_delete_attendance(
    session_id: int,
    request: Request,
    db: Session = Depends(get_db),
) -> DeleteResponse:
    session = delete_session(db, session_id)
    log_request_audit(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        action="ATTENDANCE_SESSION_DELETED",
        entity_type="attendance_session",
        entity_id=str(session_id),
        details={"user_id": session.user_id, "local_date": session.local_date.isoformat()},
    )
    return DeleteResponse(ok=True, id=session_id)


@router.post(
    "/api/admin/attendance/mark",
    response_model=AttendanceSessionRead,
    dependencies=[Depends(require_admin)],
)
def admin_mark_attendance(
    payload: AttendanceMarkRequest,
    request: Request,
    resolver: TimezoneResolver = Depends(get_timezone_resolver),
    db: Session = Depends(get_db),
) -> AttendanceSessionRead:
    session = mark_attendance(
        db,
        user_id=payload.user_id,
        action=payload.action,
        at=payload.at,
        resolver=resolver,
    )
    log_request_audit(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        action="ATTENDANCE_MARKED",
        entity_type="attendance_session",
        entity_id=str(session.id),
        details={"user_id": payload.user_id, "action": payload.action, "at": payload.at.isoformat()},
    )
    return _session_read(session)


@router.post(
    "/api/admin/absence-sweep/run",
    response_model=AbsenceSweepRunResponse,
    dependencies=[Depends(require_admin)],
)
def admin_run_absence_sweep(
    request: Request,
    payload: AbsenceSweepRunRequest | None = Body(default=None),
    resolver: TimezoneResolver = Depends(get_timezone_resolver),
    db: Session = Depends(get_db),
) -> AbsenceSweepRunResponse:
    reference_utc = payload.reference_utc if payload is not None and payload.reference_utc else resolver.now_utc()
    result = run_absence_sweep(reference_utc, db=db, resolver=resolver)
    log_request_audit(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        action="ABSENCE_SWEEP_RUN",
        entity_type="absence_sweep",
        details=result.to_dict(),
    )
    return AbsenceSweepRunResponse(
        reference_utc=result.reference_utc,
        users_checked=result.users_checked,
        marked_absent=result.marked_absent,
        already_present=result.already_present,
        already_marked=result.already_marked,
        skipped_no_timezone=result.skipped_no_timezone,
        failed=result.failed,
        marked_user_ids=result.marked_user_ids,
    )


@router.get("/api/admin/audit-logs", response_model=list[AuditLogRead], dependencies=[Depends(require_admin)])
def admin_list_audit_logs(
    action: str | None = Query(default=None, max_length=100),
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[AuditLogRead]:
    stmt = select(AuditLog)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    stmt = stmt.order_by(AuditLog.ts_utc.desc(), AuditLog.id.desc()).limit(limit)
    return [AuditLogRead.model_validate(item) for item in db.scalars(stmt).all()]
