from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from markme.errors import ApiError, NotFoundError, PersistenceError
from markme.models import User, UserRole
from markme.security import hash_password, verify_password
from markme.services.timezones import resolve_zone

logger = logging.getLogger("markme.users")

MIN_PASSWORD_LENGTH = 6


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("USER_NOT_FOUND", "User not found.")
    return user


def find_user_by_email(db: Session, email: str) -> User | None:
    return db.scalar(select(User).where(User.email == _normalize_email(email)))


def list_users(db: Session) -> list[User]:
    return list(db.scalars(select(User).order_by(User.id.asc())).all())


def update_user_timezone(db: Session, user_id: int, timezone_name: str) -> None:
    user = get_user(db, user_id)
    if user.timezone == timezone_name:
        return
    user.timezone = timezone_name
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError("update_user_timezone") from exc


def authenticate(db: Session, email: str, password: str) -> User | None:
    user = find_user_by_email(db, email)
    if user is None:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def parse_working_hours(value: str) -> str:
    try:
        hour_str, minute_str = value.strip().split(":")
        hour = int(hour_str)
        minute = int(minute_str)
        if hour < 0 or hour > 23 or minute < 0 or minute > 59:
            raise ValueError
    except ValueError as exc:
        raise ApiError(
            status_code=422,
            code="INVALID_WORKING_HOURS",
            message="Invalid working hours format. Use HH:MM.",
        ) from exc
    return f"{hour:02d}:{minute:02d}"


def _validate_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ApiError(
            status_code=422,
            code="PASSWORD_TOO_SHORT",
            message=f"Password must be at least {MIN_PASSWORD_LENGTH} characters.",
        )


def _commit_user(db: Session, *, operation: str) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ApiError(
            status_code=409,
            code="EMAIL_ALREADY_EXISTS",
            message="A user with this email already exists.",
        ) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("user_write_failed", extra={"operation": operation})
        raise PersistenceError(operation) from exc


def create_user(
    db: Session,
    *,
    name: str,
    email: str,
    password: str,
    role: UserRole = UserRole.STAFF,
    phone: str | None = None,
    working_hours: str = "09:00",
    timezone_name: str | None = None,
) -> User:
    _validate_password(password)
    if timezone_name is not None:
        resolve_zone(timezone_name)
    if find_user_by_email(db, email) is not None:
        raise ApiError(
            status_code=409,
            code="EMAIL_ALREADY_EXISTS",
            message="A user with this email already exists.",
        )

    user = User(
        name=name.strip(),
        email=_normalize_email(email),
        phone=phone,
        password_hash=hash_password(password),
        role=role,
        working_hours=parse_working_hours(working_hours),
        timezone=timezone_name.strip() if timezone_name else None,
    )
    db.add(user)
    _commit_user(db, operation="create_user")
    db.refresh(user)
    return user


def update_user(
    db: Session,
    user_id: int,
    *,
    name: str | None = None,
    email: str | None = None,
    role: UserRole | None = None,
    phone: str | None = None,
    password: str | None = None,
    working_hours: str | None = None,
    timezone_name: str | None = None,
) -> User:
    user = get_user(db, user_id)
    if name is not None:
        user.name = name.strip()
    if email is not None:
        user.email = _normalize_email(email)
    if role is not None:
        user.role = role
    if phone is not None:
        user.phone = phone
    if password is not None and password.strip():
        _validate_password(password)
        user.password_hash = hash_password(password)
    if working_hours is not None:
        user.working_hours = parse_working_hours(working_hours)
    if timezone_name is not None:
        resolve_zone(timezone_name)
        user.timezone = timezone_name.strip()

    _commit_user(db, operation="update_user")
    db.refresh(user)
    return user


def delete_user(db: Session, user_id: int) -> None:
    user = get_user(db, user_id)
    db.delete(user)
    _commit_user(db, operation="delete_user")


def reset_password(db: Session, *, email: str, new_password: str) -> User:
    _validate_password(new_password)
    user = find_user_by_email(db, email)
    if user is None:
        raise NotFoundError("USER_NOT_FOUND", "Email not found. Please register first.")
    user.password_hash = hash_password(new_password)
    _commit_user(db, operation="reset_password")
    return user
