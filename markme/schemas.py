from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field

from markme.models import AuditActorType, UserRole
from markme.services.timezones import format_local


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class UserSummary(BaseModel):
    id: int
    name: str
    email: str


class LoginResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserSummary


class PasswordResetRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    new_password: str = Field(min_length=6, max_length=255)


class MessageResponse(BaseModel):
    message: str


class AttendanceActionRequest(BaseModel):
    timezone: str | None = Field(default=None, max_length=64)


class AttendanceSessionRead(BaseModel):
    id: int
    user_id: int
    local_date: date
    timezone: str
    signed_in_at: datetime | None
    signed_out_at: datetime | None
    worked_hours: float | None
    is_absence: bool

    model_config = ConfigDict(from_attributes=True)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def signed_in_local(self) -> str | None:
        return format_local(self.signed_in_at, self.timezone)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def signed_out_local(self) -> str | None:
        return format_local(self.signed_out_at, self.timezone)


class AttendanceActionResponse(BaseModel):
    message: str
    attendance: AttendanceSessionRead


class AdminLoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class AdminAuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class UserRead(BaseModel):
    id: int
    name: str
    email: str
    phone: str | None = None
    role: UserRole
    working_hours: str
    timezone: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class UserCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=6, max_length=255)
    phone: str | None = Field(default=None, max_length=64)
    role: UserRole = UserRole.STAFF
    working_hours: str = "09:00"
    timezone: str | None = Field(default=None, max_length=64)


class UserUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    email: str | None = Field(default=None, min_length=3, max_length=255)
    password: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=64)
    role: UserRole | None = None
    working_hours: str | None = None
    timezone: str | None = Field(default=None, max_length=64)


class WorkingHoursUpdateRequest(BaseModel):
    working_hours: str


class AdminAttendanceRead(AttendanceSessionRead):
    user_name: str | None = None
    user_email: str | None = None


class AttendanceSessionUpdateRequest(BaseModel):
    signed_in_at: datetime | None = None
    signed_out_at: datetime | None = None


class AttendanceMarkRequest(BaseModel):
    user_id: int = Field(ge=1)
    action: Literal["signin", "signout"]
    at: datetime


class AbsenceSweepRunRequest(BaseModel):
    reference_utc: datetime | None = None


class AbsenceSweepRunResponse(BaseModel):
    reference_utc: datetime
    users_checked: int
    marked_absent: int
    already_present: int
    already_marked: int
    skipped_no_timezone: int
    failed: int
    marked_user_ids: list[int] = Field(default_factory=list)


class DeleteResponse(BaseModel):
    ok: bool
    id: int


class AuditLogRead(BaseModel):
    id: int
    ts_utc: datetime
    actor_type: AuditActorType
    actor_id: str
    action: str
    entity_type: str | None = None
    entity_id: str | None = None
    success: bool
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)
