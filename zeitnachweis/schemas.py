from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from zeitnachweis.models import ReminderKind


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    schema_guard: dict[str, Any] = Field(default_factory=dict)
    email: dict[str, Any] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    message: str


class EmployeeCreate(BaseModel):
    name: str | None = Field(default=None, max_length=511)
    firstname: str | None = Field(default=None, max_length=255)
    lastname: str | None = Field(default=None, max_length=255)
    email: str | None = Field(default=None, max_length=320)

    @model_validator(mode="after")
    def strip_values(self) -> "EmployeeCreate":
        self.name = (self.name or "").strip() or None
        self.firstname = (self.firstname or "").strip() or None
        self.lastname = (self.lastname or "").strip() or None
        self.email = (self.email or "").strip() or None
        return self


class EmployeeActiveUpdateRequest(BaseModel):
    is_active: bool


class EmployeeRead(BaseModel):
    id: int
    firstname: str
    lastname: str
    name: str
    email: str
    active: bool
    created_at: datetime | None = None


class EmployeeStatusRead(BaseModel):
    id: int
    firstname: str
    lastname: str
    name: str
    email: str
    active: bool
    uploaded: bool
    upload_date: datetime | None = None
    filename: str | None = None
    month: int
    year: int


class UploadResponse(BaseModel):
    message: str
    filename: str
    month: int
    year: int
    replaced: bool = False


class UploadProbeResponse(BaseModel):
    allowed: bool
    status: str
    message: str
    window_working_days: int
    closes_on: str | None = None


class AdminLoginRequest(BaseModel):
    password: str | None = None


class AdminLoginResponse(BaseModel):
    message: str
    token: str
    token_type: str = "bearer"


class AdminTokenRequest(BaseModel):
    token: str | None = None


class AdminVerifyResponse(BaseModel):
    valid: bool


class AdminChangePasswordRequest(BaseModel):
    token: str | None = None
    current_password: str | None = Field(default=None, alias="currentPassword")
    new_password: str | None = Field(default=None, alias="newPassword")

    model_config = ConfigDict(populate_by_name=True)


class AdminEmailUpsertRequest(BaseModel):
    email: str | None = None
    label: str | None = Field(default=None, max_length=100)


class AdminEmailRead(BaseModel):
    id: int
    email: str
    label: str
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class AdminEmailSavedResponse(BaseModel):
    message: str
    email: str
    label: str


class ReminderTriggerRequest(BaseModel):
    reminder_type: str | None = Field(default=None, alias="reminderType")
    month: int | None = Field(default=None, ge=1, le=12)
    year: int | None = Field(default=None, ge=2000, le=2100)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("reminder_type", mode="before")
    @classmethod
    def reminder_type_as_text(cls, value: Any) -> str | None:
        # Unknown kinds are rejected later with INVALID_REMINDER_TYPE.
        if value is None:
            return None
        return str(value)


class ReminderTriggerResponse(BaseModel):
    message: str
    reminder_type: ReminderKind
    month: int
    year: int
    candidates: int
    sent: int
    failed: int
    skipped: int
    email_configured: bool
    timestamp: datetime


class AdminTestEmailRequest(BaseModel):
    recipients: list[str] | None = None
    subject: str | None = Field(default=None, max_length=200)


class SmtpStatusResponse(BaseModel):
    message: str
    ok: bool
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_from: str | None = None
    use_tls: bool


class EmailStatsResponse(BaseModel):
    total_employees: int
    uploaded_employees: int
    pending_employees: int
    reminders_sent: int
    reminders_by_kind: dict[str, int]
    month: int
    year: int
    reminder_month: int
    reminder_year: int
    status_for: str = "current_month"
