from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class SlotOut(BaseModel):
    slot_start: int
    employee_ids_free: list[int]
    time_string: str
    time_string_12h: str


class AppointmentCreate(BaseModel):
    branch_id: int
    service_id: int
    employee_id: int | Literal["any"] = "any"
    client_id: int
    day: date
    slot_start: int = Field(ge=0, lt=24 * 60)


class AppointmentReschedule(BaseModel):
    # Omitted keeps the current employee; "any" lets the engine pick a free one.
    employee_id: int | Literal["any"] | None = None
    day: date
    slot_start: int = Field(ge=0, lt=24 * 60)


class SessionOut(BaseModel):
    session_number: int
    status: str
    duration_min: int


class AppointmentOut(BaseModel):
    id: int
    tenant_id: int
    branch_id: int
    branch_name: str | None = None
    service_id: int
    service_name: str | None = None
    employee_id: int
    employee_name: str | None = None
    client_id: int
    client_name: str | None = None
    start_dt: datetime
    day: date
    slot_start: int
    time_string: str
    duration_min: int
    status: str
    total_sessions: int
    sessions: list[SessionOut]


class WeeklyScheduleDaySet(BaseModel):
    weekday: int = Field(ge=0, le=6)
    is_working: bool = True
    ranges: list[tuple[int, int]] = Field(default_factory=list)


class WeeklyScheduleSet(BaseModel):
    days: list[WeeklyScheduleDaySet] = Field(min_length=1, max_length=7)


class WeeklyScheduleDayOut(BaseModel):
    weekday: int
    is_working: bool
    ranges: list[tuple[int, int]]


class ScheduleExceptionSet(BaseModel):
    employee_id: int
    day: date
    kind: Literal["UNAVAILABLE", "SPECIAL_HOURS"]
    ranges: list[tuple[int, int]] = Field(default_factory=list)
    reason: str | None = Field(default=None, max_length=300)

    @field_validator("kind", mode="before")
    @classmethod
    def normalize_kind(cls, value):
        return str(value or "").strip().upper()


class ScheduleExceptionOut(BaseModel):
    id: int
    employee_id: int
    day: date
    kind: str
    ranges: list[tuple[int, int]]
    reason: str | None = None
    created_at: datetime
