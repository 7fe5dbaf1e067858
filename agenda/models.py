import json
from datetime import date, datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

APPOINTMENT_CONFIRMED = "CONFIRMED"
APPOINTMENT_PENDING = "PENDING"
APPOINTMENT_CANCELLED = "CANCELLED"
ACTIVE_APPOINTMENT_STATUSES = (APPOINTMENT_CONFIRMED, APPOINTMENT_PENDING)

SESSION_PENDING = "PENDING"
SESSION_SCHEDULED_LATER = "SCHEDULED_LATER"

EXCEPTION_UNAVAILABLE = "UNAVAILABLE"
EXCEPTION_SPECIAL_HOURS = "SPECIAL_HOURS"
EXCEPTION_KINDS = {EXCEPTION_UNAVAILABLE, EXCEPTION_SPECIAL_HOURS}


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


branch_services = Table(
    "branch_services",
    Base.metadata,
    Column("branch_id", ForeignKey("branches.id", ondelete="CASCADE"), primary_key=True),
    Column("service_id", ForeignKey("services.id", ondelete="CASCADE"), primary_key=True),
)

employee_services = Table(
    "employee_services",
    Base.metadata,
    Column("employee_id", ForeignKey("employees.id", ondelete="CASCADE"), primary_key=True),
    Column("service_id", ForeignKey("services.id", ondelete="CASCADE"), primary_key=True),
)


class Tenant(Base):
    __tablename__ = "tenants"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(80), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(120))


class Branch(Base):
    __tablename__ = "branches"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_branches_tenant_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(120))
    address: Mapped[str | None] = mapped_column(String(255), nullable=True)

    services = relationship("Service", secondary=branch_services)


class Service(Base):
    __tablename__ = "services"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_services_tenant_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(120), index=True)
    duration_min: Mapped[int] = mapped_column(Integer, default=30)
    total_sessions: Mapped[int] = mapped_column(Integer, default=1)
    price: Mapped[float] = mapped_column(Numeric(10, 2), default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    branch_id: Mapped[int] = mapped_column(ForeignKey("branches.id"), index=True)
    name: Mapped[str] = mapped_column(String(120), index=True)
    email: Mapped[str | None] = mapped_column(String(160), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)

    services = relationship("Service", secondary=employee_services)
    work_ranges = relationship("EmployeeWorkRange", cascade="all, delete-orphan")


class EmployeeWorkRange(Base):
    """One working range of the recurring weekly pattern (weekday 0 = Monday)."""

    __tablename__ = "employee_work_ranges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id", ondelete="CASCADE"), index=True)
    weekday: Mapped[int] = mapped_column(Integer)
    start_min: Mapped[int] = mapped_column(Integer)
    end_min: Mapped[int] = mapped_column(Integer)


class ScheduleException(Base):
    __tablename__ = "schedule_exceptions"
    __table_args__ = (UniqueConstraint("employee_id", "day", name="uq_schedule_exceptions_employee_day"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id", ondelete="CASCADE"), index=True)
    day: Mapped[date] = mapped_column(Date, index=True)
    kind: Mapped[str] = mapped_column(String(32))
    ranges_json: Mapped[str] = mapped_column(Text, default="[]")
    reason: Mapped[str | None] = mapped_column(String(300), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    @property
    def ranges(self) -> list[tuple[int, int]]:
        raw = json.loads(self.ranges_json or "[]")
        return [(int(start), int(end)) for start, end in raw]


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(120), index=True)
    phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    email: Mapped[str | None] = mapped_column(String(160), nullable=True)


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        # Last-resort guard behind the booking lock and recheck: it only rejects a
        # second CONFIRMED row with the same employee and start, not other overlaps.
        Index(
            "uq_appointments_confirmed_employee_start",
            "tenant_id",
            "employee_id",
            "start_dt",
            unique=True,
            sqlite_where=text("status = 'CONFIRMED'"),
            postgresql_where=text("status = 'CONFIRMED'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    branch_id: Mapped[int] = mapped_column(ForeignKey("branches.id"), index=True)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"))
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id"), index=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), index=True)
    start_dt: Mapped[datetime] = mapped_column(DateTime, index=True)
    day: Mapped[date] = mapped_column(Date, index=True)
    start_min: Mapped[int] = mapped_column(Integer)
    duration_min: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(20), default=APPOINTMENT_CONFIRMED, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    branch = relationship("Branch")
    service = relationship("Service")
    employee = relationship("Employee")
    client = relationship("Client")
    sessions = relationship(
        "AppointmentSession",
        back_populates="appointment",
        cascade="all, delete-orphan",
        order_by="AppointmentSession.session_number",
    )


class AppointmentSession(Base):
    __tablename__ = "appointment_sessions"
    __table_args__ = (
        UniqueConstraint("appointment_id", "session_number", name="uq_appointment_sessions_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    appointment_id: Mapped[int] = mapped_column(ForeignKey("appointments.id", ondelete="CASCADE"), index=True)
    session_number: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(20), default=SESSION_PENDING)
    duration_min: Mapped[int] = mapped_column(Integer)

    appointment = relationship("Appointment", back_populates="sessions")
