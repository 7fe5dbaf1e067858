import random
from datetime import date, datetime, time, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, selectinload

from .availability import compute_slots, format_minutes, get_service, overlaps
from .db import begin_write
from .errors import (
    AgendaError,
    AppointmentNotActive,
    AppointmentNotFound,
    ClientNotFound,
    EmployeeNotFound,
    PersistenceError,
    SlotTaken,
    TenantRequired,
)
from .models import (
    ACTIVE_APPOINTMENT_STATUSES,
    APPOINTMENT_CANCELLED,
    APPOINTMENT_CONFIRMED,
    SESSION_PENDING,
    SESSION_SCHEDULED_LATER,
    Appointment,
    AppointmentSession,
    Client,
    Employee,
    utc_now_naive,
)
from .notifications import (
    Notifier,
    build_default_notifier,
    dispatch_appointment_cancelled,
    dispatch_appointment_created,
)

log = structlog.get_logger("agenda.booking")

ANY_EMPLOYEE = "any"

_rng = random.Random()


def start_datetime(day: date, slot_start: int) -> datetime:
    return datetime.combine(day, time.min) + timedelta(minutes=int(slot_start))


def expand_sessions(tenant_id: int, total_sessions: int, duration_min: int) -> list[AppointmentSession]:
    """Session 1 is actionable now; the rest are placeholders scheduled later."""
    count = max(1, int(total_sessions or 1))
    return [
        AppointmentSession(
            tenant_id=tenant_id,
            session_number=number,
            status=SESSION_PENDING if number == 1 else SESSION_SCHEDULED_LATER,
            duration_min=int(duration_min),
        )
        for number in range(1, count + 1)
    ]


def _require_tenant(tenant_id: int | None) -> int:
    if tenant_id is None:
        raise TenantRequired("An explicit tenant is required")
    return int(tenant_id)


def _get_client(db: Session, tenant_id: int, client_id: int) -> Client:
    client = db.execute(
        select(Client).where(Client.tenant_id == tenant_id, Client.id == client_id)
    ).scalar_one_or_none()
    if client is None:
        raise ClientNotFound(f"Client {client_id} not found")
    return client


def _resolve_employee(slot: dict, employee_selector, rng: random.Random) -> int:
    free = list(slot["employee_ids_free"])
    if employee_selector is None or str(employee_selector).strip().lower() == ANY_EMPLOYEE:
        return int(rng.choice(free))
    try:
        employee_id = int(employee_selector)
    except (TypeError, ValueError):
        raise EmployeeNotFound(f"Invalid employee selector: {employee_selector!r}") from None
    if employee_id not in free:
        raise SlotTaken(f"Employee {employee_id} is not free at {format_minutes(slot['slot_start'])}")
    return employee_id


def _find_slot(slots: list[dict], day: date, slot_start: int) -> dict:
    for slot in slots:
        if slot["slot_start"] == int(slot_start):
            return slot
    raise SlotTaken(f"Slot {day.isoformat()} {format_minutes(int(slot_start))} is not available")


def _lock_employee_day(
    db: Session,
    tenant_id: int,
    employee_id: int,
    day: date,
    start_min: int,
    end_min: int,
    skip_appointment_id: int | None = None,
) -> None:
    # Row lock on PostgreSQL; SQLite already holds the write lock (BEGIN IMMEDIATE).
    db.execute(
        select(Employee.id)
        .where(Employee.tenant_id == tenant_id, Employee.id == employee_id)
        .with_for_update()
    ).first()

    rows = db.execute(
        select(Appointment.id, Appointment.start_min, Appointment.duration_min).where(
            Appointment.tenant_id == tenant_id,
            Appointment.employee_id == employee_id,
            Appointment.day == day,
            Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
        )
    ).all()
    for appointment_id, other_start, other_duration in rows:
        if skip_appointment_id is not None and appointment_id == skip_appointment_id:
            continue
        other_end = int(other_start) + int(other_duration)
        if overlaps(start_min, end_min, int(other_start), other_end):
            raise SlotTaken(f"Employee {employee_id} already has appointment #{appointment_id} at this time")


def get_appointment(db: Session, tenant_id: int, appointment_id: int) -> Appointment:
    appointment = db.execute(
        select(Appointment)
        .options(
            joinedload(Appointment.branch),
            joinedload(Appointment.service),
            joinedload(Appointment.employee),
            joinedload(Appointment.client),
            selectinload(Appointment.sessions),
        )
        .where(Appointment.tenant_id == tenant_id, Appointment.id == appointment_id)
    ).scalar_one_or_none()
    if appointment is None:
        raise AppointmentNotFound(f"Appointment {appointment_id} not found")
    return appointment


def appointment_payload(appointment: Appointment) -> dict:
    client = appointment.client
    return {
        "id": appointment.id,
        "tenant_id": appointment.tenant_id,
        "branch_id": appointment.branch_id,
        "branch_name": appointment.branch.name if appointment.branch else None,
        "service_id": appointment.service_id,
        "service_name": appointment.service.name if appointment.service else None,
        "employee_id": appointment.employee_id,
        "employee_name": appointment.employee.name if appointment.employee else None,
        "client_id": appointment.client_id,
        "client_name": client.name if client else None,
        "client_phone": client.phone if client else None,
        "client_email": client.email if client else None,
        "start_dt": appointment.start_dt.isoformat(),
        "day": appointment.day.isoformat(),
        "slot_start": appointment.start_min,
        "time_string": format_minutes(appointment.start_min),
        "duration_min": appointment.duration_min,
        "status": appointment.status,
        "total_sessions": len(appointment.sessions),
        "sessions": [
            {"session_number": s.session_number, "status": s.status, "duration_min": s.duration_min}
            for s in appointment.sessions
        ],
    }


def _commit_or_raise(db: Session, action: str, **context) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        log.info("slot_taken_on_write", action=action, **context)
        raise SlotTaken("Slot was taken by a concurrent booking") from exc


def book(
    db: Session,
    tenant_id: int,
    branch_id: int,
    service_id: int,
    employee_selector,
    client_id: int,
    day: date,
    slot_start: int,
    notifier: Notifier | None = None,
    rng: random.Random | None = None,
) -> Appointment:
    """Turn a slot into a confirmed appointment with its sessions.

    Availability is recomputed inside the write transaction; a stale or
    concurrently taken slot raises ``SlotTaken``. Notification runs after the
    commit and never affects the result.
    """
    tenant_id = _require_tenant(tenant_id)
    context = {
        "tenant_id": tenant_id,
        "branch_id": branch_id,
        "service_id": service_id,
        "client_id": client_id,
        "day": day.isoformat(),
        "slot_start": int(slot_start),
    }
    try:
        begin_write(db)
        _get_client(db, tenant_id, client_id)
        slots = compute_slots(db, tenant_id, branch_id, service_id, day)
        slot = _find_slot(slots, day, slot_start)
        employee_id = _resolve_employee(slot, employee_selector, rng or _rng)
        service = get_service(db, tenant_id, service_id)
        duration_min = int(service.duration_min)
        start_min = int(slot_start)

        _lock_employee_day(db, tenant_id, employee_id, day, start_min, start_min + duration_min)

        appointment = Appointment(
            tenant_id=tenant_id,
            branch_id=branch_id,
            service_id=service_id,
            employee_id=employee_id,
            client_id=client_id,
            start_dt=start_datetime(day, start_min),
            day=day,
            start_min=start_min,
            duration_min=duration_min,
            status=APPOINTMENT_CONFIRMED,
        )
        appointment.sessions = expand_sessions(tenant_id, service.total_sessions, duration_min)
        db.add(appointment)
        db.flush()
        _commit_or_raise(db, "book", employee_id=employee_id, **context)
    except SlotTaken:
        db.rollback()
        log.info("slot_taken", **context)
        raise
    except AgendaError:
        db.rollback()
        raise
    except IntegrityError as exc:
        db.rollback()
        log.info("slot_taken_on_write", action="book", **context)
        raise SlotTaken("Slot was taken by a concurrent booking") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        log.exception("booking_persistence_failed", **context)
        raise PersistenceError("Could not persist appointment") from exc

    created = get_appointment(db, tenant_id, appointment.id)
    log.info(
        "appointment_booked",
        appointment_id=created.id,
        employee_id=created.employee_id,
        sessions=len(created.sessions),
        selector=str(employee_selector),
        **context,
    )
    dispatch_appointment_created(notifier or build_default_notifier(), appointment_payload(created))
    return created


def reschedule(
    db: Session,
    tenant_id: int,
    appointment_id: int,
    employee_selector,
    day: date,
    slot_start: int,
    rng: random.Random | None = None,
) -> Appointment:
    """Move an active appointment, rechecking availability without its own occupancy.

    The moved appointment takes the service's current duration as its new
    snapshot, since that is the duration the new placement was validated with.
    """
    tenant_id = _require_tenant(tenant_id)
    context = {
        "tenant_id": tenant_id,
        "appointment_id": appointment_id,
        "day": day.isoformat(),
        "slot_start": int(slot_start),
    }
    try:
        begin_write(db)
        appointment = get_appointment(db, tenant_id, appointment_id)
        if appointment.status == APPOINTMENT_CANCELLED:
            raise AppointmentNotActive(f"Appointment {appointment_id} is cancelled")

        slots = compute_slots(
            db,
            tenant_id,
            appointment.branch_id,
            appointment.service_id,
            day,
            skip_appointment_id=appointment.id,
        )
        slot = _find_slot(slots, day, slot_start)
        # Without a selector the appointment stays with its employee; only "any" reassigns.
        selector = appointment.employee_id if employee_selector is None else employee_selector
        employee_id = _resolve_employee(slot, selector, rng or _rng)
        duration_min = int(appointment.service.duration_min)
        start_min = int(slot_start)

        _lock_employee_day(
            db,
            tenant_id,
            employee_id,
            day,
            start_min,
            start_min + duration_min,
            skip_appointment_id=appointment.id,
        )

        appointment.employee_id = employee_id
        appointment.day = day
        appointment.start_min = start_min
        appointment.start_dt = start_datetime(day, start_min)
        appointment.duration_min = duration_min
        for session in appointment.sessions:
            session.duration_min = duration_min
        db.flush()
        _commit_or_raise(db, "reschedule", employee_id=employee_id, **context)
    except AgendaError:
        db.rollback()
        raise
    except IntegrityError as exc:
        db.rollback()
        raise SlotTaken("Slot was taken by a concurrent booking") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        log.exception("reschedule_persistence_failed", **context)
        raise PersistenceError("Could not reschedule appointment") from exc

    db.expire_all()
    moved = get_appointment(db, tenant_id, appointment_id)
    log.info("appointment_rescheduled", employee_id=moved.employee_id, **context)
    return moved


def cancel(
    db: Session,
    tenant_id: int,
    appointment_id: int,
    notifier: Notifier | None = None,
) -> Appointment:
    tenant_id = _require_tenant(tenant_id)
    try:
        begin_write(db)
        appointment = get_appointment(db, tenant_id, appointment_id)
        if appointment.status == APPOINTMENT_CANCELLED:
            db.rollback()
            return get_appointment(db, tenant_id, appointment_id)

        appointment.status = APPOINTMENT_CANCELLED
        appointment.cancelled_at = utc_now_naive()
        db.commit()
    except AgendaError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        log.exception("cancel_persistence_failed", tenant_id=tenant_id, appointment_id=appointment_id)
        raise PersistenceError("Could not cancel appointment") from exc

    cancelled = get_appointment(db, tenant_id, appointment_id)
    log.info("appointment_cancelled", tenant_id=tenant_id, appointment_id=appointment_id)
    dispatch_appointment_cancelled(notifier or build_default_notifier(), appointment_payload(cancelled))
    return cancelled


def list_appointments(
    db: Session,
    tenant_id: int,
    branch_id: int | None = None,
    day: date | None = None,
    include_cancelled: bool = True,
) -> list[Appointment]:
    tenant_id = _require_tenant(tenant_id)
    stmt = (
        select(Appointment)
        .options(
            joinedload(Appointment.branch),
            joinedload(Appointment.service),
            joinedload(Appointment.employee),
            joinedload(Appointment.client),
            selectinload(Appointment.sessions),
        )
        .where(Appointment.tenant_id == tenant_id)
    )
    if branch_id is not None:
        stmt = stmt.where(Appointment.branch_id == branch_id)
    if day is not None:
        stmt = stmt.where(Appointment.day == day)
    if not include_cancelled:
        stmt = stmt.where(Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES))
    return db.execute(stmt.order_by(Appointment.start_dt.asc(), Appointment.id.asc())).scalars().all()


def list_client_upcoming(
    db: Session,
    tenant_id: int,
    client_id: int,
    now: datetime | None = None,
) -> list[Appointment]:
    tenant_id = _require_tenant(tenant_id)
    _get_client(db, tenant_id, client_id)
    cutoff = now or datetime.now()
    return (
        db.execute(
            select(Appointment)
            .options(
                joinedload(Appointment.branch),
                joinedload(Appointment.service),
                joinedload(Appointment.employee),
                joinedload(Appointment.client),
                selectinload(Appointment.sessions),
            )
            .where(
                Appointment.tenant_id == tenant_id,
                Appointment.client_id == client_id,
                Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
                Appointment.start_dt >= cutoff,
            )
            .order_by(Appointment.start_dt.asc())
        )
        .scalars()
        .all()
    )
