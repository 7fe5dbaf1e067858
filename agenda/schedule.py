import json
from datetime import date

import structlog
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .db import begin_write
from .errors import EmployeeNotFound, InvalidSchedule, ScheduleExceptionNotFound
from .models import (
    EXCEPTION_KINDS,
    EXCEPTION_SPECIAL_HOURS,
    EXCEPTION_UNAVAILABLE,
    Employee,
    EmployeeWorkRange,
    ScheduleException,
)

log = structlog.get_logger("agenda.schedule")

MINUTES_PER_DAY = 24 * 60

Interval = tuple[int, int]


def normalize_ranges(ranges) -> list[Interval]:
    out: list[Interval] = []
    for item in ranges or []:
        start, end = int(item[0]), int(item[1])
        if start < 0 or end > MINUTES_PER_DAY or end <= start:
            raise InvalidSchedule(f"Invalid time range [{start}, {end})")
        out.append((start, end))
    out.sort()
    for prev, cur in zip(out, out[1:]):
        if cur[0] < prev[1]:
            raise InvalidSchedule(f"Overlapping time ranges {prev} and {cur}")
    return out


def resolve_working_ranges(
    weekly: dict[int, list[Interval]],
    exception: ScheduleException | None,
    day: date,
) -> list[Interval]:
    """Effective working ranges of one employee on ``day``.

    A day-specific exception wins over the weekly pattern: ``UNAVAILABLE``
    means a day off, ``SPECIAL_HOURS`` replaces the pattern with its own
    ranges. Without an exception the weekly ranges of that weekday apply.
    Missing data resolves to "not working".
    """
    if exception is not None:
        if exception.kind == EXCEPTION_UNAVAILABLE:
            return []
        if exception.kind == EXCEPTION_SPECIAL_HOURS:
            return sorted(exception.ranges)
    return sorted(weekly.get(day.weekday(), []))


def load_weekly_ranges(
    db: Session, tenant_id: int, employee_ids: list[int]
) -> dict[int, dict[int, list[Interval]]]:
    if not employee_ids:
        return {}
    rows = (
        db.execute(
            select(EmployeeWorkRange).where(
                EmployeeWorkRange.tenant_id == tenant_id,
                EmployeeWorkRange.employee_id.in_(employee_ids),
            )
        )
        .scalars()
        .all()
    )
    out: dict[int, dict[int, list[Interval]]] = {}
    for row in rows:
        by_weekday = out.setdefault(int(row.employee_id), {})
        by_weekday.setdefault(int(row.weekday), []).append((int(row.start_min), int(row.end_min)))
    return out


def load_exceptions(
    db: Session, tenant_id: int, employee_ids: list[int], day: date
) -> dict[int, ScheduleException]:
    if not employee_ids:
        return {}
    rows = (
        db.execute(
            select(ScheduleException).where(
                ScheduleException.tenant_id == tenant_id,
                ScheduleException.employee_id.in_(employee_ids),
                ScheduleException.day == day,
            )
        )
        .scalars()
        .all()
    )
    return {int(row.employee_id): row for row in rows}


def working_ranges_for_day(
    db: Session, tenant_id: int, employee_ids: list[int], day: date
) -> dict[int, list[Interval]]:
    weekly = load_weekly_ranges(db, tenant_id, employee_ids)
    exceptions = load_exceptions(db, tenant_id, employee_ids, day)
    return {
        employee_id: resolve_working_ranges(
            weekly.get(employee_id, {}), exceptions.get(employee_id), day
        )
        for employee_id in employee_ids
    }


def _get_employee(db: Session, tenant_id: int, employee_id: int) -> Employee:
    employee = db.execute(
        select(Employee).where(
            Employee.tenant_id == tenant_id,
            Employee.id == employee_id,
        )
    ).scalar_one_or_none()
    if employee is None:
        raise EmployeeNotFound(f"Employee {employee_id} not found")
    return employee


def get_weekly_schedule(db: Session, tenant_id: int, employee_id: int) -> list[dict]:
    _get_employee(db, tenant_id, employee_id)
    weekly = load_weekly_ranges(db, tenant_id, [employee_id]).get(employee_id, {})
    out: list[dict] = []
    for weekday in range(7):
        ranges = sorted(weekly.get(weekday, []))
        out.append(
            {
                "weekday": weekday,
                "is_working": bool(ranges),
                "ranges": [list(r) for r in ranges],
            }
        )
    return out


def set_weekly_schedule(
    db: Session,
    tenant_id: int,
    employee_id: int,
    days: list[dict],
) -> list[dict]:
    """Replace the weekly ranges of the weekdays present in ``days``."""
    replacements: dict[int, list[Interval]] = {}
    for item in days:
        weekday = int(item.get("weekday"))
        if weekday < 0 or weekday > 6:
            raise InvalidSchedule("weekday must be between 0 and 6")
        replacements[weekday] = [] if not item.get("is_working", True) else normalize_ranges(item.get("ranges"))

    begin_write(db)
    try:
        _get_employee(db, tenant_id, employee_id)
    except EmployeeNotFound:
        db.rollback()
        raise

    for weekday, ranges in replacements.items():
        db.execute(
            delete(EmployeeWorkRange).where(
                EmployeeWorkRange.tenant_id == tenant_id,
                EmployeeWorkRange.employee_id == employee_id,
                EmployeeWorkRange.weekday == weekday,
            )
        )
        for start_min, end_min in ranges:
            db.add(
                EmployeeWorkRange(
                    tenant_id=tenant_id,
                    employee_id=employee_id,
                    weekday=weekday,
                    start_min=start_min,
                    end_min=end_min,
                )
            )

    db.commit()
    log.info("weekly_schedule_updated", tenant_id=tenant_id, employee_id=employee_id)
    return get_weekly_schedule(db, tenant_id, employee_id)


def upsert_exception(
    db: Session,
    tenant_id: int,
    employee_id: int,
    day: date,
    kind: str,
    ranges=None,
    reason: str | None = None,
) -> ScheduleException:
    normalized_kind = (kind or "").strip().upper()
    if normalized_kind not in EXCEPTION_KINDS:
        raise InvalidSchedule("kind must be UNAVAILABLE or SPECIAL_HOURS")
    resolved_ranges = normalize_ranges(ranges) if normalized_kind == EXCEPTION_SPECIAL_HOURS else []
    if normalized_kind == EXCEPTION_SPECIAL_HOURS and not resolved_ranges:
        raise InvalidSchedule("SPECIAL_HOURS requires at least one range")

    begin_write(db)
    try:
        _get_employee(db, tenant_id, employee_id)
    except EmployeeNotFound:
        db.rollback()
        raise
    row = db.execute(
        select(ScheduleException).where(
            ScheduleException.tenant_id == tenant_id,
            ScheduleException.employee_id == employee_id,
            ScheduleException.day == day,
        )
    ).scalar_one_or_none()
    if row is None:
        row = ScheduleException(tenant_id=tenant_id, employee_id=employee_id, day=day)
        db.add(row)

    row.kind = normalized_kind
    row.ranges_json = json.dumps([list(r) for r in resolved_ranges])
    row.reason = (reason or "").strip() or None
    db.commit()
    db.refresh(row)
    log.info(
        "schedule_exception_saved",
        tenant_id=tenant_id,
        employee_id=employee_id,
        day=day.isoformat(),
        kind=normalized_kind,
    )
    return row


def list_exceptions(
    db: Session,
    tenant_id: int,
    employee_id: int,
    start_day: date | None = None,
    end_day: date | None = None,
) -> list[ScheduleException]:
    _get_employee(db, tenant_id, employee_id)
    stmt = select(ScheduleException).where(
        ScheduleException.tenant_id == tenant_id,
        ScheduleException.employee_id == employee_id,
    )
    if start_day is not None:
        stmt = stmt.where(ScheduleException.day >= start_day)
    if end_day is not None:
        stmt = stmt.where(ScheduleException.day <= end_day)
    return db.execute(stmt.order_by(ScheduleException.day.asc())).scalars().all()


def delete_exception(db: Session, tenant_id: int, exception_id: int) -> None:
    begin_write(db)
    row = db.execute(
        select(ScheduleException).where(
            ScheduleException.tenant_id == tenant_id,
            ScheduleException.id == exception_id,
        )
    ).scalar_one_or_none()
    if row is None:
        db.rollback()
        raise ScheduleExceptionNotFound(f"Schedule exception {exception_id} not found")
    db.delete(row)
    db.commit()
