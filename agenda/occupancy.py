from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import ACTIVE_APPOINTMENT_STATUSES, Appointment

Interval = tuple[int, int]


def load_busy_intervals(
    db: Session,
    tenant_id: int,
    employee_ids: list[int],
    day: date,
    skip_appointment_id: int | None = None,
) -> dict[int, list[Interval]]:
    """Busy ``[start, end)`` minutes per employee from active appointments on ``day``.

    Durations come from the snapshot stored on each appointment. Overlapping
    rows are listed as they are; this is a query, not an enforcer.
    """
    out: dict[int, list[Interval]] = {employee_id: [] for employee_id in employee_ids}
    if not employee_ids:
        return out

    stmt = select(
        Appointment.id,
        Appointment.employee_id,
        Appointment.start_min,
        Appointment.duration_min,
    ).where(
        Appointment.tenant_id == tenant_id,
        Appointment.employee_id.in_(employee_ids),
        Appointment.day == day,
        Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
    )
    for appointment_id, employee_id, start_min, duration_min in db.execute(stmt).all():
        if skip_appointment_id is not None and appointment_id == skip_appointment_id:
            continue
        start = int(start_min)
        out.setdefault(int(employee_id), []).append((start, start + int(duration_min)))

    for intervals in out.values():
        intervals.sort()
    return out
