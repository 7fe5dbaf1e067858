from concurrent.futures import ThreadPoolExecutor
from datetime import date
from functools import partial

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import settings
from .errors import BranchNotFound, PersistenceError, ServiceNotFound
from .models import Branch, Employee, Service, employee_services
from .occupancy import load_busy_intervals
from .schedule import working_ranges_for_day

log = structlog.get_logger("agenda.availability")

Interval = tuple[int, int]


def overlaps(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    return a_start < b_end and b_start < a_end


def slot_step(duration_min: int) -> int:
    # Short services are offered more densely than their own duration.
    if duration_min >= 60:
        return 60
    if duration_min >= 45:
        return 45
    if duration_min >= 30:
        return 30
    return 15


def candidate_starts(
    duration_min: int,
    window_start: int | None = None,
    window_end: int | None = None,
) -> list[int]:
    start = settings.OPERATING_WINDOW_START_MIN if window_start is None else int(window_start)
    end = settings.OPERATING_WINDOW_END_MIN if window_end is None else int(window_end)
    step = slot_step(duration_min)
    out: list[int] = []
    cursor = start
    while cursor + duration_min <= end:
        out.append(cursor)
        cursor += step
    return out


def format_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def format_minutes_12h(minutes: int) -> str:
    hour, minute = divmod(int(minutes), 60)
    suffix = "AM" if hour < 12 else "PM"
    display_hour = hour % 12 or 12
    return f"{display_hour}:{minute:02d} {suffix}"


def is_employee_free(
    working: list[Interval], busy: list[Interval], start: int, end: int
) -> bool:
    if not any(w_start <= start and end <= w_end for w_start, w_end in working):
        return False
    return not any(overlaps(start, end, b_start, b_end) for b_start, b_end in busy)


def _free_starts_for_employee(
    employee_id: int,
    *,
    starts: list[int],
    duration_min: int,
    working: dict[int, list[Interval]],
    busy: dict[int, list[Interval]],
) -> set[int]:
    ranges = working.get(employee_id, [])
    if not ranges:
        return set()
    taken = busy.get(employee_id, [])
    return {s for s in starts if is_employee_free(ranges, taken, s, s + duration_min)}


def get_service(db: Session, tenant_id: int, service_id: int) -> Service:
    service = db.execute(
        select(Service).where(
            Service.tenant_id == tenant_id,
            Service.id == service_id,
        )
    ).scalar_one_or_none()
    if service is None or not bool(service.is_active):
        raise ServiceNotFound(f"Service {service_id} not found")
    return service


def get_branch(db: Session, tenant_id: int, branch_id: int) -> Branch:
    branch = db.execute(
        select(Branch).where(
            Branch.tenant_id == tenant_id,
            Branch.id == branch_id,
        )
    ).scalar_one_or_none()
    if branch is None:
        raise BranchNotFound(f"Branch {branch_id} not found")
    return branch


def candidate_employee_ids(
    db: Session, tenant_id: int, branch: Branch, service: Service
) -> list[int]:
    offered = {s.id for s in branch.services}
    if offered and service.id not in offered:
        return []

    rows = db.execute(
        select(Employee.id)
        .join(employee_services, employee_services.c.employee_id == Employee.id)
        .where(
            Employee.tenant_id == tenant_id,
            Employee.branch_id == branch.id,
            Employee.is_active.is_(True),
            employee_services.c.service_id == service.id,
        )
        .order_by(Employee.id.asc())
    ).all()
    return [int(r[0]) for r in rows]


def compute_slots(
    db: Session,
    tenant_id: int,
    branch_id: int,
    service_id: int,
    day: date,
    skip_appointment_id: int | None = None,
) -> list[dict]:
    """Bookable slots for a service at a branch on ``day``, ascending.

    Each slot carries every employee free for it. An empty list means nobody
    is available and is not an error.
    """
    try:
        service = get_service(db, tenant_id, service_id)
        branch = get_branch(db, tenant_id, branch_id)
        duration_min = int(service.duration_min)

        employee_ids = candidate_employee_ids(db, tenant_id, branch, service)
        if not employee_ids:
            return []

        working = working_ranges_for_day(db, tenant_id, employee_ids, day)
        busy = load_busy_intervals(
            db, tenant_id, employee_ids, day, skip_appointment_id=skip_appointment_id
        )
    except SQLAlchemyError as exc:
        log.exception(
            "availability_load_failed",
            tenant_id=tenant_id,
            branch_id=branch_id,
            service_id=service_id,
            day=day.isoformat(),
        )
        raise PersistenceError("Could not load availability data") from exc
    starts = candidate_starts(duration_min)

    # Workers only see already-loaded data, never the session.
    scan = partial(
        _free_starts_for_employee,
        starts=starts,
        duration_min=duration_min,
        working=working,
        busy=busy,
    )
    workers = max(1, min(int(settings.AVAILABILITY_WORKERS), len(employee_ids)))
    if workers > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            free_sets = list(pool.map(scan, employee_ids))
    else:
        free_sets = [scan(employee_id) for employee_id in employee_ids]

    out: list[dict] = []
    for start in starts:
        free = [eid for eid, free_starts in zip(employee_ids, free_sets) if start in free_starts]
        if not free:
            continue
        out.append(
            {
                "slot_start": start,
                "employee_ids_free": free,
                "time_string": format_minutes(start),
                "time_string_12h": format_minutes_12h(start),
            }
        )

    log.debug(
        "availability_computed",
        tenant_id=tenant_id,
        branch_id=branch_id,
        service_id=service_id,
        day=day.isoformat(),
        candidates=len(employee_ids),
        slots=len(out),
    )
    return out
