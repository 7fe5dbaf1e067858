import random
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .availability import compute_slots
from .booking import (
    appointment_payload,
    book,
    cancel,
    list_appointments,
    list_client_upcoming,
    reschedule,
)
from .db import get_db
from .errors import (
    AgendaError,
    AppointmentNotActive,
    AppointmentNotFound,
    BranchNotFound,
    ClientNotFound,
    EmployeeNotFound,
    InvalidSchedule,
    PersistenceError,
    ScheduleExceptionNotFound,
    ServiceNotFound,
    SlotTaken,
    TenantNotFound,
    TenantRequired,
)
from .models import Tenant
from .notifications import Notifier, build_default_notifier
from .request_context import tenant_slug_ctx
from .schedule import (
    delete_exception,
    get_weekly_schedule,
    list_exceptions,
    set_weekly_schedule,
    upsert_exception,
)
from .schemas import (
    AppointmentCreate,
    AppointmentOut,
    AppointmentReschedule,
    ScheduleExceptionOut,
    ScheduleExceptionSet,
    SlotOut,
    WeeklyScheduleDayOut,
    WeeklyScheduleSet,
)

router = APIRouter(prefix="/api")

_HTTP_STATUS_BY_ERROR = {
    TenantRequired: status.HTTP_400_BAD_REQUEST,
    InvalidSchedule: status.HTTP_400_BAD_REQUEST,
    TenantNotFound: status.HTTP_404_NOT_FOUND,
    ServiceNotFound: status.HTTP_404_NOT_FOUND,
    BranchNotFound: status.HTTP_404_NOT_FOUND,
    EmployeeNotFound: status.HTTP_404_NOT_FOUND,
    ClientNotFound: status.HTTP_404_NOT_FOUND,
    AppointmentNotFound: status.HTTP_404_NOT_FOUND,
    ScheduleExceptionNotFound: status.HTTP_404_NOT_FOUND,
    SlotTaken: status.HTTP_409_CONFLICT,
    AppointmentNotActive: status.HTTP_409_CONFLICT,
    PersistenceError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _to_http(exc: AgendaError) -> HTTPException:
    code = _HTTP_STATUS_BY_ERROR.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=code, detail={"code": exc.code, "message": exc.message})


def get_current_tenant(
    db: Session = Depends(get_db),
    x_tenant_slug: Optional[str] = Header(default=None),
) -> Tenant:
    # No fallback tenant here; callers that need one resolve it before calling.
    slug = (x_tenant_slug or "").strip().lower()
    if not slug:
        raise _to_http(TenantRequired("Missing X-Tenant-Slug"))
    try:
        tenant = db.execute(select(Tenant).where(Tenant.slug == slug)).scalar_one_or_none()
    except SQLAlchemyError:
        raise _to_http(PersistenceError("Could not resolve tenant")) from None
    if tenant is None:
        raise _to_http(TenantNotFound(f"Tenant {slug!r} not found"))
    tenant_slug_ctx.set(tenant.slug)
    return tenant


def get_notifier() -> Notifier:
    return build_default_notifier()


def get_rng() -> random.Random | None:
    return None


def _to_appointment_out(appointment) -> AppointmentOut:
    return AppointmentOut(**appointment_payload(appointment))


def _to_exception_out(row) -> ScheduleExceptionOut:
    return ScheduleExceptionOut(
        id=row.id,
        employee_id=row.employee_id,
        day=row.day,
        kind=row.kind,
        ranges=row.ranges,
        reason=row.reason,
        created_at=row.created_at,
    )


@router.get("/availability", response_model=List[SlotOut])
def availability(
    branch_id: int = Query(...),
    service_id: int = Query(...),
    day: date = Query(...),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        slots = compute_slots(db, tenant.id, branch_id, service_id, day)
    except AgendaError as exc:
        raise _to_http(exc)
    return [SlotOut(**s) for s in slots]


@router.post("/appointments", response_model=AppointmentOut, status_code=status.HTTP_201_CREATED)
def create_appointment(
    payload: AppointmentCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    notifier: Notifier = Depends(get_notifier),
    rng: random.Random | None = Depends(get_rng),
):
    try:
        appointment = book(
            db=db,
            tenant_id=tenant.id,
            branch_id=payload.branch_id,
            service_id=payload.service_id,
            employee_selector=payload.employee_id,
            client_id=payload.client_id,
            day=payload.day,
            slot_start=payload.slot_start,
            notifier=notifier,
            rng=rng,
        )
    except AgendaError as exc:
        raise _to_http(exc)
    return _to_appointment_out(appointment)


@router.get("/appointments", response_model=List[AppointmentOut])
def get_appointments(
    branch_id: Optional[int] = Query(None),
    day: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    rows = list_appointments(db, tenant.id, branch_id=branch_id, day=day)
    return [_to_appointment_out(a) for a in rows]


@router.patch("/appointments/{appointment_id}/reschedule", response_model=AppointmentOut)
def patch_appointment_reschedule(
    appointment_id: int,
    payload: AppointmentReschedule,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    rng: random.Random | None = Depends(get_rng),
):
    try:
        appointment = reschedule(
            db=db,
            tenant_id=tenant.id,
            appointment_id=appointment_id,
            employee_selector=payload.employee_id,
            day=payload.day,
            slot_start=payload.slot_start,
            rng=rng,
        )
    except AgendaError as exc:
        raise _to_http(exc)
    return _to_appointment_out(appointment)


@router.delete("/appointments/{appointment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    notifier: Notifier = Depends(get_notifier),
):
    try:
        cancel(db, tenant.id, appointment_id, notifier=notifier)
    except AgendaError as exc:
        raise _to_http(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/clients/{client_id}/appointments/upcoming", response_model=List[AppointmentOut])
def get_client_upcoming(
    client_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        rows = list_client_upcoming(db, tenant.id, client_id)
    except AgendaError as exc:
        raise _to_http(exc)
    return [_to_appointment_out(a) for a in rows]


@router.get("/employees/{employee_id}/weekly-schedule", response_model=List[WeeklyScheduleDayOut])
def get_employee_weekly_schedule(
    employee_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        return get_weekly_schedule(db, tenant.id, employee_id)
    except AgendaError as exc:
        raise _to_http(exc)


@router.put("/employees/{employee_id}/weekly-schedule", response_model=List[WeeklyScheduleDayOut])
def put_employee_weekly_schedule(
    employee_id: int,
    payload: WeeklyScheduleSet,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        return set_weekly_schedule(
            db,
            tenant.id,
            employee_id,
            [d.model_dump() for d in payload.days],
        )
    except AgendaError as exc:
        raise _to_http(exc)


@router.get("/employees/{employee_id}/exceptions", response_model=List[ScheduleExceptionOut])
def get_employee_exceptions(
    employee_id: int,
    from_day: Optional[date] = Query(None, alias="from"),
    to_day: Optional[date] = Query(None, alias="to"),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        rows = list_exceptions(db, tenant.id, employee_id, from_day, to_day)
    except AgendaError as exc:
        raise _to_http(exc)
    return [_to_exception_out(r) for r in rows]


@router.post("/exceptions", response_model=ScheduleExceptionOut, status_code=status.HTTP_201_CREATED)
def post_exception(
    payload: ScheduleExceptionSet,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        row = upsert_exception(
            db,
            tenant.id,
            employee_id=payload.employee_id,
            day=payload.day,
            kind=payload.kind,
            ranges=payload.ranges,
            reason=payload.reason,
        )
    except AgendaError as exc:
        raise _to_http(exc)
    return _to_exception_out(row)


@router.delete("/exceptions/{exception_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_exception(
    exception_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        delete_exception(db, tenant.id, exception_id)
    except AgendaError as exc:
        raise _to_http(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
