"""Error taxonomy of the scheduling engine.

Lookup errors (``*NotFound``) are not retriable without correcting the input.
``SlotTaken`` is the expected race outcome of a booking and the caller should
pick another slot. ``PersistenceError`` wraps an unexpected store failure and
may be retried with backoff.
"""


class AgendaError(Exception):
    code = "agenda_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class TenantRequired(AgendaError):
    code = "tenant_required"


class TenantNotFound(AgendaError):
    code = "tenant_not_found"


class ServiceNotFound(AgendaError):
    code = "service_not_found"


class BranchNotFound(AgendaError):
    code = "branch_not_found"


class EmployeeNotFound(AgendaError):
    code = "employee_not_found"


class ClientNotFound(AgendaError):
    code = "client_not_found"


class AppointmentNotFound(AgendaError):
    code = "appointment_not_found"


class AppointmentNotActive(AgendaError):
    code = "appointment_not_active"


class ScheduleExceptionNotFound(AgendaError):
    code = "schedule_exception_not_found"


class InvalidSchedule(AgendaError):
    code = "invalid_schedule"


class SlotTaken(AgendaError):
    code = "slot_taken"


class PersistenceError(AgendaError):
    code = "persistence_error"
