"""Post-booking notification channels.

Delivery is fire-and-forget: ``dispatch_appointment_created`` hands the
enriched appointment to a background executor after the booking transaction
has committed. Channel failures are logged and reported in the result, never
raised to the booking caller.
"""

import contextvars
import json
import re
from concurrent.futures import Future, ThreadPoolExecutor

import httpx
import redis
import structlog

from .config import settings

log = structlog.get_logger("agenda.notifications")

EVENT_APPOINTMENT_CREATED = "appointment.created"
EVENT_APPOINTMENT_CANCELLED = "appointment.cancelled"


class Notifier:
    channel = "noop"

    def notify_appointment_created(self, payload: dict) -> dict:
        return self._send(EVENT_APPOINTMENT_CREATED, payload)

    def notify_appointment_cancelled(self, payload: dict) -> dict:
        return self._send(EVENT_APPOINTMENT_CANCELLED, payload)

    def _send(self, event: str, payload: dict) -> dict:
        return {"channel": self.channel, "ok": True, "skipped": True}


def _render_message(event: str, payload: dict) -> tuple[str, str]:
    service_name = payload.get("service_name") or "Servicio"
    when = f"{payload.get('day')} {payload.get('time_string')}"
    employee_name = payload.get("employee_name") or ""
    branch_name = payload.get("branch_name") or ""
    if event == EVENT_APPOINTMENT_CANCELLED:
        subject = f"Cita cancelada - {service_name}"
        body = f"Tu cita de {service_name} del {when} ha sido cancelada."
    else:
        subject = f"Cita confirmada - {service_name}"
        body = f"Tu cita de {service_name} el {when} con {employee_name} en {branch_name} esta confirmada."
        sessions = int(payload.get("total_sessions") or 1)
        if sessions > 1:
            body += f" Este plan incluye {sessions} sesiones; agendaremos las siguientes contigo."
    return subject, body


class EmailNotifier(Notifier):
    channel = "email"

    def __init__(
        self,
        api_key: str,
        from_address: str,
        api_url: str = "https://api.resend.com",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.api_key = api_key
        self.from_address = from_address
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _send(self, event: str, payload: dict) -> dict:
        to_address = (payload.get("client_email") or "").strip()
        if not to_address:
            return {"channel": self.channel, "ok": True, "skipped": True}

        subject, body = _render_message(event, payload)
        with httpx.Client(base_url=self.api_url, timeout=self.timeout, transport=self.transport) as client:
            resp = client.post(
                "/emails",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "from": self.from_address,
                    "to": [to_address],
                    "subject": subject,
                    "html": f"<p>{body}</p>",
                },
            )
            resp.raise_for_status()
        return {"channel": self.channel, "ok": True, "skipped": False}


class WhatsAppNotifier(Notifier):
    channel = "whatsapp"

    def __init__(
        self,
        phone_number_id: str,
        access_token: str,
        api_url: str = "https://graph.facebook.com/v18.0",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.phone_number_id = phone_number_id
        self.access_token = access_token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _send(self, event: str, payload: dict) -> dict:
        to_phone = re.sub(r"\D", "", payload.get("client_phone") or "")
        if not to_phone:
            return {"channel": self.channel, "ok": True, "skipped": True}

        _subject, body = _render_message(event, payload)
        with httpx.Client(base_url=self.api_url, timeout=self.timeout, transport=self.transport) as client:
            resp = client.post(
                f"/{self.phone_number_id}/messages",
                headers={"Authorization": f"Bearer {self.access_token}"},
                json={
                    "messaging_product": "whatsapp",
                    "recipient_type": "individual",
                    "to": to_phone,
                    "type": "text",
                    "text": {"body": body},
                },
            )
            resp.raise_for_status()
        return {"channel": self.channel, "ok": True, "skipped": False}


class EventBusNotifier(Notifier):
    channel = "event_bus"

    def __init__(self, client: redis.Redis, stream: str):
        self.client = client
        self.stream = stream

    def _send(self, event: str, payload: dict) -> dict:
        self.client.xadd(
            self.stream,
            fields={
                "topic": event,
                "tenant_id": str(payload.get("tenant_id") or ""),
                "key": f"appointment_{payload.get('id')}",
                "payload_json": json.dumps(payload, ensure_ascii=True, sort_keys=True, default=str),
            },
            maxlen=50000,
            approximate=True,
        )
        return {"channel": self.channel, "ok": True, "skipped": False}


class CompositeNotifier(Notifier):
    channel = "composite"

    def __init__(self, channels: list[Notifier]):
        self.channels = list(channels)

    def _send(self, event: str, payload: dict) -> dict:
        results: list[dict] = []
        for notifier in self.channels:
            try:
                if event == EVENT_APPOINTMENT_CANCELLED:
                    results.append(notifier.notify_appointment_cancelled(payload))
                else:
                    results.append(notifier.notify_appointment_created(payload))
            except Exception as exc:
                log.warning(
                    "notification_channel_failed",
                    notification_event=event,
                    channel=notifier.channel,
                    appointment_id=payload.get("id"),
                    error=str(exc),
                )
                results.append({"channel": notifier.channel, "ok": False, "error": str(exc)[:300]})
        return {
            "channel": self.channel,
            "ok": all(r.get("ok") for r in results),
            "results": results,
        }


def build_default_notifier() -> Notifier:
    channels: list[Notifier] = []
    timeout = float(settings.NOTIFY_HTTP_TIMEOUT_SECONDS)
    if settings.NOTIFY_EMAIL_ENABLED and settings.RESEND_API_KEY:
        channels.append(
            EmailNotifier(
                api_key=settings.RESEND_API_KEY,
                from_address=settings.EMAIL_FROM_ADDRESS,
                api_url=settings.RESEND_API_URL,
                timeout=timeout,
            )
        )
    if settings.NOTIFY_WHATSAPP_ENABLED and settings.WHATSAPP_PHONE_NUMBER_ID and settings.WHATSAPP_ACCESS_TOKEN:
        channels.append(
            WhatsAppNotifier(
                phone_number_id=settings.WHATSAPP_PHONE_NUMBER_ID,
                access_token=settings.WHATSAPP_ACCESS_TOKEN,
                api_url=settings.WHATSAPP_API_URL,
                timeout=timeout,
            )
        )
    if settings.EVENT_BUS_ENABLED and settings.REDIS_URL:
        channels.append(
            EventBusNotifier(
                client=redis.from_url(settings.REDIS_URL, decode_responses=True),
                stream=settings.EVENT_BUS_STREAM,
            )
        )
    return CompositeNotifier(channels)


_executor = ThreadPoolExecutor(
    max_workers=max(1, int(settings.NOTIFY_WORKERS)),
    thread_name_prefix="agenda-notify",
)


def _deliver(notifier: Notifier, event: str, payload: dict) -> dict | None:
    try:
        if event == EVENT_APPOINTMENT_CANCELLED:
            result = notifier.notify_appointment_cancelled(payload)
        else:
            result = notifier.notify_appointment_created(payload)
    except Exception:
        log.exception(
            "notification_failed",
            notification_event=event,
            appointment_id=payload.get("id"),
            tenant_id=payload.get("tenant_id"),
        )
        return None
    log.info(
        "notification_dispatched",
        notification_event=event,
        appointment_id=payload.get("id"),
        ok=bool(result and result.get("ok")),
    )
    return result


def dispatch(notifier: Notifier, event: str, payload: dict) -> Future | None:
    try:
        # Carry request id and tenant into the worker so its log lines correlate.
        ctx = contextvars.copy_context()
        return _executor.submit(ctx.run, _deliver, notifier, event, dict(payload))
    except RuntimeError as exc:
        # Executor already shut down (interpreter exit); the booking stands.
        log.warning("notification_not_scheduled", notification_event=event, error=str(exc))
        return None


def dispatch_appointment_created(notifier: Notifier, payload: dict) -> Future | None:
    return dispatch(notifier, EVENT_APPOINTMENT_CREATED, payload)


def dispatch_appointment_cancelled(notifier: Notifier, payload: dict) -> Future | None:
    return dispatch(notifier, EVENT_APPOINTMENT_CANCELLED, payload)
