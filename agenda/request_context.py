from contextvars import ContextVar

# Set by the HTTP middleware and tenant dependency; read by the log processor.
request_id_ctx: ContextVar[str | None] = ContextVar("request_id_ctx", default=None)
tenant_slug_ctx: ContextVar[str | None] = ContextVar("tenant_slug_ctx", default=None)
