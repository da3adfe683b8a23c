"""
Context Management.

Defines ContextVars for request-scoped data (tenant, correlation ID, message).
"""

from contextvars import ContextVar

correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="unknown")
tenant_id_ctx: ContextVar[str] = ContextVar("tenant_id", default="default")
message_id_ctx: ContextVar[str | None] = ContextVar("message_id", default=None)
