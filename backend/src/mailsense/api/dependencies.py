"""
Request-scoped dependencies.

The service container lives on `app.state.services`; it is built in the
application lifespan unless one was injected when the app was created.
"""

from __future__ import annotations

from fastapi import Request
from mailsense.common.exceptions import ConfigurationError
from mailsense.context import correlation_id_ctx, tenant_id_ctx
from mailsense.services import Services


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise ConfigurationError(
            "Services are not initialized", error_code="SERVICES_NOT_READY"
        )
    return services


def get_correlation_id(request: Request) -> str | None:
    return getattr(request.state, "correlation_id", None) or correlation_id_ctx.get()


def bind_tenant(tenant_id: str) -> None:
    """Expose the request's tenant to logging and tracing for the rest of the call."""
    tenant_id_ctx.set(tenant_id)
