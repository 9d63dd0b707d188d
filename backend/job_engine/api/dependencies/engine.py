"""Request-scoped access to the engine container and the caller principal."""

from __future__ import annotations

from fastapi import Header, Request

from job_engine.core.container import Container


def get_container(request: Request) -> Container:
    """Return the container the application was started with."""
    return request.app.state.container


def get_principal(
    x_owner_id: str | None = Header(None, alias="X-Owner-Id", max_length=64),
) -> str | None:
    """Identity of the caller, as asserted by the upstream authentication layer."""
    if x_owner_id is None:
        return None
    return x_owner_id.strip() or None
