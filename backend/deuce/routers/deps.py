from fastapi import Depends, Header, Request

from ..container import Services, build_services
from ..db import get_sessionmaker
from ..exceptions import http_problem


def get_services(request: Request) -> Services:
    """Return the application's service container, building it on first use."""

    services = getattr(request.app.state, "services", None)
    if services is None:
        services = build_services(get_sessionmaker())
        request.app.state.services = services
    return services


def get_actor_id(x_actor_id: str | None = Header(None, alias="X-Actor-Id")) -> str:
    actor = (x_actor_id or "").strip()
    if not actor:
        raise http_problem(401, "X-Actor-Id header is required", "actor_required")
    return actor


def require_admin(
    actor_id: str = Depends(get_actor_id),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
) -> str:
    if (x_actor_role or "").strip().lower() != "admin":
        raise http_problem(403, "administrator role required", "admin_required")
    return actor_id
