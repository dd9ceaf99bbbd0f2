"""Build audit contexts from incoming requests.

The request may be a mapping (e.g. a decoded event) or an object with
attributes (e.g. a Starlette/FastAPI ``Request``). Every helper returns
None instead of raising when the value is unavailable.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class AuditContext:
    """Per-request audit information.

    Attributes:
        user_id: Authenticated principal's id, None if absent
        ip_address: Client address
        user_agent: Client user agent string
        old_values: Record state before the mutation
        new_values: Record state after the mutation
    """

    user_id: Any = None
    ip_address: str | None = None
    user_agent: str | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None


def _get(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(name)
    try:
        return getattr(obj, name, None)
    except AssertionError:
        # Starlette asserts on request.user when no auth middleware is installed
        return None


def _header(request: Any, name: str) -> str | None:
    headers = _get(request, "headers")
    if headers is None:
        return None
    # Starlette Headers and plain dicts both support .get
    value = headers.get(name) or headers.get(name.title())
    return str(value) if value else None


def get_client_ip(request: Any) -> str | None:
    """Return the client IP address.

    Prefers the first address in X-Forwarded-For, then the direct
    connection address.
    """
    if request is None:
        return None

    forwarded = _header(request, "x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    ip = _get(request, "ip")
    if ip:
        return str(ip)

    remote = _get(_get(request, "connection"), "remote_address")
    if remote:
        return str(remote)

    # ASGI requests expose the peer as request.client.host
    host = _get(_get(request, "client"), "host")
    return str(host) if host else None


def get_user_agent(request: Any) -> str | None:
    if request is None:
        return None
    return _header(request, "user-agent")


def _user_id(request: Any) -> Any:
    for holder in ("user", "db_user", "dbUser"):
        user_id = _get(_get(request, holder), "id")
        if user_id is not None:
            return user_id
    state_user = _get(_get(request, "state"), "user")
    return _get(state_user, "id")


def build_audit_context(
    request: Any,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
) -> AuditContext:
    """Build an AuditContext from *request*.

    ``user_id`` is taken from the authenticated principal
    (``request.user``, ``request.db_user`` or ``request.state.user``)
    and is None when there is none.
    """
    return AuditContext(
        user_id=_user_id(request),
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
        old_values=old_values,
        new_values=new_values,
    )
