"""Client address resolution for rate-limit keys and audit events."""

from slowapi.util import get_remote_address
from starlette.requests import Request

# Proxy headers checked in order; the first hop of each is the client.
_FORWARDING_HEADERS = ("X-Forwarded-For", "X-Real-IP", "CF-Connecting-IP")


def get_client_ip(request: Request) -> str:
    """Get client IP, respecting proxy forwarding headers.

    Falls back to the socket peer when no header is present (127.0.0.1
    when even that is missing).
    """
    for header in _FORWARDING_HEADERS:
        value = request.headers.get(header)
        if value:
            first_hop = value.split(",")[0].strip()
            if first_hop:
                return first_hop
    return get_remote_address(request)


def get_user_agent(request: Request) -> str | None:
    """Return the User-Agent header truncated to the stored column width."""
    user_agent = request.headers.get("User-Agent")
    if user_agent is None:
        return None
    return user_agent[:512]
