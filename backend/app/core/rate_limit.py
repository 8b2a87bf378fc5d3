"""Request rate limiting shared by the routers."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.config import settings


def limit_key(request: Request) -> str:
    """Signed-in callers share one bucket across addresses; guests are keyed by IP."""
    from app.core.rbac import read_token

    payload = read_token(request)
    if payload and payload.get("sub"):
        return f"user:{payload['sub']}"
    return get_remote_address(request)


limiter = Limiter(key_func=limit_key, enabled=settings.rate_limit_enabled)
