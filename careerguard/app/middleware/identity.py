"""Request identity extraction for rate limiting.

Authentication is not done here. An upstream auth layer is expected to put
the user on ``request.state`` (as ``user_id`` or as a ``user`` object with
an ``id``); anything else is keyed by client IP.
"""

import json
from typing import Any, List, Optional

from fastapi import Request

from careerguard.app.middleware.rate_limit.strategies import RequestIdentity

# Bodies larger than this are never parsed for identity fields
MAX_IDENTITY_BODY_BYTES = 64 * 1024


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        client_ip = forwarded.split(",")[0].strip()
        if client_ip:
            return client_ip
    return request.client.host if request.client else "unknown"


def get_user_id(request: Request) -> Optional[str]:
    user_id = getattr(request.state, "user_id", None)
    if user_id is None:
        user = getattr(request.state, "user", None)
        user_id = getattr(user, "id", None)
        if user_id is None and isinstance(user, dict):
            user_id = user.get("id")
    return str(user_id) if user_id is not None else None


def get_user_roles(request: Request) -> List[str]:
    user = getattr(request.state, "user", None)
    roles = user.get("roles") if isinstance(user, dict) else getattr(user, "roles", None)
    if isinstance(roles, str):
        return [roles]
    return [str(role) for role in roles] if roles else []


async def _json_body(request: Request) -> Optional[Any]:
    if request.method in ("GET", "HEAD", "OPTIONS", "DELETE"):
        return None
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    body = await request.body()
    if not body or len(body) > MAX_IDENTITY_BODY_BYTES:
        return None
    try:
        return json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None


async def identity_from_request(request: Request, read_body: bool = False) -> RequestIdentity:
    """Build the identity the strategies key on.

    Args:
        request: Incoming request
        read_body: Parse a JSON body for identity fields (auth strategy)
    """
    return RequestIdentity(
        client_ip=get_client_ip(request),
        user_id=get_user_id(request),
        path=request.url.path,
        method=request.method,
        body=await _json_body(request) if read_body else None,
    )
