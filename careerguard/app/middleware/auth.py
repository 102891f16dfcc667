"""Admin authentication for the maintenance and diagnostics endpoints."""

import hmac

from fastapi import HTTPException, Request


def get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header."""
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth[7:].strip()


def require_admin(request: Request) -> str:
    """Validate the admin token.

    Raises:
        HTTPException: 503 if no admin token is configured,
            401 if the token is missing or invalid
    """
    expected_token = request.app.state.settings.admin_token.strip()
    if not expected_token:
        raise HTTPException(status_code=503, detail="Admin endpoints are disabled")

    # Always compare so a missing token takes the same path as a wrong one
    token = get_bearer_token(request) or ""
    if not hmac.compare_digest(token.encode(), expected_token.encode()):
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")

    return "admin"
