"""Operator authentication for the admin endpoints.

Unlocking accounts and clearing rate limits bypass the protection this
service exists for, so every admin route requires a shared bearer token.
"""

import hmac
import os

from fastapi import HTTPException, Request

ADMIN_TOKEN_ENV = "ADMIN_TOKEN"


def get_admin_token() -> str:
    """Admin token from the environment, read once and cached.

    Raises:
        ValueError: If ADMIN_TOKEN is unset or blank
    """
    if not hasattr(get_admin_token, "_cached_token"):
        # Secret stores often append a newline.
        token = (os.getenv(ADMIN_TOKEN_ENV) or "").strip()
        if not token:
            raise ValueError(
                f"{ADMIN_TOKEN_ENV} environment variable is not set. "
                "Set it before exposing the admin endpoints."
            )
        get_admin_token._cached_token = token
    return get_admin_token._cached_token


def get_bearer_token(request: Request) -> str | None:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme != "Bearer":
        return None
    return token.strip() or None


def require_admin(request: Request) -> str:
    """FastAPI dependency guarding operator routes.

    Raises:
        HTTPException: 401 if the token is missing or wrong
    """
    presented = (get_bearer_token(request) or "").encode()
    expected = get_admin_token().encode()

    # Same message for missing and wrong tokens.
    if not hmac.compare_digest(presented, expected):
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")

    return "admin"
