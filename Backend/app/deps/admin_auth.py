from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional

import jwt  # type: ignore
from fastapi import Depends, Header, HTTPException

from app.config import (
    NearbyConfig,
    get_nearby_config,
    require_allowed_admin_emails,
    require_supabase_jwt,
    require_worker_token,
)
from app.core.logging import logger

__all__ = ["AdminUser", "verify_admin_user", "verify_worker_token"]


@dataclass
class AdminUser:
    email: str


async def verify_admin_user(authorization: Optional[str] = Header(None)) -> AdminUser:
    """
    Validate Supabase JWT and enforce admin allowlist.
    """
    if not authorization or not str(authorization).startswith("Bearer "):
        logger.info("auth_missing_or_malformed")
        raise HTTPException(status_code=401, detail="missing bearer token")

    token_only = str(authorization).split(" ", 1)[1].strip()

    try:
        secret = require_supabase_jwt()
    except RuntimeError as e:
        logger.error("auth_secret_missing", error=str(e))
        raise HTTPException(status_code=503, detail="admin auth not configured")

    try:
        # Supabase access tokens include an "aud": "authenticated".
        # Disable audience verification only; keep signature/expiry checks.
        payload = jwt.decode(
            token_only,
            secret,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )  # type: ignore[arg-type]
    except jwt.PyJWTError as e:
        logger.info("auth_decode_failed", error=str(e))
        raise HTTPException(status_code=401, detail="invalid token")

    email = payload.get("email") if isinstance(payload, dict) else None
    if not email:
        logger.info("auth_email_missing")
        raise HTTPException(status_code=401, detail="email missing in token")

    try:
        allowed = set(require_allowed_admin_emails())
    except RuntimeError as e:
        logger.error("auth_allowlist_missing", error=str(e))
        raise HTTPException(status_code=503, detail="admin allowlist not configured")

    if email.lower() not in allowed:
        logger.info("auth_email_forbidden", email=email)
        raise HTTPException(status_code=403, detail="forbidden")

    return AdminUser(email=email)


async def verify_worker_token(
    x_nearby_token: Optional[str] = Header(None),
    config: NearbyConfig = Depends(get_nearby_config),
) -> None:
    """Shared-secret check for the cron / self trigger."""
    try:
        expected = require_worker_token(config)
    except RuntimeError as e:
        logger.error("nearby_worker_token_missing", error=str(e))
        raise HTTPException(status_code=503, detail="worker token not configured")

    if not x_nearby_token or not hmac.compare_digest(x_nearby_token.encode(), expected.encode()):
        logger.info("nearby_worker_token_rejected")
        raise HTTPException(status_code=401, detail="invalid worker token")
