"""Credential and connectivity diagnostics.

Not used by the ledger itself; these helpers exist to answer "why am I
getting 401s?" from the command line.
"""

import base64
import binascii
import json
import logging
import time
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from .clients.ledger_api import LedgerApiClient
from .credentials import (
    BEARER_PREFIX,
    DEFAULT_TOKEN_KEYS,
    CredentialStore,
    mask_token,
)
from .exceptions import DebtLedgerError

logger = logging.getLogger(__name__)

REFRESH_WINDOW_SECONDS = 5 * 60


def describe_credentials(
    stores: Sequence[CredentialStore], keys: Sequence[str] = DEFAULT_TOKEN_KEYS
) -> list[dict[str, Any]]:
    """List every store/key pair in lookup order, with a masked token preview."""
    sources = []
    for key in keys:
        for store in stores:
            token = store.get(key)
            sources.append(
                {
                    "source": f"{store.name}.{key}",
                    "present": bool(token),
                    "preview": mask_token(token),
                }
            )
    return sources


def decode_token(token: str | None) -> dict[str, Any] | None:
    """
    Decode a JWT payload without verifying its signature.

    Returns:
        The payload claims, or None if the token is not a well-formed JWT
    """
    if not token:
        return None
    if token.startswith(BEARER_PREFIX):
        token = token[len(BEARER_PREFIX) :]

    parts = token.split(".")
    if len(parts) != 3:
        return None

    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment))
    except (binascii.Error, ValueError):
        return None
    return payload if isinstance(payload, dict) else None


def validate_token(token: str | None, now: float | None = None) -> dict[str, Any]:
    """
    Check a token's structure, expiry and user claim.

    Args:
        token: The bearer token
        now: Current UNIX time (defaults to time.time())

    Returns:
        Dict with "valid", and either "reason" or the decoded details
    """
    if not token:
        return {"valid": False, "reason": "No token provided"}

    claims = decode_token(token)
    if claims is None:
        return {"valid": False, "reason": "Invalid token format"}

    now = time.time() if now is None else now
    exp = claims.get("exp")
    expires_at = (
        datetime.fromtimestamp(exp, tz=timezone.utc)
        if isinstance(exp, (int, float))
        else None
    )
    if expires_at is not None and exp < now:
        return {"valid": False, "reason": "Token expired", "expires_at": expires_at}

    user_id = claims.get("userId") or claims.get("id") or claims.get("sub")
    if not user_id:
        return {"valid": False, "reason": "No user identifier in token"}

    return {
        "valid": True,
        "claims": claims,
        "expires_at": expires_at,
        "user_id": str(user_id),
    }


def needs_refresh(token: str | None, now: float | None = None) -> bool:
    """True if the token is invalid or expires within the refresh window."""
    if not token:
        return False
    validation = validate_token(token, now)
    if not validation["valid"]:
        return True
    expires_at = validation["expires_at"]
    if expires_at is None:
        return False
    now = time.time() if now is None else now
    return expires_at.timestamp() - now < REFRESH_WINDOW_SECONDS


async def check_api_health(client: LedgerApiClient) -> dict[str, Any]:
    """Probe the API health endpoint."""
    try:
        data = await client.send("/health")
    except DebtLedgerError as e:
        logger.warning(f"Health check failed: {e}")
        return {
            "success": False,
            "error": str(e),
            "status": getattr(e, "status_code", None),
        }
    return {"success": True, "data": data}


async def check_auth(client: LedgerApiClient) -> dict[str, Any]:
    """Check whether the current credential is accepted by the server."""
    try:
        data = await client.send("/auth/verify")
    except DebtLedgerError as e:
        logger.warning(f"Auth check failed: {e}")
        return {
            "success": False,
            "authenticated": False,
            "error": str(e),
            "status": getattr(e, "status_code", None),
        }
    return {"success": True, "authenticated": True, "data": data}
