"""Firebase authentication utilities."""

import asyncio
import json
import os
from dataclasses import dataclass
from typing import Any, Optional

import firebase_admin
from fastapi import Depends, Header, HTTPException
from firebase_admin import auth, credentials

from .credits.ledger import normalize_tier

_firebase_app: Optional[firebase_admin.App] = None


@dataclass(frozen=True)
class CurrentUser:
    uid: str
    tier: str = "free"
    is_admin: bool = False

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "CurrentUser":
        return cls(
            uid=str(claims["uid"]),
            tier=normalize_tier(claims.get("tier")),
            is_admin=bool(claims.get("admin")),
        )


def _load_firebase_credentials() -> Optional[credentials.Base]:
    """Load Firebase credentials from env, supporting JSON content or a file path."""
    raw_value = os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON", "").strip()
    if not raw_value:
        return None
    if raw_value.startswith("{"):
        return credentials.Certificate(json.loads(raw_value))
    return credentials.Certificate(raw_value)


def init_firebase() -> None:
    """Initialise Firebase Admin SDK once per process."""
    global _firebase_app
    if _firebase_app:
        return
    cred = _load_firebase_credentials()
    if cred is None:
        _firebase_app = firebase_admin.initialize_app()
        return
    _firebase_app = firebase_admin.initialize_app(cred)


def verify_firebase_token(token: str) -> dict[str, Any]:
    """Verify a Firebase ID token and return the decoded claims.

    The ``tier`` and ``admin`` custom claims drive credit limits and access
    to the ledger reset endpoint.
    """
    init_firebase()
    if not token:
        raise HTTPException(status_code=401, detail="Missing Firebase token")
    try:
        return auth.verify_id_token(token)
    except Exception as exc:
        raise HTTPException(status_code=401, detail="Invalid Firebase token") from exc


async def get_current_user(authorization: str = Header(default="")) -> CurrentUser:
    """FastAPI dependency that validates a Bearer token from the Authorization header."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing Bearer token")
    token = authorization.split(" ", 1)[1].strip()
    claims = await asyncio.to_thread(verify_firebase_token, token)
    return CurrentUser.from_claims(claims)


async def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not current_user.is_admin:
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return current_user
