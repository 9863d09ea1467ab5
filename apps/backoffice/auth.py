# File: apps/backoffice/auth.py
import asyncio
import logging
import time
from typing import Any, Dict

from fastapi import Depends, Header, HTTPException
from firebase_admin import auth as firebase_auth

from .database import db, init_firebase

logger = logging.getLogger(__name__)

ADMIN_ROLES = {"admin", "super_admin"}


async def _to_thread(fn, timeout_s: float = 25.0):
    """Run blocking SDK calls off the event loop with a soft timeout."""
    return await asyncio.wait_for(asyncio.to_thread(fn), timeout=timeout_s)


# Process-local caches to cut repeated Admin SDK + Firestore calls.
_TOKEN_CACHE: dict[str, tuple[float, dict]] = {}
_USER_CACHE: dict[str, tuple[float, dict]] = {}


def _cache_get(cache: dict, key: str):
    item = cache.get(key)
    if not item:
        return None
    expires_at, value = item
    if expires_at < time.time():
        cache.pop(key, None)
        return None
    return value


def _cache_set(cache: dict, key: str, value: dict, ttl_s: float):
    cache[key] = (time.time() + float(ttl_s), value)


def _verify_token(token: str) -> dict:
    init_firebase()
    return firebase_auth.verify_id_token(token)


def user_tenant_ids(user: Dict[str, Any]) -> set[str]:
    ids = {str(t) for t in (user.get("tenant_ids") or []) if t}
    if user.get("tenant_id"):
        ids.add(str(user["tenant_id"]))
    return ids


async def get_current_user(authorization: str = Header(...)) -> Dict[str, Any]:
    """Verify the Firebase ID token and load the back-office user profile."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    token = authorization.split(" ", 1)[1]

    try:
        decoded_token = _cache_get(_TOKEN_CACHE, token)
        if not decoded_token:
            decoded_token = await _to_thread(lambda: _verify_token(token), timeout_s=25.0)
            _cache_set(_TOKEN_CACHE, token, decoded_token, ttl_s=60.0)
        uid = decoded_token.get("uid")
        if not uid:
            raise HTTPException(status_code=401, detail="Invalid token structure")

        user_data = _cache_get(_USER_CACHE, uid)
        if not user_data:
            user_doc = await _to_thread(db.collection("users").document(uid).get, timeout_s=25.0)
            if not user_doc.exists:
                raise HTTPException(status_code=401, detail="Account deleted or profile missing")
            user_data = user_doc.to_dict() or {}
            _cache_set(_USER_CACHE, uid, user_data, ttl_s=15.0)

        user_data = dict(user_data)
        user_data["uid"] = uid
        user_data.setdefault("role", "accounting")
        return user_data

    except asyncio.TimeoutError:
        raise HTTPException(
            status_code=503,
            detail="Auth service timeout. Firebase/Firestore is not responding in time.",
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.warning("Auth error: %s", e)
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def require_tenant_access(tenant_id: str, user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    """Allow members of the path tenant; admins may act on any tenant."""
    if user.get("role") in ADMIN_ROLES:
        return user
    if tenant_id not in user_tenant_ids(user):
        raise HTTPException(status_code=403, detail="No access to this tenant")
    return user


def require_tenant_admin(tenant_id: str, user: Dict[str, Any] = Depends(require_tenant_access)) -> Dict[str, Any]:
    _ = tenant_id
    role = str(user.get("role") or "").lower()
    if role not in ADMIN_ROLES and role != "tenant_admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
