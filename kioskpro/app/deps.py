from fastapi import Header, HTTPException, Depends, Cookie
from .db import get_conn
from .security import hash_session_token
from datetime import datetime, timezone
from typing import Optional


SESSION_COOKIE_NAME = "kioskpro_session"

# Role -> permission codes. `*` grants everything.
ROLE_PERMISSIONS = {
    "admin": {"*"},
    "manager": {
        "products:read", "products:write",
        "inventory:read", "inventory:write",
        "suppliers:read", "suppliers:write",
        "purchases:read", "purchases:write",
        "sales:read", "sales:write",
        "pos:use",
        "cash:read", "cash:write",
        "dashboard:read",
        "finances:read",
        "reports:read",
        "settings:read",
    },
    "cashier": {
        "products:read",
        "inventory:read",
        "sales:read", "sales:write",
        "pos:use",
        "cash:read", "cash:write",
        "dashboard:read",
    },
}


def role_allows(role: Optional[str], code: str) -> bool:
    perms = ROLE_PERMISSIONS.get((role or "").strip().lower(), set())
    return "*" in perms or code in perms


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip()
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing token")


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    token = _extract_session_token(authorization, cookie_token)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, s.expires_at, s.is_active,
                       u.name, u.email, u.role, u.active AS user_active
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token_hash = %s
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
            now = datetime.now(timezone.utc)
            if not row or not row["is_active"] or row["expires_at"] < now:
                raise HTTPException(status_code=401, detail="invalid token")
            if not row["user_active"]:
                raise HTTPException(status_code=403, detail="user is deactivated")
            return {
                "session_id": row["session_id"],
                "user_id": row["user_id"],
                "name": row["name"],
                "email": row["email"],
                "role": row["role"],
            }


def get_current_user(session=Depends(get_session)):
    return {
        "user_id": session["user_id"],
        "name": session["name"],
        "email": session["email"],
        "role": session["role"],
    }


def require_permission(code: str):
    def _dep(user=Depends(get_current_user)):
        if not role_allows(user.get("role"), code):
            raise HTTPException(status_code=403, detail="permission denied")
        return True
    return _dep


def require_admin(user=Depends(get_current_user)):
    if (user.get("role") or "") != "admin":
        raise HTTPException(status_code=403, detail="admin role required")
    return user
