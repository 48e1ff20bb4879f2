from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from datetime import datetime, timedelta, timezone
import secrets
from ..config import settings
from ..db import get_conn
from ..deps import get_session, get_current_user, SESSION_COOKIE_NAME
from ..logs import json_log
from ..security import check_password, hash_password, hash_session_token, verify_password
from ..validation import Email, Name, Password
from .audit import log_audit

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginIn(BaseModel):
    email: str
    password: str


class PasswordChangeIn(BaseModel):
    current_password: str
    new_password: Password


class InitialAdminIn(BaseModel):
    name: Name
    email: Email
    password: Password


def _public_user(row) -> dict:
    return {
        "id": row["id"],
        "name": row["name"],
        "email": row["email"],
        "role": row["role"],
        "avatar_url": row.get("avatar_url"),
    }


def _issue_session(cur, user_id):
    # Strong random token; only a one-way hash is stored.
    token = secrets.token_urlsafe(32)
    expires = datetime.now(timezone.utc) + timedelta(days=settings.session_days)
    cur.execute(
        """
        INSERT INTO auth_sessions (id, user_id, token_hash, expires_at)
        VALUES (gen_random_uuid(), %s, %s, %s)
        """,
        (user_id, hash_session_token(token), expires),
    )
    return token


def _session_response(payload: dict, token: str) -> JSONResponse:
    resp = JSONResponse(payload)
    resp.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=not settings.expose_errors,
        max_age=settings.session_days * 24 * 60 * 60,
        path="/",
    )
    return resp


@router.post("/login")
def login(data: LoginIn):
    email = (data.email or "").strip().lower()
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, email, password_hash, role, avatar_url, active
                FROM users
                WHERE email = %s
                """,
                (email,),
            )
            user = cur.fetchone()
            ok, new_hash = check_password(data.password, user["password_hash"] if user else None)
            if not ok:
                json_log("warning", "auth.login_failed", email=email)
                raise HTTPException(status_code=401, detail="invalid credentials")
            if not user["active"]:
                json_log("warning", "auth.login_failed", email=email, reason="inactive")
                raise HTTPException(status_code=403, detail="user is deactivated")

            if new_hash:
                cur.execute(
                    """
                    UPDATE users
                    SET password_hash = %s, updated_at = now()
                    WHERE id = %s
                    """,
                    (new_hash, user["id"]),
                )

            token = _issue_session(cur, user["id"])
            json_log("info", "auth.login", user_id=str(user["id"]), role=user["role"])
            return _session_response({"token": token, "user": _public_user(user)}, token)


@router.post("/logout")
def logout(session=Depends(get_session)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE auth_sessions
                SET is_active = false
                WHERE id = %s
                """,
                (session["session_id"],),
            )
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return resp


@router.get("/me")
def me(user=Depends(get_current_user)):
    return {"user": user}


@router.post("/password")
def change_password(data: PasswordChangeIn, session=Depends(get_session)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT password_hash FROM users WHERE id = %s", (session["user_id"],))
                row = cur.fetchone()
                if not row or not verify_password(data.current_password, row["password_hash"]):
                    raise HTTPException(status_code=400, detail="current password is incorrect")
                cur.execute(
                    """
                    UPDATE users
                    SET password_hash = %s, updated_at = now()
                    WHERE id = %s
                    """,
                    (hash_password(data.new_password), session["user_id"]),
                )
                # Other devices must sign in again.
                cur.execute(
                    """
                    UPDATE auth_sessions
                    SET is_active = false
                    WHERE user_id = %s AND id <> %s
                    """,
                    (session["user_id"], session["session_id"]),
                )
                log_audit(cur, session["user_id"], "user.password_change", "user", session["user_id"])
                return {"ok": True}


def _has_admin(cur) -> bool:
    cur.execute("SELECT 1 FROM users WHERE role = 'admin' AND active = true LIMIT 1")
    return cur.fetchone() is not None


@router.get("/setup-status")
def setup_status():
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"has_admin": _has_admin(cur)}


@router.post("/setup")
def create_initial_admin(data: InitialAdminIn):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                # Serialize concurrent first-run attempts.
                cur.execute("SELECT pg_advisory_xact_lock(hashtext('kioskpro.initial_admin'))")
                if _has_admin(cur):
                    raise HTTPException(status_code=409, detail="an admin user already exists")
                cur.execute(
                    """
                    INSERT INTO users (id, name, email, password_hash, role, active)
                    VALUES (gen_random_uuid(), %s, %s, %s, 'admin', true)
                    RETURNING id, name, email, role, avatar_url
                    """,
                    (data.name, data.email, hash_password(data.password)),
                )
                user = cur.fetchone()
                log_audit(cur, user["id"], "user.create_initial_admin", "user", user["id"], None, {"email": data.email})
                token = _issue_session(cur, user["id"])
                json_log("info", "auth.initial_admin_created", user_id=str(user["id"]))
                return _session_response({"token": token, "user": _public_user(user)}, token)
