from fastapi import APIRouter, Depends, HTTPException
from psycopg import errors as pg_errors
from pydantic import BaseModel
from typing import Optional
from ..db import get_conn
from ..deps import require_admin
from ..security import hash_password
from ..validation import Email, Name, Password, UserRole
from .audit import log_audit

router = APIRouter(prefix="/users", tags=["users"], dependencies=[Depends(require_admin)])

USER_COLUMNS = "id, name, email, role, avatar_url, active, created_at, updated_at"


class UserIn(BaseModel):
    name: Name
    email: Email
    password: Password
    role: UserRole = "cashier"
    avatar_url: Optional[str] = None
    active: bool = True


class UserUpdate(BaseModel):
    name: Optional[Name] = None
    email: Optional[Email] = None
    role: Optional[UserRole] = None
    avatar_url: Optional[str] = None
    active: Optional[bool] = None


class PasswordSetIn(BaseModel):
    password: Password


@router.get("")
def list_users():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {USER_COLUMNS} FROM users ORDER BY created_at DESC")
            return {"users": cur.fetchall()}


@router.get("/stats")
def user_stats():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COUNT(*)::int AS total,
                       COUNT(*) FILTER (WHERE role = 'admin')::int AS admins,
                       COUNT(*) FILTER (WHERE role = 'manager')::int AS managers,
                       COUNT(*) FILTER (WHERE role = 'cashier')::int AS cashiers,
                       COUNT(*) FILTER (WHERE active = true)::int AS active
                FROM users
                """
            )
            return cur.fetchone()


@router.get("/by-email")
def get_user_by_email(email: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {USER_COLUMNS} FROM users WHERE email = %s", ((email or "").strip().lower(),))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="user not found")
            return {"user": row}


@router.get("/{user_id}")
def get_user(user_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {USER_COLUMNS} FROM users WHERE id = %s", (user_id,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="user not found")
            return {"user": row}


@router.post("")
def create_user(data: UserIn, admin=Depends(require_admin)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO users (id, name, email, password_hash, role, avatar_url, active)
                VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s)
                RETURNING {USER_COLUMNS}
                """,
                (data.name, data.email, hash_password(data.password), data.role, data.avatar_url, data.active),
            )
            row = cur.fetchone()
            log_audit(cur, admin["user_id"], "user.create", "user", row["id"], None,
                      {"email": data.email, "role": data.role})
            return {"user": row}


@router.patch("/{user_id}")
def update_user(user_id: str, data: UserUpdate, admin=Depends(require_admin)):
    payload = data.model_dump(exclude_none=True)
    if not payload:
        return {"ok": True}
    if str(user_id) == str(admin["user_id"]) and (payload.get("active") is False or payload.get("role", "admin") != "admin"):
        raise HTTPException(status_code=400, detail="you cannot demote or deactivate your own account")
    fields = []
    params = []
    for k, v in payload.items():
        fields.append(f"{k} = %s")
        params.append(v)
    params.append(user_id)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE users
                SET {', '.join(fields)}, updated_at = now()
                WHERE id = %s
                RETURNING {USER_COLUMNS}
                """,
                params,
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="user not found")
            if payload.get("active") is False:
                cur.execute("UPDATE auth_sessions SET is_active = false WHERE user_id = %s", (user_id,))
            log_audit(cur, admin["user_id"], "user.update", "user", user_id, None, payload)
            return {"user": row}


@router.post("/{user_id}/password")
def set_user_password(user_id: str, data: PasswordSetIn, admin=Depends(require_admin)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE users
                    SET password_hash = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING id
                    """,
                    (hash_password(data.password), user_id),
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="user not found")
                # Old tokens must not survive a reset.
                cur.execute("UPDATE auth_sessions SET is_active = false WHERE user_id = %s", (user_id,))
                log_audit(cur, admin["user_id"], "user.password_reset", "user", user_id)
                return {"ok": True}


@router.delete("/{user_id}")
def delete_user(user_id: str, admin=Depends(require_admin)):
    if str(user_id) == str(admin["user_id"]):
        raise HTTPException(status_code=400, detail="you cannot delete your own account")
    with get_conn() as conn:
        with conn.cursor() as cur:
            try:
                cur.execute("DELETE FROM users WHERE id = %s RETURNING email", (user_id,))
            except pg_errors.ForeignKeyViolation:
                raise HTTPException(status_code=409, detail="user has recorded sales or registers; deactivate it instead")
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="user not found")
            log_audit(cur, admin["user_id"], "user.delete", "user", user_id, {"email": row["email"]}, None)
            return {"ok": True}
