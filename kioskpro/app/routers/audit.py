import json
from fastapi import APIRouter, Depends, HTTPException
from typing import Optional

from ..db import get_conn
from ..deps import require_admin
from ..logs import degrade_on_db_error

router = APIRouter(prefix="/audit", tags=["audit"])

MAX_LIMIT = 500


def _jsonb(value) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def log_audit(cur, user_id, action: str, entity_type: str, entity_id=None, old_values=None, new_values=None):
    # Runs on the caller's cursor so the audit row commits or rolls back with the change.
    cur.execute(
        """
        INSERT INTO audit_log (user_id, action, entity_type, entity_id, old_values, new_values)
        VALUES (%s, %s, %s, %s, %s::jsonb, %s::jsonb)
        """,
        (
            user_id,
            action,
            entity_type,
            str(entity_id) if entity_id is not None else None,
            _jsonb(old_values),
            _jsonb(new_values),
        ),
    )


def _actor(user) -> Optional[str]:
    return (user or {}).get("user_id")


@router.get("/logs", dependencies=[Depends(require_admin)])
@degrade_on_db_error("audit.logs", {"logs": [], "total": 0})
def list_audit_logs(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    action: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
):
    if limit <= 0 or limit > MAX_LIMIT:
        raise HTTPException(status_code=400, detail=f"limit must be between 1 and {MAX_LIMIT}")
    if offset < 0:
        raise HTTPException(status_code=400, detail="offset must be >= 0")
    where = ["1=1"]
    params = []
    if entity_type:
        where.append("a.entity_type = %s")
        params.append(entity_type.strip())
    if entity_id:
        where.append("a.entity_id = %s")
        params.append(entity_id.strip())
    if action:
        where.append("a.action LIKE %s")
        params.append(action.strip() + "%")
    if user_id:
        where.append("a.user_id = %s")
        params.append(user_id.strip())
    clause = " AND ".join(where)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*)::int AS c FROM audit_log a WHERE {clause}", params)
            total = cur.fetchone()["c"]
            cur.execute(
                f"""
                SELECT a.id, a.user_id, u.name AS user_name, u.email AS user_email,
                       a.action, a.entity_type, a.entity_id, a.old_values, a.new_values, a.created_at
                FROM audit_log a
                LEFT JOIN users u ON u.id = a.user_id
                WHERE {clause}
                ORDER BY a.created_at DESC, a.id DESC
                LIMIT %s OFFSET %s
                """,
                params + [limit, offset],
            )
            return {"logs": cur.fetchall(), "total": total}


@router.delete("/logs")
def clear_old_audit_logs(days_old: int = 90, user=Depends(require_admin)):
    if days_old < 1:
        raise HTTPException(status_code=400, detail="days_old must be >= 1")
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                DELETE FROM audit_log
                WHERE created_at < now() - make_interval(days => %s)
                """,
                (days_old,),
            )
            deleted = cur.rowcount
            log_audit(cur, _actor(user), "audit.purge", "audit_log", None, None, {"days_old": days_old, "deleted": deleted})
            return {"deleted": deleted}
