from fastapi import Header, HTTPException, Depends, Cookie
from .db import get_conn
from .permissions import Permission, has_permission
from .security import hash_session_token
from datetime import datetime, timezone
from typing import Optional


SESSION_COOKIE_NAME = "backoffice_session"


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
                SELECT s.id AS session_id, s.user_id, u.name, u.email, s.expires_at, s.is_active, u.is_active AS user_active
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token_hash = %s
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
            now = datetime.now(timezone.utc)
            if not row or not row["is_active"] or not row["user_active"] or row["expires_at"] < now:
                raise HTTPException(status_code=401, detail="invalid token")
            return {
                "session_id": row["session_id"],
                "user_id": int(row["user_id"]),
                "name": row["name"],
                "email": row["email"],
            }


def get_current_user(session=Depends(get_session)):
    return {"user_id": session["user_id"], "name": session["name"], "email": session["email"]}


def require_permission(permission: Permission):
    code = Permission(permission)

    def _dep(user=Depends(get_current_user)):
        with get_conn() as conn:
            with conn.cursor() as cur:
                if not has_permission(cur, user["user_id"], code):
                    raise HTTPException(status_code=403, detail="permission denied")
        return True
    return _dep


def raise_for_failure(result: Optional[dict]) -> dict:
    # Core functions report business failures as {"success": False, "error": code}.
    if result is None or result.get("success", True):
        return result
    code = str(result.get("error") or "")
    status = 404 if code.endswith("_not_found") else 400
    raise HTTPException(status_code=status, detail={"error": code, "message": result.get("message")})
