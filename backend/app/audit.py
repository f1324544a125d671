import json
from typing import Optional


def write_audit_log(
    cur,
    user_id: Optional[int],
    action: str,
    entity_type: str,
    entity_id: Optional[int],
    details: Optional[dict] = None,
) -> None:
    # Runs inside the caller's transaction so the audit row commits (or rolls back) with the change.
    cur.execute(
        """
        INSERT INTO audit_logs (user_id, action, entity_type, entity_id, details)
        VALUES (%s, %s, %s, %s, %s::jsonb)
        """,
        (user_id, action, entity_type, entity_id, json.dumps(details or {}, default=str)),
    )
