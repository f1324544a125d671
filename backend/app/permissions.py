from enum import Enum


class Permission(str, Enum):
    ORDERS_READ = "orders:read"
    ORDERS_WRITE = "orders:write"
    INVOICES_WRITE = "invoices:write"
    COMMISSIONS_READ = "commissions:read"
    COMMISSIONS_WRITE = "commissions:write"
    COMMISSIONS_APPROVE = "commissions:approve"
    COMMISSIONS_PAY = "commissions:pay"
    CUSTOMERS_BALANCE = "customers:balance"


def has_permission(cur, user_id: int, permission: Permission) -> bool:
    cur.execute(
        """
        SELECT 1
        FROM user_permissions up
        JOIN permissions p ON p.id = up.permission_id
        JOIN users u ON u.id = up.user_id
        WHERE up.user_id = %s AND p.code = %s AND u.is_active = true
        LIMIT 1
        """,
        (user_id, Permission(permission).value),
    )
    return cur.fetchone() is not None
