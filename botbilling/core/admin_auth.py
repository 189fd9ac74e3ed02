"""
Admin authentication for billing operations.

Admins are regular authenticated users holding the super_admin role in the
admin_users table. The same lookup backs the super-admin entitlement
capability, so both paths agree on who is an admin.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from sqlalchemy import select

from botbilling.core.auth import AuthUser, get_current_user
from botbilling.core.database import get_db_session, admin_users
from botbilling.core.errors import PermissionError


logger = logging.getLogger(__name__)


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str
    actor_email: Optional[str] = None
    role: str = "super_admin"


def is_super_admin(user_id: Optional[str]) -> bool:
    """True when the user holds the super_admin role."""
    if not user_id:
        return False
    with get_db_session() as session:
        row = session.execute(
            select(admin_users.c.role).where(admin_users.c.user_id == user_id)
        ).fetchone()
    return bool(row and row.role == "super_admin")


def require_super_admin(user: AuthUser = Depends(get_current_user)) -> AdminActor:
    """
    FastAPI dependency: require a super admin caller.

    Usage:
        @router.get("/admin/endpoint")
        def admin_endpoint(actor: AdminActor = Depends(require_super_admin)):
            ...
    """
    if not is_super_admin(user.user_id):
        logger.warning("admin.forbidden", extra={"user_id": user.user_id})
        raise PermissionError("Super admin access required")
    return AdminActor(actor_id=user.user_id, actor_email=user.email)
