"""
Caller identity and permission checks.

Identity is established upstream; the proxy forwards it as X-User-* headers.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Header

ROLE_PERMISSIONS = {
    "super_admin": {"view", "manage", "export"},
    "finance_manager": {"view", "manage", "export"},
    "manager": {"view", "manage"},
    "staff": {"view"},
}

SYSTEM_USER_ID = "system"


@dataclass(frozen=True)
class Actor:
    user_id: Optional[str]
    email: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = None

    def can(self, permission: str) -> bool:
        if not self.user_id:
            return False
        return permission in ROLE_PERMISSIONS.get(self.role or "", set())


SYSTEM_ACTOR = Actor(user_id=SYSTEM_USER_ID, name="System", role="super_admin")


async def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Actor:
    """Build the caller from the forwarded identity headers"""
    return Actor(
        user_id=x_user_id or None,
        email=x_user_email or None,
        name=x_user_name or None,
        role=(x_user_role or "").strip().lower() or None,
    )
