from __future__ import annotations

import uuid

from erp_ops.contexts.auth.application.service import DEFAULT_PERMISSIONS, AccessService
from erp_ops.domain.contracts import Capability, PermissionKey


def bootstrap_capability() -> Capability:
    """Full-catalog token used only to register the actors a test needs."""
    return Capability(
        actor_id=0,
        active=True,
        role_name="GM",
        permissions=frozenset(PermissionKey(item["module"], item["action"]) for item in DEFAULT_PERMISSIONS),
        allowed_pages=frozenset(),
    )


def actor_with_role(db, role_name: str, *, active: bool = True, access: AccessService | None = None) -> Capability:
    access = access or AccessService()
    user_id = access.register_actor(
        db,
        bootstrap_capability(),
        name=f"{role_name.title()} Tester",
        email=f"{role_name.lower()}-{uuid.uuid4().hex[:8]}@example.com",
        role_name=role_name,
        active=active,
    )
    return access.resolve_capability(db, user_id)
