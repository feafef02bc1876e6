from __future__ import annotations

import logging
from typing import FrozenSet

from erp_ops.domain.contracts import Capability, PermissionKey
from erp_ops.errors import Forbidden
from erp_ops.observability import observe_permission_denied


_logger = logging.getLogger("erp_ops.policies")


def normalize_role_name(name: str | None) -> str:
    return str(name or "").strip().upper()


def can(capability: Capability | None, permission_key: PermissionKey | str) -> bool:
    if capability is None or not capability.active:
        return False
    return PermissionKey.parse(permission_key) in capability.permissions


def pages_for(capability: Capability | None) -> FrozenSet[str]:
    if capability is None or not capability.active:
        return frozenset()
    return frozenset(capability.allowed_pages)


def has_any_permission(capability: Capability | None, *permission_keys: PermissionKey | str) -> bool:
    return any(can(capability, key) for key in permission_keys)


def require_permission(capability: Capability | None, *permission_keys: PermissionKey | str) -> Capability:
    """Fail closed unless the actor holds at least one of the given keys."""
    if capability is not None and has_any_permission(capability, *permission_keys):
        return capability
    observe_permission_denied()
    _logger.warning(
        "permission_denied",
        extra={
            "actor_id": getattr(capability, "actor_id", None),
            "required_permissions": [str(PermissionKey.parse(key)) for key in permission_keys],
            "actor_active": bool(getattr(capability, "active", False)),
        },
    )
    raise Forbidden(
        code="permission_denied",
        message_key="permission_denied",
        http_status=403,
        critical=False,
    )
