from __future__ import annotations

import logging
from typing import Dict, Iterable, List

from erp_ops.contexts.auth.infrastructure.repository import AccessRepository
from erp_ops.domain.contracts import (
    SYSTEM_ADMIN,
    USERS_MANAGE,
    Capability,
    PermissionKey,
    Role,
    RoleInput,
)
from erp_ops.errors import Conflict, InvalidRequest, NotFound
from erp_ops.policies import normalize_role_name, require_permission


DEFAULT_PERMISSIONS: List[Dict[str, str]] = [
    {"module": "projetos", "action": "visualizar", "description": "Visualizar projetos"},
    {"module": "projetos", "action": "editar", "description": "Criar e editar projetos"},
    {"module": "projetos", "action": "aprovar", "description": "Aprovar etapas e metas de projetos"},
    {"module": "trabalhos", "action": "visualizar", "description": "Visualizar tarefas atribuidas"},
    {"module": "trabalhos", "action": "registrar", "description": "Registrar progresso e anexos das tarefas"},
    {"module": "trabalhos", "action": "avaliar", "description": "Avaliar entregas e aprovar objetivos"},
    {"module": "compras", "action": "solicitar", "description": "Solicitar compras e orcamentos"},
    {"module": "compras", "action": "aprovar", "description": "Aprovar solicitacoes de compras"},
    {"module": "estoque", "action": "visualizar", "description": "Visualizar itens de estoque"},
    {"module": "estoque", "action": "movimentar", "description": "Registrar movimentacoes de estoque"},
    {"module": "usuarios", "action": "gerenciar", "description": "Gerenciar usuarios e cargos"},
    {"module": "sistema", "action": "administrar", "description": "Administrar configuracoes avancadas do sistema"},
]

DEFAULT_PAGES: List[Dict[str, str]] = [
    {"path": "/dashboard", "label": "Painel"},
    {"path": "/projects", "label": "Projetos"},
    {"path": "/tasks/my", "label": "Minhas tarefas"},
    {"path": "/stock", "label": "Estoque"},
    {"path": "/occurrences", "label": "Ocorrencias"},
    {"path": "/requests", "label": "Solicitacoes"},
    {"path": "/users", "label": "Usuarios"},
    {"path": "/cargos", "label": "Cargos"},
]

_ALL_KEYS = [f"{item['module']}:{item['action']}" for item in DEFAULT_PERMISSIONS]
_ALL_PAGES = [item["path"] for item in DEFAULT_PAGES]

DEFAULT_ROLES: List[RoleInput] = [
    RoleInput(
        name="EXECUTOR",
        description="Executor de tarefas",
        allowed_pages=["/tasks/my", "/occurrences", "/requests"],
        permission_keys=["projetos:visualizar", "trabalhos:visualizar", "trabalhos:registrar"],
    ),
    RoleInput(
        name="SUPERVISOR",
        description="Supervisor de projetos",
        allowed_pages=["/projects", "/tasks/my", "/occurrences", "/requests"],
        permission_keys=[
            "projetos:visualizar",
            "projetos:editar",
            "projetos:aprovar",
            "trabalhos:visualizar",
            "trabalhos:registrar",
            "trabalhos:avaliar",
        ],
    ),
    RoleInput(
        name="COMPRADOR",
        description="Responsavel por compras e estoque",
        allowed_pages=["/tasks/my", "/stock", "/requests"],
        permission_keys=[
            "projetos:visualizar",
            "compras:solicitar",
            "compras:aprovar",
            "estoque:visualizar",
            "estoque:movimentar",
        ],
    ),
    RoleInput(
        name="DIRETOR",
        description="Diretor com acesso total ao sistema",
        allowed_pages=list(_ALL_PAGES),
        permission_keys=list(_ALL_KEYS),
    ),
    RoleInput(
        name="GM",
        description="Gerente Master com controle total do ERP",
        allowed_pages=list(_ALL_PAGES),
        permission_keys=list(_ALL_KEYS),
    ),
]


class AccessService:
    """Role/permission registry and capability resolution."""

    def __init__(self, repository: AccessRepository | None = None) -> None:
        self.repository = repository or AccessRepository()
        self._logger = logging.getLogger("erp_ops.access")

    # Catalog -------------------------------------------------------------

    def define_permission(
        self,
        db,
        capability: Capability,
        *,
        module: str,
        action: str,
        description: str | None = None,
    ) -> PermissionKey:
        require_permission(capability, SYSTEM_ADMIN)
        return self._define_permission(db, module=module, action=action, description=description)

    def _define_permission(self, db, *, module: str, action: str, description: str | None) -> PermissionKey:
        key = PermissionKey(module, action)
        if not key.module or not key.action or ":" in key.module or ":" in key.action:
            raise InvalidRequest(message_key="permission_invalid", details=f"invalid permission key {key}")
        self.repository.upsert_permission(
            db,
            module=key.module,
            action=key.action,
            description=(description or "").strip() or None,
        )
        return key

    def define_page(self, db, capability: Capability, *, path: str, label: str | None = None) -> str:
        require_permission(capability, SYSTEM_ADMIN)
        return self._define_page(db, path=path, label=label)

    def _define_page(self, db, *, path: str, label: str | None) -> str:
        normalized = str(path or "").strip()
        if not normalized.startswith("/"):
            raise InvalidRequest(message_key="page_unknown", details=f"invalid page path {path!r}")
        self.repository.upsert_page(db, path=normalized, label=(label or "").strip() or None)
        return normalized

    def list_permissions(self, db) -> List[PermissionKey]:
        return [PermissionKey(row["module"], row["action"]) for row in self.repository.list_permissions(db)]

    def list_pages(self, db) -> List[str]:
        return [str(row["path"]) for row in self.repository.list_pages(db)]

    # Roles ---------------------------------------------------------------

    def define_role(self, db, capability: Capability, role_input: RoleInput) -> Role:
        require_permission(capability, USERS_MANAGE)
        return self._define_role(db, role_input)

    def _define_role(self, db, role_input: RoleInput) -> Role:
        name = normalize_role_name(role_input.name)
        if not name:
            raise InvalidRequest(message_key="role_name_required", details="role name is required")
        description = (role_input.description or "").strip() or None

        with db.transaction():
            permission_ids = self._resolve_permission_ids(db, role_input.permission_keys)
            page_ids = self._resolve_page_ids(db, role_input.allowed_pages)

            existing = self.repository.find_role_by_name(db, name)
            if existing:
                role_id = int(existing["id"])
                self.repository.update_role(db, role_id, description=description, active=role_input.active)
            else:
                role_id = self.repository.create_role(db, name=name, description=description, active=role_input.active)
            # Full replace, inside the same transaction as the role row.
            self.repository.replace_role_permissions(db, role_id, permission_ids)
            self.repository.replace_role_pages(db, role_id, page_ids)
            role = self._load_role(db, role_id)

        self._logger.info(
            "role_defined",
            extra={
                "role": role.name,
                "role_id": role.id,
                "permissions_count": len(role.permissions),
                "pages_count": len(role.allowed_pages),
                "created": existing is None,
            },
        )
        return role

    def _resolve_permission_ids(self, db, raw_keys: Iterable[str]) -> List[int]:
        parsed: List[PermissionKey] = []
        for raw in raw_keys or []:
            if not str(raw or "").strip():
                continue
            try:
                parsed.append(PermissionKey.parse(str(raw).strip()))
            except ValueError as exc:
                raise InvalidRequest(message_key="permission_invalid", details=str(exc)) from exc

        catalog = {PermissionKey(row["module"], row["action"]): int(row["id"]) for row in self.repository.list_permissions(db)}
        missing = sorted({str(key) for key in parsed if key not in catalog})
        if missing:
            raise InvalidRequest(
                message_key="permission_unknown",
                details=f"unknown permission keys: {', '.join(missing)}",
                payload={"missing": missing},
            )
        return [catalog[key] for key in parsed]

    def _resolve_page_ids(self, db, raw_pages: Iterable[str]) -> List[int]:
        requested = [str(page or "").strip() for page in raw_pages or [] if str(page or "").strip()]
        catalog = {str(row["path"]): int(row["id"]) for row in self.repository.list_pages(db)}
        missing = sorted({page for page in requested if page not in catalog})
        if missing:
            raise InvalidRequest(
                message_key="page_unknown",
                details=f"unknown pages: {', '.join(missing)}",
                payload={"missing": missing},
            )
        return [catalog[page] for page in requested]

    def _load_role(self, db, role_id: int) -> Role:
        row = self.repository.get_role(db, role_id)
        if not row:
            raise NotFound(message_key="role_not_found", details=f"role {role_id} not found")
        permissions = frozenset(
            PermissionKey(item["module"], item["action"]) for item in self.repository.role_permission_rows(db, role_id)
        )
        return Role(
            id=int(row["id"]),
            name=str(row["name"]),
            description=row["description"],
            active=bool(row["active"]),
            allowed_pages=frozenset(self.repository.role_page_paths(db, role_id)),
            permissions=permissions,
        )

    def get_role(self, db, name: str) -> Role:
        row = self.repository.find_role_by_name(db, normalize_role_name(name))
        if not row:
            raise NotFound(message_key="role_not_found", details=f"role {name!r} not found")
        return self._load_role(db, int(row["id"]))

    def list_roles(self, db, *, include_inactive: bool = False) -> List[Role]:
        return [
            self._load_role(db, int(row["id"]))
            for row in self.repository.list_roles(db, include_inactive=include_inactive)
        ]

    def deactivate_role(self, db, capability: Capability, name: str) -> Role:
        require_permission(capability, USERS_MANAGE)
        role = self.get_role(db, name)
        self.repository.set_role_active(db, role.id, False)
        self._logger.info("role_deactivated", extra={"role": role.name, "role_id": role.id})
        return self._load_role(db, role.id)

    def delete_role(self, db, capability: Capability, name: str) -> None:
        require_permission(capability, USERS_MANAGE)
        with db.transaction():
            role = self.get_role(db, name)
            users_count = self.repository.count_users_with_role(db, role.id)
            if users_count > 0:
                raise Conflict(
                    message_key="role_in_use",
                    details=f"role {role.name} is held by {users_count} user(s)",
                    payload={"users_count": users_count},
                )
            self.repository.delete_role(db, role.id)
        self._logger.info("role_deleted", extra={"role": role.name, "role_id": role.id})

    # Actors --------------------------------------------------------------

    def register_actor(
        self,
        db,
        capability: Capability,
        *,
        name: str,
        email: str,
        role_name: str,
        active: bool = True,
    ) -> int:
        require_permission(capability, USERS_MANAGE)
        return self._register_actor(db, name=name, email=email, role_name=role_name, active=active)

    def _register_actor(self, db, *, name: str, email: str, role_name: str, active: bool = True) -> int:
        normalized_email = str(email or "").strip().lower()
        normalized_name = str(name or "").strip()
        if not normalized_email or not normalized_name:
            raise InvalidRequest(details="name and email are required")
        role = self.get_role(db, role_name)
        if self.repository.email_exists(db, normalized_email):
            raise Conflict(details=f"email {normalized_email} already registered")
        user_id = self.repository.create_user(
            db,
            name=normalized_name,
            email=normalized_email,
            role_id=role.id,
            active=active,
        )
        self._logger.info("actor_registered", extra={"actor_id": user_id, "role": role.name})
        return user_id

    def set_actor_active(self, db, capability: Capability, user_id: int, active: bool) -> None:
        require_permission(capability, USERS_MANAGE)
        self._require_user(db, user_id)
        self.repository.update_user(db, user_id, {"active": bool(active)})

    def assign_role(self, db, capability: Capability, user_id: int, role_name: str) -> None:
        require_permission(capability, USERS_MANAGE)
        self._require_user(db, user_id)
        role = self.get_role(db, role_name)
        self.repository.update_user(db, user_id, {"role_id": role.id})

    def _require_user(self, db, user_id: int) -> dict:
        user = self.repository.get_user(db, user_id)
        if not user:
            raise NotFound(message_key="user_not_found", details=f"user {user_id} not found")
        return user

    def resolve_capability(self, db, user_id: int) -> Capability:
        """Build the capability token handed to every command for this actor."""
        user = self._require_user(db, user_id)
        role = self._load_role(db, int(user["role_id"]))
        active = bool(user["active"]) and role.active
        return Capability(
            actor_id=int(user["id"]),
            active=active,
            role_name=role.name,
            permissions=role.permissions,
            allowed_pages=role.allowed_pages,
        )

    # Bootstrap -----------------------------------------------------------

    def seed_defaults(self, db) -> List[Role]:
        for permission in DEFAULT_PERMISSIONS:
            self._define_permission(db, **permission)
        for page in DEFAULT_PAGES:
            self._define_page(db, **page)
        roles = [self._define_role(db, role_input) for role_input in DEFAULT_ROLES]
        self._logger.info("access_catalog_seeded", extra={"roles": [role.name for role in roles]})
        return roles
