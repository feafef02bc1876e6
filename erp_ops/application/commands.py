from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping

from erp_ops.contexts.auth.application.service import AccessService
from erp_ops.contexts.procurement.application.service import ProcurementService
from erp_ops.contexts.stock.application.service import StockLedger
from erp_ops.domain.contracts import (
    PURCHASE_APPROVE,
    PURCHASE_REQUEST,
    STOCK_MOVE,
    SYSTEM_ADMIN,
    USERS_MANAGE,
    AllocationOwner,
    ApprovalInput,
    Capability,
    PurchaseRequestCreateInput,
    RoleInput,
    ServiceOutput,
    StatusAdvanceInput,
)
from erp_ops.errors import AppError, InvalidRequest
from erp_ops.observability import current_request_id
from erp_ops.policies import require_permission
from erp_ops.procurement.quotation import parse_quotations
from erp_ops.ui_strings import success_message


_SUCCESS_MESSAGE_KEYS: Dict[str, str] = {
    "create_request": "purchase_request_created",
    "update_request": "purchase_request_updated",
    "approve_request": "purchase_request_approved",
    "reject_request": "purchase_request_rejected",
    "advance_request_status": "purchase_request_advanced",
    "advance_requests_batch": "purchase_request_advanced",
    "allocate_stock": "stock_allocated",
    "release_stock": "stock_released",
}


# Any one key suffices; checked before the payload is parsed.
_COMMAND_PERMISSIONS: Dict[str, tuple] = {
    "create_request": (PURCHASE_REQUEST,),
    "update_request": (PURCHASE_REQUEST, PURCHASE_APPROVE),
    "approve_request": (PURCHASE_APPROVE,),
    "reject_request": (PURCHASE_APPROVE,),
    "advance_request_status": (PURCHASE_APPROVE,),
    "advance_requests_batch": (PURCHASE_APPROVE,),
    "delete_request": (SYSTEM_ADMIN,),
    "allocate_stock": (STOCK_MOVE,),
    "release_stock": (STOCK_MOVE,),
    "upsert_role": (USERS_MANAGE,),
    "define_permission": (SYSTEM_ADMIN,),
}


def _as_int(payload: Mapping[str, Any], key: str, *, required: bool = True) -> int | None:
    value = payload.get(key)
    if value is None or value == "":
        if required:
            raise InvalidRequest(details=f"{key} is required")
        return None
    if isinstance(value, bool):
        raise InvalidRequest(details=f"{key} must be an integer")
    if isinstance(value, int):
        return value
    raw = str(value).strip()
    if raw.lstrip("-").isdigit():
        return int(raw)
    raise InvalidRequest(details=f"{key} must be an integer")


def _as_list(payload: Mapping[str, Any], key: str) -> list:
    value = payload.get(key)
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise InvalidRequest(details=f"{key} must be a list")
    return list(value)


def _as_mapping(payload: Mapping[str, Any], key: str) -> Dict[str, Any]:
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise InvalidRequest(details=f"{key} must be an object")
    return dict(value)


class CommandDispatcher:
    """Inbound boundary: capability + payload in, entity payload or typed failure out."""

    def __init__(
        self,
        procurement: ProcurementService | None = None,
        stock: StockLedger | None = None,
        access: AccessService | None = None,
    ) -> None:
        self.stock = stock or StockLedger()
        self.procurement = procurement or ProcurementService(stock_ledger=self.stock)
        self.access = access or AccessService()
        self._logger = logging.getLogger("erp_ops.commands")
        self._handlers: Dict[str, Callable[[Any, Capability, Mapping[str, Any]], ServiceOutput]] = {
            "create_request": self._create_request,
            "update_request": self._update_request,
            "approve_request": self._approve_request,
            "reject_request": self._reject_request,
            "advance_request_status": self._advance_request_status,
            "advance_requests_batch": self._advance_requests_batch,
            "delete_request": self._delete_request,
            "allocate_stock": self._allocate_stock,
            "release_stock": self._release_stock,
            "upsert_role": self._upsert_role,
            "define_permission": self._define_permission,
        }

    @property
    def command_names(self) -> list[str]:
        return sorted(self._handlers)

    def dispatch(self, db, name: str, capability: Capability, payload: Mapping[str, Any] | None = None) -> ServiceOutput:
        request_id = current_request_id(default="n/a")
        try:
            command = str(name or "").strip()
            handler = self._handlers.get(command)
            if handler is None:
                raise InvalidRequest(details=f"unknown command {name!r}")
            require_permission(capability, *_COMMAND_PERMISSIONS[command])
            if payload is not None and not isinstance(payload, Mapping):
                raise InvalidRequest(details="payload must be an object")
            result = handler(db, capability, payload or {})
        except AppError as exc:
            log_method = self._logger.error if exc.critical else self._logger.warning
            log_method(
                "command_failed",
                extra={
                    "request_id": request_id,
                    "command": name,
                    "error_code": exc.code,
                    "error_kind": exc.kind,
                    "http_status": exc.http_status,
                    "details": exc.details,
                    "actor_id": getattr(capability, "actor_id", None),
                },
            )
            return ServiceOutput(payload=exc.to_response_payload(request_id), status_code=exc.http_status)

        message_key = _SUCCESS_MESSAGE_KEYS.get(command)
        if message_key:
            return ServiceOutput(
                payload={**result.payload, "message": success_message(message_key)},
                status_code=result.status_code,
            )
        return result

    # Procurement ---------------------------------------------------------

    def _create_request(self, db, capability: Capability, payload: Mapping[str, Any]) -> ServiceOutput:
        created = self.procurement.create(
            db,
            capability,
            PurchaseRequestCreateInput(
                item_name=str(payload.get("item_name") or ""),
                quantity=_as_int(payload, "quantity"),
                quotations=parse_quotations(_as_list(payload, "quotations")),
                description=payload.get("description"),
                category_ref=_as_int(payload, "category_ref", required=False),
                project_ref=_as_int(payload, "project_ref", required=False),
                stage_ref=_as_int(payload, "stage_ref", required=False),
                stock_item_ref=_as_int(payload, "stock_item_ref", required=False),
            ),
        )
        return ServiceOutput(payload=created.to_payload(), status_code=201)

    def _update_request(self, db, capability: Capability, payload: Mapping[str, Any]) -> ServiceOutput:
        updated = self.procurement.update(
            db,
            capability,
            _as_int(payload, "request_id"),
            _as_mapping(payload, "fields"),
            expected_version=_as_int(payload, "expected_version", required=False),
        )
        return ServiceOutput(payload=updated.to_payload())

    def _approve_request(self, db, capability: Capability, payload: Mapping[str, Any]) -> ServiceOutput:
        approved = self.procurement.approve(
            db,
            capability,
            ApprovalInput(
                purchase_request_id=_as_int(payload, "request_id"),
                quotations=parse_quotations(_as_list(payload, "quotations")),
                selected_index=_as_int(payload, "selected_index"),
                expected_version=_as_int(payload, "expected_version", required=False),
            ),
        )
        return ServiceOutput(payload=approved.to_payload())

    def _reject_request(self, db, capability: Capability, payload: Mapping[str, Any]) -> ServiceOutput:
        rejected = self.procurement.reject(
            db,
            capability,
            _as_int(payload, "request_id"),
            str(payload.get("reason") or ""),
            expected_version=_as_int(payload, "expected_version", required=False),
        )
        return ServiceOutput(payload=rejected.to_payload())

    def _advance_request_status(self, db, capability: Capability, payload: Mapping[str, Any]) -> ServiceOutput:
        advanced = self.procurement.advance(
            db,
            capability,
            StatusAdvanceInput(
                purchase_request_id=_as_int(payload, "request_id"),
                target_status=str(payload.get("target_status") or ""),
                extra=_as_mapping(payload, "extra"),
                expected_version=_as_int(payload, "expected_version", required=False),
            ),
        )
        return ServiceOutput(payload=advanced.to_payload())

    def _advance_requests_batch(self, db, capability: Capability, payload: Mapping[str, Any]) -> ServiceOutput:
        ids = []
        for raw in _as_list(payload, "request_ids"):
            ids.append(_as_int({"request_id": raw}, "request_id"))
        advanced = self.procurement.advance_batch(db, capability, ids, _as_mapping(payload, "extra"))
        return ServiceOutput(payload={"items": [item.to_payload() for item in advanced]})

    def _delete_request(self, db, capability: Capability, payload: Mapping[str, Any]) -> ServiceOutput:
        request_id = _as_int(payload, "request_id")
        self.procurement.delete(db, capability, request_id, override=bool(payload.get("override")))
        return ServiceOutput(payload={"id": request_id, "deleted": True})

    # Stock ---------------------------------------------------------------

    def _allocate_stock(self, db, capability: Capability, payload: Mapping[str, Any]) -> ServiceOutput:
        item_id = _as_int(payload, "item_id")
        owner_payload = _as_mapping(payload, "owner")
        owner = AllocationOwner(
            project_ref=_as_int(owner_payload, "project_ref", required=False),
            stage_ref=_as_int(owner_payload, "stage_ref", required=False),
            user_ref=_as_int(owner_payload, "user_ref", required=False),
            purchase_request_ref=_as_int(owner_payload, "purchase_request_ref", required=False),
        )
        allocation_id = self.stock.allocate(db, capability, item_id, _as_int(payload, "quantity"), owner)
        quantities = self.stock.quantities(db, item_id)
        return ServiceOutput(
            payload={"allocation_id": allocation_id, "item_id": item_id, "quantities": quantities.to_payload()},
            status_code=201,
        )

    def _release_stock(self, db, capability: Capability, payload: Mapping[str, Any]) -> ServiceOutput:
        allocation_id = _as_int(payload, "allocation_id")
        self.stock.release(db, capability, allocation_id)
        return ServiceOutput(payload={"allocation_id": allocation_id, "released": True})

    # Access --------------------------------------------------------------

    def _upsert_role(self, db, capability: Capability, payload: Mapping[str, Any]) -> ServiceOutput:
        role = self.access.define_role(
            db,
            capability,
            RoleInput(
                name=str(payload.get("name") or ""),
                description=payload.get("description"),
                allowed_pages=[str(page) for page in _as_list(payload, "allowed_pages")],
                permission_keys=[str(key) for key in _as_list(payload, "permission_keys")],
                active=bool(payload.get("active", True)),
            ),
        )
        return ServiceOutput(payload=role.to_payload())

    def _define_permission(self, db, capability: Capability, payload: Mapping[str, Any]) -> ServiceOutput:
        key = self.access.define_permission(
            db,
            capability,
            module=str(payload.get("module") or ""),
            action=str(payload.get("action") or ""),
            description=payload.get("description"),
        )
        return ServiceOutput(payload={"key": str(key), "module": key.module, "action": key.action})
