from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping

from erp_ops.contexts.procurement.infrastructure.repositories.purchase_request_repository import (
    PurchaseRequestRepository,
)
from erp_ops.contexts.procurement.infrastructure.repositories.status_event_repository import StatusEventRepository
from erp_ops.contexts.stock.application.service import StockLedger
from erp_ops.core import EventBus, PurchaseRequestCreated, PurchaseRequestStatusChanged, get_event_bus
from erp_ops.domain.contracts import (
    PURCHASE_APPROVE,
    PURCHASE_REQUEST,
    SYSTEM_ADMIN,
    AllocationOwner,
    ApprovalInput,
    Capability,
    PurchaseRequest,
    PurchaseRequestCreateInput,
    StatusAdvanceInput,
)
from erp_ops.errors import Conflict, InvalidQuantity, InvalidRequest, InvalidTransition, NotFound
from erp_ops.infrastructure.repositories.base import dump_json, load_json, to_datetime, to_decimal
from erp_ops.observability import observe_status_transition
from erp_ops.policies import require_permission
from erp_ops.procurement.delivery import delivery_info_from_json, merge_delivery_info, parse_delivery_extra
from erp_ops.procurement.flow_policy import (
    COMPRADO_ACAMINHO,
    ENTREGUE,
    PENDENTE,
    PURCHASE_STATUSES,
    REPROVADO,
    SOLICITADO,
    action_allowed,
    is_terminal,
    transition_allowed,
)
from erp_ops.procurement.quotation import Quotation, compare_quotations, parse_quotations, stored_unit_value


ENTITY = "purchase_request"
APPROVABLE_STATUSES = frozenset({SOLICITADO, PENDENTE})
ADVANCE_TARGETS = frozenset({COMPRADO_ACAMINHO, ENTREGUE})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _delivery_json(info) -> str | None:
    return dump_json(info.to_payload()) if info is not None else None


# Fields a requester may still change before approval, with accepted payload aliases.
_EDITABLE_FIELDS: Dict[str, tuple[str, ...]] = {
    "item_name": ("item_name", "item"),
    "description": ("description", "descricao"),
    "quantity": ("quantity", "quantidade"),
    "quotations": ("quotations", "cotacoes"),
    "category_ref": ("category_ref", "categoriaId"),
    "project_ref": ("project_ref", "projetoId"),
    "stage_ref": ("stage_ref", "etapaId"),
    "stock_item_ref": ("stock_item_ref", "itemId"),
}
_EDITABLE_ALIASES = {alias: name for name, aliases in _EDITABLE_FIELDS.items() for alias in aliases}


def _check_request_quotations(quotations: List[Quotation]) -> List[Quotation]:
    if not quotations:
        return quotations
    if any(quotation.unit_price <= 0 for quotation in quotations):
        raise InvalidRequest(
            message_key="quotation_price_required",
            details="every quotation needs a unit price greater than zero",
        )
    if not any(quotation.has_link for quotation in quotations):
        raise InvalidRequest(
            message_key="quotation_link_required",
            details="at least one quotation needs a link",
        )
    return quotations


def _optional_ref(field_name: str, value: Any) -> int | None:
    if isinstance(value, bool):
        raise InvalidRequest(details=f"{field_name} must be an integer")
    if value in (None, "", 0):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidRequest(details=f"{field_name} must be an integer") from exc


def _parse_request_edits(fields: Mapping[str, Any] | None) -> Dict[str, Any]:
    """Normalize an edit payload into column values, applying the create rules."""
    if not isinstance(fields, Mapping):
        raise InvalidRequest(details="fields must be an object")
    edits: Dict[str, Any] = {}
    for key, value in fields.items():
        name = _EDITABLE_ALIASES.get(str(key))
        if name is None:
            raise InvalidRequest(message_key="field_not_editable", details=f"{key} cannot be edited")
        if name in edits:
            raise InvalidRequest(details=f"{name} was sent more than once")
        if name == "item_name":
            value = str(value or "").strip()
            if not value:
                raise InvalidRequest(message_key="item_name_required", details="item name is required")
        elif name == "description":
            value = str(value or "").strip() or None
        elif name == "quantity":
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise InvalidQuantity(details="quantity must be a positive integer")
        elif name == "quotations":
            if value is not None and not isinstance(value, (list, tuple)):
                raise InvalidRequest(details="quotations must be a list")
            value = _check_request_quotations(parse_quotations(value))
        else:
            value = _optional_ref(name, value)
        edits[name] = value
    if not edits:
        raise InvalidRequest(details="no fields to update")
    return edits


class ProcurementService:
    """Purchase request lifecycle.

    Every mutation runs in one transaction together with its stock side effect
    and its audit row; domain events are published only after commit.
    """

    def __init__(
        self,
        repository: PurchaseRequestRepository | None = None,
        status_events: StatusEventRepository | None = None,
        stock_ledger: StockLedger | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.repository = repository or PurchaseRequestRepository()
        self.status_events = status_events or StatusEventRepository()
        self.stock_ledger = stock_ledger or StockLedger()
        self.event_bus = event_bus or get_event_bus()
        self._logger = logging.getLogger("erp_ops.procurement")

    # Reads ---------------------------------------------------------------

    def get(self, db, request_id: int) -> PurchaseRequest:
        row = self.repository.get_by_id(db, request_id)
        if not row:
            raise NotFound(message_key="purchase_request_not_found", details=f"purchase request {request_id} not found")
        return self._to_entity(row)

    def list(
        self,
        db,
        *,
        statuses: Iterable[str] | None = None,
        include_rejected: bool = False,
        requested_by: int | None = None,
        project_ref: int | None = None,
        search: str | None = None,
        limit: int = 200,
    ) -> List[PurchaseRequest]:
        """Rejected requests stay stored as history and are hidden unless asked for."""
        wanted = [str(status).strip().upper() for status in (statuses or []) if str(status or "").strip()]
        unknown = [status for status in wanted if status not in PURCHASE_STATUSES]
        if unknown:
            raise InvalidRequest(message_key="status_invalid", details=f"unknown statuses: {', '.join(unknown)}")
        exclude = [] if include_rejected or REPROVADO in wanted else [REPROVADO]
        rows = self.repository.list_requests(
            db,
            statuses=wanted,
            exclude_statuses=exclude,
            requested_by=requested_by,
            project_ref=project_ref,
            search=(search or "").strip() or None,
            limit=limit,
        )
        return [self._to_entity(row) for row in rows]

    def history(self, db, request_id: int) -> List[dict]:
        return self.status_events.list_for_entity(db, entity=ENTITY, entity_id=request_id)

    def compare(self, db, request_id: int) -> List[Dict[str, Any]]:
        purchase_request = self.get(db, request_id)
        return compare_quotations(purchase_request.quotations, purchase_request.quantity)

    @staticmethod
    def _to_entity(row: Mapping[str, Any]) -> PurchaseRequest:
        quotations = tuple(parse_quotations(load_json(row.get("quotations_json"), [])))
        selected_index = row.get("selected_index")
        return PurchaseRequest(
            id=int(row["id"]),
            item_name=str(row["item_name"]),
            quantity=int(row["quantity"]),
            status=str(row["status"]),
            requested_by=int(row["requested_by"]),
            created_at=to_datetime(row.get("created_at")),
            quotations=quotations,
            selected_index=int(selected_index) if selected_index is not None else None,
            unit_value=to_decimal(row.get("unit_value")),
            description=row.get("description"),
            category_ref=row.get("category_ref"),
            project_ref=row.get("project_ref"),
            stage_ref=row.get("stage_ref"),
            stock_item_ref=row.get("stock_item_ref"),
            reservation_ref=row.get("reservation_ref"),
            rejection_reason=row.get("rejection_reason"),
            delivery_info=delivery_info_from_json(row.get("delivery_info_json")),
            version=int(row.get("version") or 1),
        )

    # Commands ------------------------------------------------------------

    def create(self, db, capability: Capability, request_input: PurchaseRequestCreateInput) -> PurchaseRequest:
        require_permission(capability, PURCHASE_REQUEST)
        item_name = str(request_input.item_name or "").strip()
        if not item_name:
            raise InvalidRequest(message_key="item_name_required", details="item name is required")
        quantity = request_input.quantity
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidQuantity(details="quantity must be a positive integer")

        quotations = _check_request_quotations(parse_quotations(request_input.quotations))

        with db.transaction():
            if request_input.stock_item_ref is not None:
                self.stock_ledger.get_item(db, int(request_input.stock_item_ref))
            request_id = self.repository.create(
                db,
                item_name=item_name,
                description=(request_input.description or "").strip() or None,
                quantity=quantity,
                status=SOLICITADO,
                quotations_json=dump_json([quotation.to_payload() for quotation in quotations]),
                category_ref=request_input.category_ref,
                project_ref=request_input.project_ref,
                stage_ref=request_input.stage_ref,
                stock_item_ref=request_input.stock_item_ref,
                requested_by=capability.actor_id,
            )
            self._record(db, request_id, None, SOLICITADO, None, capability)
            created = self.get(db, request_id)

        self.event_bus.publish(
            PurchaseRequestCreated(request_id=created.id, status=created.status, actor_id=capability.actor_id)
        )
        self._logger.info(
            "purchase_request_created",
            extra={
                "purchase_request_id": created.id,
                "quantity": created.quantity,
                "quotations_count": len(created.quotations),
                "actor_id": capability.actor_id,
            },
        )
        return created

    def update(
        self,
        db,
        capability: Capability,
        request_id: int,
        fields: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> PurchaseRequest:
        """Edit item, quantity, quotations or references while the request is still SOLICITADO."""
        require_permission(capability, PURCHASE_REQUEST, PURCHASE_APPROVE)
        edits = _parse_request_edits(fields)

        with db.transaction():
            current = self._load_for_update(db, request_id, expected_version)
            if not action_allowed(current.status, "edit"):
                raise InvalidTransition(
                    message_key="purchase_request_not_editable",
                    details=f"request in status {current.status} can no longer be edited",
                    payload={"from_status": current.status},
                )
            if edits.get("stock_item_ref") is not None:
                self.stock_ledger.get_item(db, int(edits["stock_item_ref"]))
            columns = dict(edits)
            if "quotations" in columns:
                quotations = columns.pop("quotations")
                columns["quotations_json"] = dump_json([quotation.to_payload() for quotation in quotations])
            self._apply(db, current, columns)
            updated = self.get(db, current.id)

        self._logger.info(
            "purchase_request_updated",
            extra={
                "purchase_request_id": updated.id,
                "fields": sorted(edits.keys()),
                "version": updated.version,
                "actor_id": capability.actor_id,
            },
        )
        return updated

    def approve(self, db, capability: Capability, approval: ApprovalInput) -> PurchaseRequest:
        require_permission(capability, PURCHASE_APPROVE)
        quotations = parse_quotations(approval.quotations)
        if not quotations:
            raise InvalidRequest(message_key="quotations_required", details="approval needs at least one quotation")
        selected_index = approval.selected_index
        if (
            isinstance(selected_index, bool)
            or not isinstance(selected_index, int)
            or not 0 <= selected_index < len(quotations)
        ):
            raise InvalidRequest(
                message_key="selected_index_invalid",
                details=f"selected_index must be between 0 and {len(quotations) - 1}",
            )
        selected: Quotation = quotations[selected_index]
        if selected.unit_price <= 0:
            raise InvalidRequest(
                message_key="quotation_price_required",
                details="selected quotation needs a unit price greater than zero",
            )
        unit_value = stored_unit_value(selected)

        with db.transaction():
            current = self._load_for_update(db, approval.purchase_request_id, approval.expected_version)
            if current.status not in APPROVABLE_STATUSES:
                raise InvalidTransition(
                    details=f"cannot approve a request in status {current.status}",
                    payload={"from_status": current.status, "to_status": PENDENTE},
                )
            fields: Dict[str, Any] = {
                "status": PENDENTE,
                "quotations_json": dump_json([quotation.to_payload() for quotation in quotations]),
                "selected_index": selected_index,
                "unit_value": unit_value,
            }
            # Stock is reserved once, on the first entry into PENDENTE.
            if current.status == SOLICITADO and current.stock_item_ref is not None and current.reservation_ref is None:
                fields["reservation_ref"] = self.stock_ledger.reserve(
                    db,
                    int(current.stock_item_ref),
                    current.quantity,
                    AllocationOwner(purchase_request_ref=current.id),
                )
            self._apply(db, current, fields)
            self._record(db, current.id, current.status, PENDENTE, None, capability)
            updated = self.get(db, current.id)

        self._after_transition(updated, current.status, capability, reason=None)
        self._logger.info(
            "purchase_request_approved",
            extra={
                "purchase_request_id": updated.id,
                "from_status": current.status,
                "selected_index": selected_index,
                "unit_value": str(unit_value),
                "reserved": "reservation_ref" in fields,
                "actor_id": capability.actor_id,
            },
        )
        return updated

    def reject(
        self,
        db,
        capability: Capability,
        request_id: int,
        reason: str,
        *,
        expected_version: int | None = None,
    ) -> PurchaseRequest:
        require_permission(capability, PURCHASE_APPROVE)
        clean_reason = str(reason or "").strip()
        if not clean_reason:
            raise InvalidRequest(message_key="reason_required", details="rejection reason is required")

        with db.transaction():
            current = self._load_for_update(db, request_id, expected_version)
            self._require_edge(current, REPROVADO)
            self._release_reservation(db, current)
            self._apply(
                db,
                current,
                {"status": REPROVADO, "rejection_reason": clean_reason, "reservation_ref": None},
            )
            self._record(db, current.id, current.status, REPROVADO, clean_reason, capability)
            updated = self.get(db, current.id)

        self._after_transition(updated, current.status, capability, reason=clean_reason)
        self._logger.info(
            "purchase_request_rejected",
            extra={
                "purchase_request_id": updated.id,
                "from_status": current.status,
                "released_reservation": current.reservation_ref is not None,
                "actor_id": capability.actor_id,
            },
        )
        return updated

    def advance(self, db, capability: Capability, advance_input: StatusAdvanceInput) -> PurchaseRequest:
        require_permission(capability, PURCHASE_APPROVE)
        target = self._advance_target(advance_input.target_status)

        with db.transaction():
            current, updated = self._advance_locked(
                db,
                capability,
                advance_input.purchase_request_id,
                target,
                advance_input.extra,
                advance_input.expected_version,
            )

        self._after_transition(updated, current.status, capability, reason=None)
        return updated

    def advance_batch(
        self,
        db,
        capability: Capability,
        request_ids: Iterable[int],
        extra: Mapping[str, Any] | None = None,
    ) -> List[PurchaseRequest]:
        """Move several PENDENTE requests to COMPRADO_ACAMINHO, all or nothing."""
        require_permission(capability, PURCHASE_APPROVE)
        ids: List[int] = []
        for raw_id in request_ids or []:
            if int(raw_id) not in ids:
                ids.append(int(raw_id))
        if not ids:
            raise InvalidRequest(details="at least one purchase request id is required")

        transitions = []
        with db.transaction():
            for request_id in ids:
                transitions.append(self._advance_locked(db, capability, request_id, COMPRADO_ACAMINHO, extra, None))

        for current, updated in transitions:
            self._after_transition(updated, current.status, capability, reason=None)
        self._logger.info(
            "purchase_request_batch_advanced",
            extra={"purchase_request_ids": ids, "actor_id": capability.actor_id},
        )
        return [updated for _current, updated in transitions]

    def update_delivery_info(
        self,
        db,
        capability: Capability,
        request_id: int,
        extra: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> PurchaseRequest:
        """Change sub status or forecast of an in-transit request without moving it."""
        require_permission(capability, PURCHASE_APPROVE)
        updates = parse_delivery_extra(extra, COMPRADO_ACAMINHO)

        with db.transaction():
            current = self._load_for_update(db, request_id, expected_version)
            if not action_allowed(current.status, "update_delivery"):
                raise InvalidTransition(details=f"delivery info is editable only while {COMPRADO_ACAMINHO}")
            info = merge_delivery_info(current.delivery_info, updates)
            self._apply(db, current, {"delivery_info_json": _delivery_json(info)})
            updated = self.get(db, current.id)

        self._logger.info(
            "purchase_request_delivery_updated",
            extra={
                "purchase_request_id": updated.id,
                "fields": sorted(updates.keys()),
                "actor_id": capability.actor_id,
            },
        )
        return updated

    def delete(self, db, capability: Capability, request_id: int, *, override: bool = False) -> None:
        require_permission(capability, SYSTEM_ADMIN)
        with db.transaction():
            current = self._load_for_update(db, request_id, None)
            if is_terminal(current.status) and not override:
                raise Conflict(
                    message_key="purchase_request_terminal",
                    details=f"request in status {current.status} is history; delete needs an explicit override",
                )
            self._release_reservation(db, current)
            self.repository.delete_by_id(db, current.id)
            self._record(db, current.id, current.status, None, "deleted", capability)

        self._logger.warning(
            "purchase_request_deleted",
            extra={
                "purchase_request_id": request_id,
                "status": current.status,
                "override": bool(override),
                "actor_id": capability.actor_id,
            },
        )

    # Internals -----------------------------------------------------------

    @staticmethod
    def _advance_target(raw_target: str) -> str:
        target = str(raw_target or "").strip().upper()
        if target not in PURCHASE_STATUSES:
            raise InvalidRequest(message_key="status_invalid", details=f"unknown status {raw_target!r}")
        return target

    def _advance_locked(
        self,
        db,
        capability: Capability,
        request_id: int,
        target: str,
        extra: Mapping[str, Any] | None,
        expected_version: int | None,
    ) -> tuple[PurchaseRequest, PurchaseRequest]:
        current = self._load_for_update(db, request_id, expected_version)
        self._require_edge(current, target)
        if target not in ADVANCE_TARGETS:
            # PENDENTE needs quotations and REPROVADO needs a reason.
            raise InvalidRequest(
                message_key="status_invalid",
                details=f"{target} is reached through {'approve' if target == PENDENTE else 'reject'}",
                payload={"from_status": current.status, "to_status": target},
            )
        updates = parse_delivery_extra(extra, target)

        info = merge_delivery_info(current.delivery_info, updates, confirmed_at=_utc_now())
        fields: Dict[str, Any] = {"status": target, "delivery_info_json": _delivery_json(info)}
        if target == ENTREGUE:
            received = self.stock_ledger.receive(
                db,
                quantity=current.quantity,
                unit_value=current.unit_value,
                item_id=current.stock_item_ref,
                name=current.item_name,
                description=current.description,
                project_ref=current.project_ref,
                stage_ref=current.stage_ref,
                category_ref=current.category_ref,
            )
            if current.stock_item_ref is None:
                fields["stock_item_ref"] = received.id

        self._apply(db, current, fields)
        self._record(db, current.id, current.status, target, None, capability)
        updated = self.get(db, current.id)
        self._logger.info(
            "purchase_request_advanced",
            extra={
                "purchase_request_id": updated.id,
                "from_status": current.status,
                "to_status": target,
                "actor_id": capability.actor_id,
            },
        )
        return current, updated

    def _load_for_update(self, db, request_id: int, expected_version: int | None) -> PurchaseRequest:
        row = self.repository.get_by_id(db, request_id, lock=True)
        if not row:
            raise NotFound(message_key="purchase_request_not_found", details=f"purchase request {request_id} not found")
        current = self._to_entity(row)
        if expected_version is not None and int(expected_version) != current.version:
            raise Conflict(
                details=f"purchase request {request_id} changed (version {current.version})",
                payload={"current_version": current.version},
            )
        return current

    @staticmethod
    def _require_edge(current: PurchaseRequest, target: str) -> None:
        if transition_allowed(current.status, target):
            return
        raise InvalidTransition(
            message_key="purchase_request_terminal" if is_terminal(current.status) else "action_not_allowed_for_status",
            details=f"{current.status} -> {target} is not allowed",
            payload={"from_status": current.status, "to_status": target},
        )

    def _apply(self, db, current: PurchaseRequest, fields: Dict[str, Any]) -> None:
        if not self.repository.update_versioned(db, current.id, current.version, fields):
            raise Conflict(
                details=f"purchase request {current.id} was modified concurrently",
                payload={"expected_version": current.version},
            )

    def _release_reservation(self, db, current: PurchaseRequest) -> None:
        if current.reservation_ref is None:
            return
        self.stock_ledger.unreserve(db, int(current.reservation_ref), missing_ok=True)

    def _record(
        self,
        db,
        request_id: int,
        from_status: str | None,
        to_status: str | None,
        reason: str | None,
        capability: Capability,
    ) -> None:
        self.status_events.add_event(
            db,
            entity=ENTITY,
            entity_id=request_id,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            actor_id=capability.actor_id,
        )

    def _after_transition(
        self,
        updated: PurchaseRequest,
        from_status: str,
        capability: Capability,
        *,
        reason: str | None,
    ) -> None:
        observe_status_transition(from_status, updated.status)
        self.event_bus.publish(
            PurchaseRequestStatusChanged(
                request_id=updated.id,
                from_status=from_status,
                to_status=updated.status,
                actor_id=capability.actor_id,
                reason=reason,
            )
        )
