from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, List

from erp_ops.contexts.stock.infrastructure.repositories.allocation_repository import AllocationRepository
from erp_ops.contexts.stock.infrastructure.repositories.stock_item_repository import StockItemRepository
from erp_ops.domain.contracts import (
    STOCK_MOVE,
    AllocationOwner,
    Capability,
    StockItem,
    StockItemInput,
    StockQuantities,
)
from erp_ops.errors import Conflict, InsufficientStock, InvalidQuantity, InvalidRequest, NotFound
from erp_ops.infrastructure.repositories.base import dump_json, load_json, to_decimal
from erp_ops.observability import observe_stock_movement
from erp_ops.policies import require_permission
from erp_ops.procurement.quotation import round_money


def _positive_quantity(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidQuantity(details=f"quantity must be an integer, got {value!r}")
    if value <= 0:
        raise InvalidQuantity(details="quantity must be greater than zero")
    return value


def _non_negative_quantity(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidQuantity(details=f"total quantity must be an integer, got {value!r}")
    if value < 0:
        raise InvalidQuantity(details="total quantity cannot be negative")
    return value


def _unit_value(value: Any) -> Decimal:
    parsed = to_decimal(value if value is not None else "0")
    if parsed is None or not parsed.is_finite() or parsed < 0:
        raise InvalidRequest(details=f"unit value must be a non-negative number, got {value!r}")
    return round_money(parsed)


class StockLedger:
    """Stock items and their allocations.

    ``allocated`` and ``available`` are never stored: both are derived from the
    allocation rows, and every mutation re-checks ``available >= 0`` before the
    transaction commits.
    """

    def __init__(
        self,
        item_repository: StockItemRepository | None = None,
        allocation_repository: AllocationRepository | None = None,
    ) -> None:
        self.items = item_repository or StockItemRepository()
        self.allocations = allocation_repository or AllocationRepository()
        self._logger = logging.getLogger("erp_ops.stock")

    # Reads ---------------------------------------------------------------

    def quantities(self, db, item_id: int) -> StockQuantities:
        item = self.get_item(db, item_id)
        return StockQuantities(
            total=item.total_quantity,
            allocated=item.allocated_quantity,
            available=item.available_quantity,
        )

    def get_item(self, db, item_id: int) -> StockItem:
        row = self.items.get_by_id(db, item_id)
        if not row:
            raise NotFound(message_key="stock_item_not_found", details=f"stock item {item_id} not found")
        return self._to_item(row)

    def list_items(self, db, search: str | None = None) -> List[StockItem]:
        return [self._to_item(row) for row in self.items.list_items(db, search=(search or "").strip() or None)]

    def list_allocations(self, db, **filters: int | None) -> List[dict]:
        return self.allocations.list_allocations(db, **filters)

    @staticmethod
    def _to_item(row: dict) -> StockItem:
        attachments = load_json(row.get("attachments_json"), [])
        return StockItem(
            id=int(row["id"]),
            name=str(row["name"]),
            description=row.get("description"),
            total_quantity=int(row["total_quantity"]),
            unit_value=to_decimal(row.get("unit_value")) or Decimal("0"),
            allocated_quantity=int(row.get("allocated_quantity") or 0),
            attachments=tuple(str(item) for item in attachments if item),
            project_ref=row.get("project_ref"),
            stage_ref=row.get("stage_ref"),
            category_ref=row.get("category_ref"),
        )

    # Items ---------------------------------------------------------------

    def upsert_item(self, db, capability: Capability, item_input: StockItemInput) -> StockItem:
        require_permission(capability, STOCK_MOVE)
        name = str(item_input.name or "").strip()
        if not name:
            raise InvalidRequest(message_key="item_name_required", details="item name is required")
        total = _non_negative_quantity(item_input.total_quantity)
        unit_value = _unit_value(item_input.unit_value)

        with db.transaction():
            if item_input.item_id is None:
                item_id = self.items.create(
                    db,
                    name=name,
                    description=(item_input.description or "").strip() or None,
                    total_quantity=total,
                    unit_value=unit_value,
                    attachments_json=dump_json(list(item_input.attachments)),
                    project_ref=item_input.project_ref,
                    stage_ref=item_input.stage_ref,
                    category_ref=item_input.category_ref,
                )
                created = True
            else:
                item_id = int(item_input.item_id)
                self._lock_item(db, item_id)
                allocated = self.allocations.sum_for_item(db, item_id)
                if total < allocated:
                    raise InvalidQuantity(
                        message_key="quantity_below_allocated",
                        details=f"total {total} is below allocated quantity {allocated}",
                        payload={"allocated": allocated},
                    )
                self.items.update_fields(
                    db,
                    item_id,
                    {
                        "name": name,
                        "description": (item_input.description or "").strip() or None,
                        "total_quantity": total,
                        "unit_value": unit_value,
                        "attachments_json": dump_json(list(item_input.attachments)),
                        "project_ref": item_input.project_ref,
                        "stage_ref": item_input.stage_ref,
                        "category_ref": item_input.category_ref,
                    },
                )
                created = False
            self._check_invariant(db, item_id)
            item = self.get_item(db, item_id)

        observe_stock_movement("item_created" if created else "item_updated")
        self._logger.info(
            "stock_item_saved",
            extra={
                "stock_item_id": item.id,
                "created": created,
                "total_quantity": item.total_quantity,
                "actor_id": capability.actor_id,
            },
        )
        return item

    def delete_item(self, db, capability: Capability, item_id: int) -> None:
        require_permission(capability, STOCK_MOVE)
        with db.transaction():
            self._lock_item(db, item_id)
            allocations_count = self.allocations.count_for_item(db, item_id)
            if allocations_count:
                raise Conflict(
                    message_key="item_has_allocations",
                    details=f"stock item {item_id} still has {allocations_count} allocation(s)",
                )
            if self.items.count_request_references(db, item_id):
                raise Conflict(details=f"stock item {item_id} is referenced by purchase requests")
            self.items.delete_by_id(db, item_id)
        observe_stock_movement("item_deleted")
        self._logger.info("stock_item_deleted", extra={"stock_item_id": item_id, "actor_id": capability.actor_id})

    # Allocations ---------------------------------------------------------

    def allocate(self, db, capability: Capability, item_id: int, quantity: int, owner: AllocationOwner) -> int:
        require_permission(capability, STOCK_MOVE)
        allocation_id = self.reserve(db, item_id, quantity, owner)
        self._logger.info(
            "stock_allocated",
            extra={
                "stock_item_id": item_id,
                "allocation_id": allocation_id,
                "quantity": quantity,
                "actor_id": capability.actor_id,
            },
        )
        return allocation_id

    def reserve(self, db, item_id: int, quantity: int, owner: AllocationOwner) -> int:
        """Allocate without a permission check, for callers that already authorized the actor."""
        quantity = _positive_quantity(quantity)
        if owner is None or owner.is_empty():
            raise InvalidRequest(message_key="allocation_owner_required", details="allocation owner is required")

        with db.transaction():
            self._lock_item(db, item_id)
            available = self._available(db, item_id)
            if quantity > available:
                raise InsufficientStock(
                    details=f"requested {quantity}, available {available}",
                    payload={"stock_item_id": item_id, "requested": quantity, "available": available},
                )
            existing = self.allocations.find_for_owner(db, stock_item_id=item_id, owner=owner)
            if existing:
                allocation_id = int(existing["id"])
                self.allocations.set_quantity(db, allocation_id, int(existing["quantity"]) + quantity)
            else:
                allocation_id = self.allocations.create(db, stock_item_id=item_id, quantity=quantity, owner=owner)
            self._check_invariant(db, item_id)

        observe_stock_movement("allocate")
        return allocation_id

    def adjust_allocation(self, db, capability: Capability, allocation_id: int, quantity: int) -> None:
        require_permission(capability, STOCK_MOVE)
        quantity = _positive_quantity(quantity)
        with db.transaction():
            allocation = self._require_allocation(db, allocation_id)
            item_id = int(allocation["stock_item_id"])
            item = self._lock_item(db, item_id)
            others = self.allocations.sum_for_item(db, item_id, exclude_id=allocation_id)
            available = int(item["total_quantity"]) - others
            if quantity > available:
                raise InsufficientStock(
                    details=f"requested {quantity}, available {available}",
                    payload={"stock_item_id": item_id, "requested": quantity, "available": available},
                )
            self.allocations.set_quantity(db, allocation_id, quantity)
            self._check_invariant(db, item_id)

        observe_stock_movement("adjust")
        self._logger.info(
            "stock_allocation_adjusted",
            extra={"allocation_id": allocation_id, "quantity": quantity, "actor_id": capability.actor_id},
        )

    def release(self, db, capability: Capability, allocation_id: int) -> None:
        require_permission(capability, STOCK_MOVE)
        self.unreserve(db, allocation_id)
        self._logger.info("stock_released", extra={"allocation_id": allocation_id, "actor_id": capability.actor_id})

    def unreserve(self, db, allocation_id: int, *, missing_ok: bool = False) -> None:
        with db.transaction():
            if missing_ok and not self.allocations.get_by_id(db, allocation_id):
                return
            allocation = self._require_allocation(db, allocation_id)
            item_id = int(allocation["stock_item_id"])
            self._lock_item(db, item_id)
            self.allocations.delete_by_id(db, allocation_id)
            self._check_invariant(db, item_id)
        observe_stock_movement("release")

    # Delivery ------------------------------------------------------------

    def receive(
        self,
        db,
        *,
        quantity: int,
        unit_value: Any,
        item_id: int | None = None,
        name: str | None = None,
        description: str | None = None,
        project_ref: int | None = None,
        stage_ref: int | None = None,
        category_ref: int | None = None,
    ) -> StockItem:
        """Add delivered units to the referenced item, or to the item matching name, project and stage.

        A new item is created when nothing matches.
        """
        quantity = _positive_quantity(quantity)
        value = _unit_value(unit_value)

        with db.transaction():
            row = None
            if item_id is not None:
                row = self._lock_item(db, int(item_id))
            else:
                clean_name = str(name or "").strip()
                if not clean_name:
                    raise InvalidRequest(message_key="item_name_required", details="item name is required")
                match = self.items.find_match(db, name=clean_name, project_ref=project_ref, stage_ref=stage_ref)
                if match:
                    row = self._lock_item(db, int(match["id"]))

            if row:
                target_id = int(row["id"])
                self.items.update_fields(
                    db,
                    target_id,
                    {"total_quantity": int(row["total_quantity"]) + quantity, "unit_value": value},
                )
            else:
                target_id = self.items.create(
                    db,
                    name=str(name).strip(),
                    description=(description or "").strip() or None,
                    total_quantity=quantity,
                    unit_value=value,
                    attachments_json=dump_json([]),
                    project_ref=project_ref,
                    stage_ref=stage_ref,
                    category_ref=category_ref,
                )
            self._check_invariant(db, target_id)
            item = self.get_item(db, target_id)

        observe_stock_movement("receive")
        self._logger.info(
            "stock_received",
            extra={"stock_item_id": item.id, "quantity": quantity, "created": row is None},
        )
        return item

    # Internals -----------------------------------------------------------

    def _lock_item(self, db, item_id: int) -> dict:
        row = self.items.lock(db, item_id)
        if not row:
            raise NotFound(message_key="stock_item_not_found", details=f"stock item {item_id} not found")
        return row

    def _require_allocation(self, db, allocation_id: int) -> dict:
        allocation = self.allocations.get_by_id(db, allocation_id)
        if not allocation:
            raise NotFound(message_key="allocation_not_found", details=f"allocation {allocation_id} not found")
        return allocation

    def _available(self, db, item_id: int) -> int:
        row = self.items.lock(db, item_id)
        return int(row["total_quantity"]) - self.allocations.sum_for_item(db, item_id)

    def _check_invariant(self, db, item_id: int) -> None:
        item = self.get_item(db, item_id)
        allocated = self.allocations.sum_for_item(db, item_id)
        if item.allocated_quantity != allocated or item.total_quantity - allocated < 0:
            raise InsufficientStock(
                details=f"stock item {item_id} would be over-allocated",
                payload={"stock_item_id": item_id, "total": item.total_quantity, "allocated": allocated},
            )
