from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, List, Tuple

from erp_ops.procurement.flow_policy import flow_meta
from erp_ops.procurement.quotation import Quotation
from erp_ops.ui_strings import status_label


@dataclass(frozen=True)
class ServiceOutput:
    payload: Dict[str, Any]
    status_code: int = 200


@dataclass(frozen=True, order=True)
class PermissionKey:
    module: str
    action: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "module", str(self.module or "").strip().lower())
        object.__setattr__(self, "action", str(self.action or "").strip().lower())

    @classmethod
    def parse(cls, raw: "str | PermissionKey") -> "PermissionKey":
        if isinstance(raw, PermissionKey):
            return raw
        module, sep, action = str(raw or "").partition(":")
        if not sep or not module.strip() or not action.strip():
            raise ValueError(f"invalid permission key: {raw!r}")
        return cls(module, action)

    def __str__(self) -> str:
        return f"{self.module}:{self.action}"


# Bootstrap catalog keys referenced by the engine.
PURCHASE_REQUEST = PermissionKey("compras", "solicitar")
PURCHASE_APPROVE = PermissionKey("compras", "aprovar")
STOCK_VIEW = PermissionKey("estoque", "visualizar")
STOCK_MOVE = PermissionKey("estoque", "movimentar")
USERS_MANAGE = PermissionKey("usuarios", "gerenciar")
SYSTEM_ADMIN = PermissionKey("sistema", "administrar")


@dataclass(frozen=True)
class Capability:
    """Actor resolved once at the boundary; commands never look up roles again."""

    actor_id: int
    active: bool
    role_name: str
    permissions: FrozenSet[PermissionKey] = field(default_factory=frozenset)
    allowed_pages: FrozenSet[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class Role:
    id: int
    name: str
    description: str | None
    active: bool
    allowed_pages: FrozenSet[str]
    permissions: FrozenSet[PermissionKey]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "active": self.active,
            "allowed_pages": sorted(self.allowed_pages),
            "permissions": [str(key) for key in sorted(self.permissions)],
        }


@dataclass(frozen=True)
class AllocationOwner:
    project_ref: int | None = None
    stage_ref: int | None = None
    user_ref: int | None = None
    purchase_request_ref: int | None = None

    def is_empty(self) -> bool:
        return not any((self.project_ref, self.stage_ref, self.user_ref, self.purchase_request_ref))


@dataclass(frozen=True)
class StockQuantities:
    total: int
    allocated: int
    available: int

    def to_payload(self) -> Dict[str, int]:
        return {"total": self.total, "allocated": self.allocated, "available": self.available}


@dataclass(frozen=True)
class StockItem:
    id: int
    name: str
    description: str | None
    total_quantity: int
    unit_value: Decimal
    allocated_quantity: int
    attachments: Tuple[str, ...] = ()
    project_ref: int | None = None
    stage_ref: int | None = None
    category_ref: int | None = None

    @property
    def available_quantity(self) -> int:
        return self.total_quantity - self.allocated_quantity

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "total_quantity": self.total_quantity,
            "allocated_quantity": self.allocated_quantity,
            "available_quantity": self.available_quantity,
            "unit_value": str(self.unit_value),
            "attachments": list(self.attachments),
            "project_ref": self.project_ref,
            "stage_ref": self.stage_ref,
            "category_ref": self.category_ref,
        }


@dataclass(frozen=True)
class StockItemInput:
    name: str
    total_quantity: int
    unit_value: Decimal = Decimal("0")
    item_id: int | None = None
    description: str | None = None
    attachments: Tuple[str, ...] = ()
    project_ref: int | None = None
    stage_ref: int | None = None
    category_ref: int | None = None


@dataclass(frozen=True)
class DeliveryInfo:
    sub_status: str | None = None
    expected_delivery: date | None = None
    purchase_date: date | None = None
    payment_method: str | None = None
    delivery_date: date | None = None
    address: str | None = None
    received_by: str | None = None
    note: str | None = None
    confirmed_at: datetime | None = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for key, value in self.__dict__.items():
            if value is None:
                continue
            payload[key] = value.isoformat() if isinstance(value, (date, datetime)) else value
        return payload


@dataclass(frozen=True)
class PurchaseRequest:
    id: int
    item_name: str
    quantity: int
    status: str
    requested_by: int
    created_at: datetime | None
    quotations: Tuple[Quotation, ...] = ()
    selected_index: int | None = None
    unit_value: Decimal | None = None
    description: str | None = None
    category_ref: int | None = None
    project_ref: int | None = None
    stage_ref: int | None = None
    stock_item_ref: int | None = None
    reservation_ref: int | None = None
    rejection_reason: str | None = None
    delivery_info: DeliveryInfo | None = None
    version: int = 1

    @property
    def selected_quotation(self) -> Quotation | None:
        if self.selected_index is None or not (0 <= self.selected_index < len(self.quotations)):
            return None
        return self.quotations[self.selected_index]

    @property
    def line_total(self) -> Decimal | None:
        if self.unit_value is None:
            return None
        return self.unit_value * self.quantity

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "item_name": self.item_name,
            "description": self.description,
            "quantity": self.quantity,
            "status": self.status,
            "status_label": status_label(self.status),
            "flow": flow_meta(self.status),
            "requested_by": self.requested_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "quotations": [quotation.to_payload() for quotation in self.quotations],
            "selected_index": self.selected_index,
            "unit_value": str(self.unit_value) if self.unit_value is not None else None,
            "line_total": str(self.line_total) if self.line_total is not None else None,
            "category_ref": self.category_ref,
            "project_ref": self.project_ref,
            "stage_ref": self.stage_ref,
            "stock_item_ref": self.stock_item_ref,
            "rejection_reason": self.rejection_reason,
            "delivery_info": self.delivery_info.to_payload() if self.delivery_info else None,
            "version": self.version,
        }


@dataclass(frozen=True)
class PurchaseRequestCreateInput:
    item_name: str
    quantity: int
    quotations: List[Quotation] = field(default_factory=list)
    description: str | None = None
    category_ref: int | None = None
    project_ref: int | None = None
    stage_ref: int | None = None
    stock_item_ref: int | None = None


@dataclass(frozen=True)
class ApprovalInput:
    purchase_request_id: int
    quotations: List[Quotation]
    selected_index: int
    expected_version: int | None = None


@dataclass(frozen=True)
class StatusAdvanceInput:
    purchase_request_id: int
    target_status: str
    extra: Dict[str, Any] = field(default_factory=dict)
    expected_version: int | None = None


@dataclass(frozen=True)
class RoleInput:
    name: str
    description: str | None = None
    allowed_pages: List[str] = field(default_factory=list)
    permission_keys: List[str] = field(default_factory=list)
    active: bool = True
