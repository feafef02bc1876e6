from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
from typing import Any, Dict, Mapping

from erp_ops.domain.contracts import DeliveryInfo
from erp_ops.errors import InvalidRequest
from erp_ops.infrastructure.repositories.base import load_json, to_date, to_datetime
from erp_ops.procurement.flow_policy import COMPRADO_ACAMINHO, DELIVERY_SUB_STATUSES, ENTREGUE


_FIELD_ALIASES: Dict[str, tuple[str, ...]] = {
    "sub_status": ("sub_status", "subStatus", "statusEntrega"),
    "expected_delivery": ("expected_delivery", "expectedDelivery", "previsaoEntrega"),
    "purchase_date": ("purchase_date", "purchaseDate", "dataCompra"),
    "payment_method": ("payment_method", "paymentMethod", "formaPagamento"),
    "delivery_date": ("delivery_date", "deliveryDate", "dataEntrega"),
    "address": ("address", "enderecoEntrega"),
    "received_by": ("received_by", "receivedBy", "recebidoPor"),
    "note": ("note", "observacao"),
}

# Fields each target status may carry.
_FIELDS_BY_STATUS: Dict[str, tuple[str, ...]] = {
    COMPRADO_ACAMINHO: ("sub_status", "expected_delivery", "purchase_date", "payment_method", "note"),
    ENTREGUE: ("delivery_date", "address", "received_by", "note"),
}

_DATE_FIELDS = ("expected_delivery", "purchase_date", "delivery_date")


def _pick(extra: Mapping[str, Any], field_name: str) -> tuple[bool, Any]:
    for alias in _FIELD_ALIASES[field_name]:
        if alias in extra:
            return True, extra[alias]
    return False, None


def _parse_date(field_name: str, value: Any) -> date | None:
    if value in (None, ""):
        return None
    parsed = to_date(value)
    if parsed is None:
        raise InvalidRequest(details=f"{field_name} must be an ISO date, got {value!r}")
    return parsed


def parse_delivery_extra(extra: Mapping[str, Any] | None, target_status: str) -> Dict[str, Any]:
    """Validate the delivery fields sent with a status change.

    Only keys present in ``extra`` are returned, so callers can merge them over
    the stored delivery info.
    """
    source = dict(extra or {})
    allowed = _FIELDS_BY_STATUS.get(target_status, ())
    updates: Dict[str, Any] = {}
    for field_name in allowed:
        present, value = _pick(source, field_name)
        if not present:
            continue
        if field_name in _DATE_FIELDS:
            updates[field_name] = _parse_date(field_name, value)
        elif field_name == "sub_status":
            normalized = str(value or "").strip().upper() or None
            if normalized is not None and normalized not in DELIVERY_SUB_STATUSES:
                raise InvalidRequest(
                    message_key="sub_status_invalid",
                    details=f"sub status must be one of {sorted(DELIVERY_SUB_STATUSES)}",
                )
            updates[field_name] = normalized
        else:
            updates[field_name] = str(value or "").strip() or None

    if target_status == ENTREGUE and updates.get("delivery_date") is None:
        raise InvalidRequest(message_key="delivery_date_required", details="delivery_date is required")
    return updates


def merge_delivery_info(
    current: DeliveryInfo | None,
    updates: Mapping[str, Any],
    *,
    confirmed_at: datetime | None = None,
) -> DeliveryInfo:
    merged = replace(current or DeliveryInfo(), **dict(updates))
    if confirmed_at is not None:
        merged = replace(merged, confirmed_at=confirmed_at)
    return merged


def delivery_info_from_json(raw: Any) -> DeliveryInfo | None:
    data = load_json(raw, None)
    if not isinstance(data, dict):
        return None
    return DeliveryInfo(
        sub_status=data.get("sub_status"),
        expected_delivery=to_date(data.get("expected_delivery")),
        purchase_date=to_date(data.get("purchase_date")),
        payment_method=data.get("payment_method"),
        delivery_date=to_date(data.get("delivery_date")),
        address=data.get("address"),
        received_by=data.get("received_by"),
        note=data.get("note"),
        confirmed_at=to_datetime(data.get("confirmed_at")),
    )
