from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping

from erp_ops.errors import InvalidQuotation


ZERO = Decimal("0")
CENTS = Decimal("0.01")

# Accepted payload aliases; the legacy form sends Portuguese camelCase keys.
_FIELD_ALIASES: Dict[str, tuple[str, ...]] = {
    "unit_price": ("unit_price", "unitPrice", "valorUnitario"),
    "freight": ("freight", "frete"),
    "taxes": ("taxes", "impostos"),
    "discount": ("discount", "desconto"),
    "supplier_ref": ("supplier_ref", "supplierRef", "fornecedorId"),
    "payment_method": ("payment_method", "paymentMethod", "formaPagamento"),
    "link": ("link",),
}


def to_decimal(value: Any, *, field_name: str) -> Decimal:
    if value is None or value == "":
        return ZERO
    if isinstance(value, bool):
        raise InvalidQuotation(details=f"{field_name} must be numeric")
    try:
        parsed = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise InvalidQuotation(details=f"{field_name} must be numeric") from exc
    if not parsed.is_finite():
        raise InvalidQuotation(details=f"{field_name} must be finite")
    return parsed


def _pick(payload: Mapping[str, Any], field_name: str) -> Any:
    for alias in _FIELD_ALIASES[field_name]:
        if alias in payload:
            return payload[alias]
    return None


@dataclass(frozen=True)
class Quotation:
    unit_price: Decimal
    freight: Decimal = ZERO
    taxes: Decimal = ZERO
    discount: Decimal = ZERO
    supplier_ref: int | None = None
    payment_method: str | None = None
    link: str | None = None

    def __post_init__(self) -> None:
        for name in ("unit_price", "freight", "taxes", "discount"):
            value = to_decimal(getattr(self, name), field_name=name)
            if value < ZERO:
                raise InvalidQuotation(details=f"{name} must be >= 0")
            object.__setattr__(self, name, value)
        link = str(self.link or "").strip() or None
        payment_method = str(self.payment_method or "").strip() or None
        object.__setattr__(self, "link", link)
        object.__setattr__(self, "payment_method", payment_method)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Quotation":
        if not isinstance(payload, Mapping):
            raise InvalidQuotation(details="quotation must be an object")
        supplier_ref = _pick(payload, "supplier_ref")
        try:
            supplier_ref = int(supplier_ref) if supplier_ref not in (None, "") else None
        except (TypeError, ValueError) as exc:
            raise InvalidQuotation(details="supplier_ref must be an integer") from exc
        return cls(
            unit_price=_pick(payload, "unit_price"),
            freight=_pick(payload, "freight"),
            taxes=_pick(payload, "taxes"),
            discount=_pick(payload, "discount"),
            supplier_ref=supplier_ref,
            payment_method=_pick(payload, "payment_method"),
            link=_pick(payload, "link"),
        )

    @property
    def has_link(self) -> bool:
        return bool(self.link)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "unit_price": str(self.unit_price),
            "freight": str(self.freight),
            "taxes": str(self.taxes),
            "discount": str(self.discount),
            "supplier_ref": self.supplier_ref,
            "payment_method": self.payment_method,
            "link": self.link,
        }


def parse_quotations(raw: Iterable[Any] | None) -> List[Quotation]:
    quotations: List[Quotation] = []
    for item in raw or []:
        quotations.append(item if isinstance(item, Quotation) else Quotation.from_payload(item))
    return quotations


def _require_quantity(quantity: Any) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidQuotation(message_key="quantity_invalid", details="quantity must be a positive integer")
    return quantity


def effective_unit_cost(quotation: Quotation) -> Decimal:
    cost = quotation.unit_price + quotation.freight + quotation.taxes - quotation.discount
    return cost if cost > ZERO else ZERO


def line_total(quotation: Quotation, quantity: int) -> Decimal:
    return effective_unit_cost(quotation) * _require_quantity(quantity)


def round_money(value: Decimal) -> Decimal:
    # Half-up (commercial) rounding, not banker's rounding.
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def stored_unit_value(quotation: Quotation) -> Decimal:
    return round_money(effective_unit_cost(quotation))


def compare_quotations(quotations: Iterable[Quotation], quantity: int) -> List[Dict[str, Any]]:
    """Figures for each quotation, cheapest first, keeping the original index.

    Only used to present options to the approver; the selection itself always
    comes from the approver.
    """
    _require_quantity(quantity)
    rows = []
    for index, quotation in enumerate(quotations):
        unit_cost = effective_unit_cost(quotation)
        rows.append(
            {
                "index": index,
                "effective_unit_cost": unit_cost,
                "line_total": unit_cost * quantity,
                "supplier_ref": quotation.supplier_ref,
            }
        )
    rows.sort(key=lambda row: (row["effective_unit_cost"], row["index"]))
    return rows
