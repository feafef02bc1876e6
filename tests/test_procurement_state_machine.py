import unittest
from datetime import date
from decimal import Decimal

from erp_ops.contexts.auth.application.service import AccessService
from erp_ops.contexts.procurement.application.service import ProcurementService
from erp_ops.contexts.stock.application.service import StockLedger
from erp_ops.core import EventBus
from erp_ops.domain.contracts import (
    ApprovalInput,
    PurchaseRequestCreateInput,
    RoleInput,
    StatusAdvanceInput,
    StockItemInput,
)
from erp_ops.errors import (
    Conflict,
    Forbidden,
    InsufficientStock,
    InvalidQuantity,
    InvalidRequest,
    InvalidTransition,
    NotFound,
)
from erp_ops.procurement.flow_policy import COMPRADO_ACAMINHO, ENTREGUE, PENDENTE, REPROVADO, SOLICITADO
from erp_ops.procurement.quotation import Quotation
from tests.helpers.actors import actor_with_role, bootstrap_capability
from tests.helpers.temp_db import TempDbSandbox


def _quotation(**overrides) -> Quotation:
    values = {"unit_price": "100", "freight": "10", "taxes": "5", "discount": "0"}
    values.update(overrides)
    return Quotation(**values)


class ProcurementStateMachineTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="procurement_flow")
        self.db = self._temp_db.connect()
        AccessService().define_role(
            self.db,
            bootstrap_capability(),
            RoleInput(name="SOLICITANTE", permission_keys=["compras:solicitar"], allowed_pages=["/requests"]),
        )
        self.requester = actor_with_role(self.db, "SOLICITANTE")
        self.buyer = actor_with_role(self.db, "COMPRADOR")
        self.director = actor_with_role(self.db, "DIRETOR")
        self.ledger = StockLedger()
        self.service = ProcurementService(stock_ledger=self.ledger, event_bus=EventBus())

    def tearDown(self) -> None:
        self.db.close()
        self._temp_db.cleanup()

    def _create(self, quantity: int = 5, **kwargs):
        return self.service.create(
            self.db,
            self.requester,
            PurchaseRequestCreateInput(item_name=kwargs.pop("item_name", "Drill"), quantity=quantity, **kwargs),
        )

    def _approve(self, request_id: int, *quotations: Quotation, selected_index: int = 0, **kwargs):
        return self.service.approve(
            self.db,
            self.buyer,
            ApprovalInput(
                purchase_request_id=request_id,
                quotations=list(quotations or (_quotation(),)),
                selected_index=selected_index,
                **kwargs,
            ),
        )

    def _advance(self, request_id: int, target: str, extra=None, **kwargs):
        return self.service.advance(
            self.db,
            self.buyer,
            StatusAdvanceInput(purchase_request_id=request_id, target_status=target, extra=extra or {}, **kwargs),
        )

    def _stock_item(self, total: int):
        return self.ledger.upsert_item(self.db, self.buyer, StockItemInput(name="Drill", total_quantity=total))

    # Create --------------------------------------------------------------

    def test_create_then_approve_stores_effective_unit_value(self) -> None:
        created = self._create()
        self.assertEqual(created.status, SOLICITADO)
        self.assertEqual(created.requested_by, self.requester.actor_id)
        self.assertEqual(created.version, 1)

        approved = self._approve(created.id)
        self.assertEqual(approved.status, PENDENTE)
        self.assertEqual(approved.unit_value, Decimal("115.00"))
        self.assertEqual(approved.line_total, Decimal("575.00"))
        self.assertEqual(approved.selected_index, 0)
        self.assertEqual(approved.version, 2)

        payload = approved.to_payload()
        self.assertEqual(payload["status_label"], "Pendente de compra")
        self.assertEqual(payload["flow"]["primary_action"], "mark_purchased")
        self.assertEqual(payload["line_total"], "575.00")

    def test_create_validates_quantity_name_and_quotations(self) -> None:
        for quantity in (0, -1, True):
            with self.assertRaises(InvalidQuantity):
                self._create(quantity=quantity)
        with self.assertRaises(InvalidRequest):
            self._create(item_name="  ")
        with self.assertRaises(InvalidRequest) as ctx:
            self._create(quotations=[_quotation(link=None)])
        self.assertEqual(ctx.exception.message_key, "quotation_link_required")
        with self.assertRaises(InvalidRequest) as ctx:
            self._create(quotations=[_quotation(unit_price="0", link="https://a.example")])
        self.assertEqual(ctx.exception.message_key, "quotation_price_required")
        with self.assertRaises(NotFound):
            self._create(stock_item_ref=999)
        self.assertEqual(self.service.list(self.db, include_rejected=True), [])

    def test_create_needs_request_permission(self) -> None:
        executor = actor_with_role(self.db, "EXECUTOR")
        with self.assertRaises(Forbidden):
            self.service.create(self.db, executor, PurchaseRequestCreateInput(item_name="Drill", quantity=1))

    # Edit ----------------------------------------------------------------

    def test_requester_edits_request_before_approval(self) -> None:
        item = self._stock_item(10)
        created = self._create(quantity=2)

        updated = self.service.update(
            self.db,
            self.requester,
            created.id,
            {
                "item": "Furadeira",
                "descricao": "  impacto 800W ",
                "quantidade": 3,
                "cotacoes": [{"valorUnitario": 90, "frete": 5, "impostos": 1, "link": "https://loja.example"}],
                "etapaId": 7,
                "stock_item_ref": item.id,
            },
            expected_version=created.version,
        )
        self.assertEqual(updated.status, SOLICITADO)
        self.assertEqual(updated.item_name, "Furadeira")
        self.assertEqual(updated.description, "impacto 800W")
        self.assertEqual(updated.quantity, 3)
        self.assertEqual(updated.stage_ref, 7)
        self.assertEqual(updated.stock_item_ref, item.id)
        self.assertEqual(updated.quotations[0].unit_price, Decimal("90"))
        self.assertEqual(updated.version, created.version + 1)
        self.assertEqual(self.ledger.quantities(self.db, item.id).allocated, 0)

        approved = self._approve(created.id)
        self.assertEqual(self.ledger.quantities(self.db, item.id).allocated, 3)
        self.assertEqual(approved.quantity, 3)

    def test_edit_applies_create_rules(self) -> None:
        created = self._create()
        for fields, error in (
            ({"quantidade": 0}, InvalidQuantity),
            ({"item": " "}, InvalidRequest),
            ({"cotacoes": [{"valorUnitario": 10}]}, InvalidRequest),
            ({"cotacoes": [{"valorUnitario": 0, "link": "https://a.example"}]}, InvalidRequest),
            ({"status": PENDENTE}, InvalidRequest),
            ({}, InvalidRequest),
            ({"stock_item_ref": 999}, NotFound),
        ):
            with self.assertRaises(error, msg=str(fields)):
                self.service.update(self.db, self.requester, created.id, fields)
        self.assertEqual(self.service.get(self.db, created.id).version, created.version)

    def test_edit_refused_once_approved(self) -> None:
        created = self._create()
        approved = self._approve(created.id)
        with self.assertRaises(InvalidTransition) as ctx:
            self.service.update(self.db, self.requester, created.id, {"quantidade": 9})
        self.assertEqual(ctx.exception.message_key, "purchase_request_not_editable")
        unchanged = self.service.get(self.db, created.id)
        self.assertEqual(unchanged.quantity, 5)
        self.assertEqual(unchanged.version, approved.version)

    def test_edit_with_stale_version_is_a_conflict(self) -> None:
        created = self._create()
        self.service.update(self.db, self.requester, created.id, {"quantidade": 6})
        with self.assertRaises(Conflict):
            self.service.update(
                self.db, self.requester, created.id, {"quantidade": 7}, expected_version=created.version
            )
        self.assertEqual(self.service.get(self.db, created.id).quantity, 6)

    def test_edit_needs_request_or_approve_permission(self) -> None:
        created = self._create()
        executor = actor_with_role(self.db, "EXECUTOR")
        with self.assertRaises(Forbidden):
            self.service.update(self.db, executor, created.id, {"quantidade": 2})
        self.assertEqual(self.service.update(self.db, self.buyer, created.id, {"quantidade": 2}).quantity, 2)

    # Approve / reject ----------------------------------------------------

    def test_reject_releases_reservation_and_closes_request(self) -> None:
        item = self._stock_item(10)
        created = self._create(stock_item_ref=item.id)
        approved = self._approve(created.id)
        self.assertIsNotNone(approved.reservation_ref)
        self.assertEqual(self.ledger.quantities(self.db, item.id).allocated, 5)

        rejected = self.service.reject(self.db, self.buyer, created.id, "budget exceeded")
        self.assertEqual(rejected.status, REPROVADO)
        self.assertEqual(rejected.rejection_reason, "budget exceeded")
        self.assertIsNone(rejected.reservation_ref)
        self.assertEqual(self.ledger.quantities(self.db, item.id).allocated, 0)

        with self.assertRaises(InvalidTransition):
            self._approve(created.id)

    def test_reject_requires_reason(self) -> None:
        created = self._create()
        with self.assertRaises(InvalidRequest) as ctx:
            self.service.reject(self.db, self.buyer, created.id, "   ")
        self.assertEqual(ctx.exception.message_key, "reason_required")
        self.assertEqual(self.service.get(self.db, created.id).status, SOLICITADO)

    def test_actor_without_approve_permission_changes_nothing(self) -> None:
        created = self._create()
        with self.assertRaises(Forbidden):
            self.service.approve(
                self.db,
                self.requester,
                ApprovalInput(purchase_request_id=created.id, quotations=[_quotation()], selected_index=0),
            )
        unchanged = self.service.get(self.db, created.id)
        self.assertEqual(unchanged.status, SOLICITADO)
        self.assertEqual(unchanged.version, 1)
        self.assertEqual(len(self.service.history(self.db, created.id)), 1)

    def test_approve_validates_selection(self) -> None:
        created = self._create()
        with self.assertRaises(InvalidRequest) as ctx:
            self.service.approve(
                self.db, self.buyer, ApprovalInput(purchase_request_id=created.id, quotations=[], selected_index=0)
            )
        self.assertEqual(ctx.exception.message_key, "quotations_required")
        with self.assertRaises(InvalidRequest) as ctx:
            self._approve(created.id, _quotation(), selected_index=1)
        self.assertEqual(ctx.exception.message_key, "selected_index_invalid")
        with self.assertRaises(InvalidRequest) as ctx:
            self._approve(created.id, _quotation(unit_price="0"))
        self.assertEqual(ctx.exception.message_key, "quotation_price_required")

    def test_approve_picks_the_selected_quotation_not_the_cheapest(self) -> None:
        created = self._create(quantity=2)
        approved = self._approve(
            created.id,
            _quotation(unit_price="10", freight="0", taxes="0"),
            _quotation(unit_price="12.345", freight="0", taxes="0"),
            selected_index=1,
        )
        self.assertEqual(approved.unit_value, Decimal("12.35"))
        self.assertEqual(approved.selected_quotation.unit_price, Decimal("12.345"))
        self.assertEqual(self.service.compare(self.db, created.id)[0]["index"], 0)

    def test_approve_fails_whole_when_stock_is_short(self) -> None:
        item = self._stock_item(3)
        created = self._create(stock_item_ref=item.id)

        with self.assertRaises(InsufficientStock):
            self._approve(created.id)

        unchanged = self.service.get(self.db, created.id)
        self.assertEqual(unchanged.status, SOLICITADO)
        self.assertIsNone(unchanged.unit_value)
        self.assertEqual(unchanged.quotations, ())
        self.assertEqual(self.ledger.quantities(self.db, item.id).allocated, 0)
        self.assertEqual(len(self.service.history(self.db, created.id)), 1)

    def test_reapproval_from_pendente_keeps_single_reservation(self) -> None:
        item = self._stock_item(10)
        created = self._create(stock_item_ref=item.id)
        first = self._approve(created.id)
        second = self._approve(created.id, _quotation(unit_price="90"))

        self.assertEqual(second.status, PENDENTE)
        self.assertEqual(second.unit_value, Decimal("105.00"))
        self.assertEqual(second.reservation_ref, first.reservation_ref)
        self.assertEqual(self.ledger.quantities(self.db, item.id).allocated, 5)

    def test_stale_version_is_a_conflict(self) -> None:
        created = self._create()
        with self.assertRaises(Conflict):
            self._approve(created.id, expected_version=created.version + 1)
        approved = self._approve(created.id, expected_version=created.version)
        self.assertEqual(approved.version, created.version + 1)

    # Advance -------------------------------------------------------------

    def test_advance_cannot_skip_in_transit(self) -> None:
        created = self._create()
        self._approve(created.id)
        with self.assertRaises(InvalidTransition):
            self._advance(created.id, ENTREGUE, {"delivery_date": "2026-10-20"})
        with self.assertRaises(InvalidTransition):
            self._advance(created.id, ENTREGUE)
        self.assertEqual(self.service.get(self.db, created.id).status, PENDENTE)

    def test_advance_rejects_targets_outside_the_advance_path(self) -> None:
        created = self._create()
        for target in ("ARQUIVADO", PENDENTE, REPROVADO):
            with self.assertRaises(InvalidRequest):
                self._advance(created.id, target)
        for target in (SOLICITADO, COMPRADO_ACAMINHO):
            with self.assertRaises(InvalidTransition):
                self._advance(created.id, target)
        self.assertEqual(self.service.get(self.db, created.id).status, SOLICITADO)

    def test_advance_from_terminal_request_is_an_invalid_transition(self) -> None:
        created = self._create()
        self.service.reject(self.db, self.buyer, created.id, "budget exceeded")
        for target in (PENDENTE, REPROVADO, COMPRADO_ACAMINHO):
            with self.assertRaises(InvalidTransition) as ctx:
                self._advance(created.id, target)
            self.assertEqual(ctx.exception.payload["from_status"], REPROVADO)
        with self.assertRaises(InvalidRequest):
            self._advance(created.id, "ARQUIVADO")

    def test_full_lifecycle_receives_into_stock(self) -> None:
        item = self._stock_item(10)
        created = self._create(quantity=4, stock_item_ref=item.id)
        self._approve(created.id)

        in_transit = self._advance(
            created.id,
            COMPRADO_ACAMINHO,
            {"statusEntrega": "parcial", "previsaoEntrega": "2026-11-02", "formaPagamento": "boleto"},
        )
        self.assertEqual(in_transit.status, COMPRADO_ACAMINHO)
        self.assertEqual(in_transit.delivery_info.sub_status, "PARCIAL")
        self.assertEqual(in_transit.delivery_info.expected_delivery, date(2026, 11, 2))
        self.assertIsNotNone(in_transit.delivery_info.confirmed_at)

        updated = self.service.update_delivery_info(self.db, self.buyer, created.id, {"note": "segunda remessa"})
        self.assertEqual(updated.status, COMPRADO_ACAMINHO)
        self.assertEqual(updated.delivery_info.note, "segunda remessa")
        self.assertEqual(updated.delivery_info.payment_method, "boleto")

        delivered = self._advance(created.id, ENTREGUE, {"dataEntrega": "2026-11-03", "recebidoPor": "Almoxarifado"})
        self.assertEqual(delivered.status, ENTREGUE)
        self.assertEqual(delivered.delivery_info.delivery_date, date(2026, 11, 3))
        self.assertEqual(delivered.delivery_info.received_by, "Almoxarifado")

        quantities = self.ledger.quantities(self.db, item.id)
        self.assertEqual(quantities.total, 14)
        self.assertEqual(quantities.allocated, 4)
        self.assertEqual(self.ledger.get_item(self.db, item.id).unit_value, Decimal("115.00"))

        statuses = [(row["from_status"], row["to_status"]) for row in self.service.history(self.db, created.id)]
        self.assertEqual(
            statuses,
            [
                (None, SOLICITADO),
                (SOLICITADO, PENDENTE),
                (PENDENTE, COMPRADO_ACAMINHO),
                (COMPRADO_ACAMINHO, ENTREGUE),
            ],
        )

    def test_delivery_without_stock_ref_creates_item(self) -> None:
        created = self._create(quantity=3, item_name="Luva nitrilica", project_ref=8)
        self._approve(created.id)
        self._advance(created.id, COMPRADO_ACAMINHO)
        delivered = self._advance(created.id, ENTREGUE, {"delivery_date": "2026-10-25"})

        self.assertIsNotNone(delivered.stock_item_ref)
        item = self.ledger.get_item(self.db, delivered.stock_item_ref)
        self.assertEqual(item.name, "Luva nitrilica")
        self.assertEqual(item.total_quantity, 3)
        self.assertEqual(item.project_ref, 8)

    def test_delivery_needs_date_and_valid_sub_status(self) -> None:
        created = self._create()
        self._approve(created.id)
        with self.assertRaises(InvalidRequest) as ctx:
            self._advance(created.id, COMPRADO_ACAMINHO, {"sub_status": "ENTREGUE"})
        self.assertEqual(ctx.exception.message_key, "sub_status_invalid")
        self._advance(created.id, COMPRADO_ACAMINHO)
        with self.assertRaises(InvalidRequest) as ctx:
            self._advance(created.id, ENTREGUE)
        self.assertEqual(ctx.exception.message_key, "delivery_date_required")
        self.assertEqual(self.service.get(self.db, created.id).status, COMPRADO_ACAMINHO)

    def test_in_transit_request_cannot_be_rejected(self) -> None:
        created = self._create()
        self._approve(created.id)
        self._advance(created.id, COMPRADO_ACAMINHO)
        with self.assertRaises(InvalidTransition):
            self.service.reject(self.db, self.buyer, created.id, "tarde demais")

    def test_terminal_requests_are_immutable(self) -> None:
        rejected = self._create()
        self.service.reject(self.db, self.buyer, rejected.id, "duplicada")

        delivered = self._create()
        self._approve(delivered.id)
        self._advance(delivered.id, COMPRADO_ACAMINHO)
        self._advance(delivered.id, ENTREGUE, {"delivery_date": "2026-10-21"})

        for request_id in (rejected.id, delivered.id):
            before = self.service.get(self.db, request_id)
            with self.assertRaises(InvalidTransition):
                self._approve(request_id)
            with self.assertRaises(InvalidTransition) as ctx:
                self.service.reject(self.db, self.buyer, request_id, "de novo")
            self.assertEqual(ctx.exception.message_key, "purchase_request_terminal")
            with self.assertRaises(InvalidTransition):
                self._advance(request_id, COMPRADO_ACAMINHO)
            with self.assertRaises(InvalidTransition):
                self.service.update_delivery_info(self.db, self.buyer, request_id, {"note": "x"})
            with self.assertRaises(Conflict):
                self.service.delete(self.db, self.director, request_id)
            self.assertEqual(self.service.get(self.db, request_id), before)

    # Batch ---------------------------------------------------------------

    def test_batch_advance_is_all_or_nothing(self) -> None:
        first = self._create()
        second = self._create()
        not_approved = self._create()
        self._approve(first.id)
        self._approve(second.id)

        with self.assertRaises(InvalidTransition):
            self.service.advance_batch(self.db, self.buyer, [first.id, second.id, not_approved.id])
        self.assertEqual(self.service.get(self.db, first.id).status, PENDENTE)
        self.assertEqual(self.service.get(self.db, second.id).status, PENDENTE)

        moved = self.service.advance_batch(self.db, self.buyer, [first.id, second.id, first.id], {"dataCompra": "2026-10-19"})
        self.assertEqual([item.status for item in moved], [COMPRADO_ACAMINHO, COMPRADO_ACAMINHO])
        self.assertEqual(moved[0].delivery_info.purchase_date, date(2026, 10, 19))

        with self.assertRaises(InvalidRequest):
            self.service.advance_batch(self.db, self.buyer, [])

    # Delete / list -------------------------------------------------------

    def test_delete_needs_admin_and_releases_reservation(self) -> None:
        item = self._stock_item(10)
        created = self._create(stock_item_ref=item.id)
        self._approve(created.id)

        with self.assertRaises(Forbidden):
            self.service.delete(self.db, self.buyer, created.id)

        self.service.delete(self.db, self.director, created.id)
        with self.assertRaises(NotFound):
            self.service.get(self.db, created.id)
        self.assertEqual(self.ledger.quantities(self.db, item.id).allocated, 0)
        self.assertEqual(self.service.history(self.db, created.id)[-1]["reason"], "deleted")

    def test_terminal_delete_with_override(self) -> None:
        created = self._create()
        self.service.reject(self.db, self.buyer, created.id, "cancelada")
        self.service.delete(self.db, self.director, created.id, override=True)
        with self.assertRaises(NotFound):
            self.service.get(self.db, created.id)

    def test_list_hides_rejected_unless_asked(self) -> None:
        kept = self._create(item_name="Martelo")
        rejected = self._create(item_name="Serrote")
        self.service.reject(self.db, self.buyer, rejected.id, "sem verba")

        self.assertEqual([item.id for item in self.service.list(self.db)], [kept.id])
        self.assertEqual(
            {item.id for item in self.service.list(self.db, include_rejected=True)},
            {kept.id, rejected.id},
        )
        self.assertEqual([item.id for item in self.service.list(self.db, statuses=["reprovado"])], [rejected.id])
        self.assertEqual([item.id for item in self.service.list(self.db, search="marte")], [kept.id])
        with self.assertRaises(InvalidRequest):
            self.service.list(self.db, statuses=["ARQUIVADO"])


if __name__ == "__main__":
    unittest.main()
