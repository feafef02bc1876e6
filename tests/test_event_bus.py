import unittest

from erp_ops.contexts.procurement.application.service import ProcurementService
from erp_ops.core import EventBus, PurchaseRequestCreated, PurchaseRequestStatusChanged
from erp_ops.domain.contracts import ApprovalInput, PurchaseRequestCreateInput
from erp_ops.errors import InvalidTransition
from erp_ops.observability import metrics_snapshot, reset_metrics_for_tests
from erp_ops.procurement.quotation import Quotation
from tests.helpers.actors import actor_with_role
from tests.helpers.temp_db import TempDbSandbox


class EventBusTest(unittest.TestCase):
    def test_handler_execution_order_is_predictable(self) -> None:
        bus = EventBus()
        execution_trace = []

        bus.subscribe(PurchaseRequestCreated, lambda _event: execution_trace.append("first"))
        bus.subscribe(PurchaseRequestCreated, lambda _event: execution_trace.append("second"))
        bus.publish(PurchaseRequestCreated(request_id=1, status="SOLICITADO"))

        self.assertEqual(execution_trace, ["first", "second"])

    def test_failing_handler_does_not_stop_the_others(self) -> None:
        bus = EventBus()
        received = []

        def broken(_event):
            raise RuntimeError("boom")

        bus.subscribe(PurchaseRequestCreated, broken)
        bus.subscribe(PurchaseRequestCreated, received.append)
        with self.assertLogs("erp_ops.events", level="ERROR"):
            bus.publish(PurchaseRequestCreated(request_id=2, status="SOLICITADO"))

        self.assertEqual(len(received), 1)

    def test_event_payload_is_serializable(self) -> None:
        event = PurchaseRequestStatusChanged(request_id=3, from_status="SOLICITADO", to_status="PENDENTE", actor_id=4)
        payload = event.to_payload()
        self.assertEqual(payload["event_type"], "PurchaseRequestStatusChanged")
        self.assertTrue(payload["occurred_at"].endswith("Z"))
        self.assertTrue(payload["event_id"])


class ProcurementEventsTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()
        self._temp_db = TempDbSandbox(prefix="procurement_events")
        self.db = self._temp_db.connect()
        self.buyer = actor_with_role(self.db, "COMPRADOR")
        self.bus = EventBus()
        self.created_events = []
        self.status_events = []
        self.bus.subscribe(PurchaseRequestCreated, self.created_events.append)
        self.bus.subscribe(PurchaseRequestStatusChanged, self.status_events.append)
        self.service = ProcurementService(event_bus=self.bus)

    def tearDown(self) -> None:
        self.db.close()
        self._temp_db.cleanup()

    def test_create_and_approve_publish_events(self) -> None:
        created = self.service.create(self.db, self.buyer, PurchaseRequestCreateInput(item_name="Drill", quantity=5))
        self.service.approve(
            self.db,
            self.buyer,
            ApprovalInput(purchase_request_id=created.id, quotations=[Quotation(unit_price="10")], selected_index=0),
        )

        self.assertEqual(len(self.created_events), 1)
        self.assertEqual(self.created_events[0].request_id, created.id)
        self.assertEqual(self.created_events[0].actor_id, self.buyer.actor_id)

        self.assertEqual(len(self.status_events), 1)
        changed = self.status_events[0]
        self.assertEqual((changed.from_status, changed.to_status), ("SOLICITADO", "PENDENTE"))

        snapshot = metrics_snapshot()
        self.assertEqual(snapshot["status_transition_total"], {"SOLICITADO->PENDENTE": 1})
        self.assertEqual(snapshot["domain_event_emitted_total"]["PurchaseRequestCreated"], 1)

    def test_failed_command_publishes_nothing(self) -> None:
        created = self.service.create(self.db, self.buyer, PurchaseRequestCreateInput(item_name="Drill", quantity=1))
        self.service.reject(self.db, self.buyer, created.id, "sem verba")
        self.status_events.clear()

        with self.assertRaises(InvalidTransition):
            self.service.reject(self.db, self.buyer, created.id, "de novo")
        self.assertEqual(self.status_events, [])


if __name__ == "__main__":
    unittest.main()
