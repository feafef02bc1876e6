import threading
import unittest
from decimal import Decimal

from erp_ops.contexts.stock.application.service import StockLedger
from erp_ops.db import connect_database
from erp_ops.domain.contracts import AllocationOwner, StockItemInput
from erp_ops.errors import Conflict, Forbidden, InsufficientStock, InvalidQuantity, InvalidRequest, NotFound
from tests.helpers.actors import actor_with_role
from tests.helpers.temp_db import TempDbSandbox


class StockLedgerTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="stock_ledger")
        self.db = self._temp_db.connect()
        self.ledger = StockLedger()
        self.buyer = actor_with_role(self.db, "COMPRADOR")
        self.item = self.ledger.upsert_item(
            self.db,
            self.buyer,
            StockItemInput(name="Parafuso M8", total_quantity=10, unit_value=Decimal("1.999")),
        )

    def tearDown(self) -> None:
        self.db.close()
        self._temp_db.cleanup()

    def _assert_consistent(self, item_id: int) -> None:
        quantities = self.ledger.quantities(self.db, item_id)
        allocations = self.ledger.list_allocations(self.db, stock_item_id=item_id)
        self.assertEqual(quantities.allocated, sum(int(row["quantity"]) for row in allocations))
        self.assertEqual(quantities.allocated + quantities.available, quantities.total)
        self.assertGreaterEqual(quantities.available, 0)

    def test_new_item_has_everything_available(self) -> None:
        self.assertEqual(self.item.unit_value, Decimal("2.00"))
        quantities = self.ledger.quantities(self.db, self.item.id)
        self.assertEqual(quantities.to_payload(), {"total": 10, "allocated": 0, "available": 10})

    def test_allocate_and_release(self) -> None:
        allocation_id = self.ledger.allocate(self.db, self.buyer, self.item.id, 4, AllocationOwner(project_ref=1))
        self.assertEqual(self.ledger.quantities(self.db, self.item.id).available, 6)
        self._assert_consistent(self.item.id)

        self.ledger.release(self.db, self.buyer, allocation_id)
        self.assertEqual(self.ledger.quantities(self.db, self.item.id).available, 10)
        with self.assertRaises(NotFound):
            self.ledger.release(self.db, self.buyer, allocation_id)

    def test_allocation_beyond_available_fails_without_change(self) -> None:
        self.ledger.allocate(self.db, self.buyer, self.item.id, 4, AllocationOwner(project_ref=1))
        with self.assertRaises(InsufficientStock) as ctx:
            self.ledger.allocate(self.db, self.buyer, self.item.id, 7, AllocationOwner(project_ref=2))
        self.assertEqual(ctx.exception.payload["available"], 6)
        self.assertEqual(ctx.exception.payload["requested"], 7)
        self.assertEqual(self.ledger.quantities(self.db, self.item.id).allocated, 4)
        self._assert_consistent(self.item.id)

    def test_same_owner_allocations_merge(self) -> None:
        owner = AllocationOwner(project_ref=3, stage_ref=1)
        first = self.ledger.allocate(self.db, self.buyer, self.item.id, 2, owner)
        second = self.ledger.allocate(self.db, self.buyer, self.item.id, 3, owner)
        self.assertEqual(first, second)
        rows = self.ledger.list_allocations(self.db, stock_item_id=self.item.id)
        self.assertEqual(len(rows), 1)
        self.assertEqual(int(rows[0]["quantity"]), 5)
        self.assertEqual(rows[0]["item_name"], "Parafuso M8")

    def test_allocation_needs_owner_and_positive_quantity(self) -> None:
        with self.assertRaises(InvalidRequest):
            self.ledger.allocate(self.db, self.buyer, self.item.id, 1, AllocationOwner())
        for quantity in (0, -2, 1.5, True):
            with self.assertRaises(InvalidQuantity):
                self.ledger.allocate(self.db, self.buyer, self.item.id, quantity, AllocationOwner(user_ref=1))
        with self.assertRaises(NotFound):
            self.ledger.allocate(self.db, self.buyer, 999, 1, AllocationOwner(user_ref=1))

    def test_adjust_counts_own_quantity_as_available(self) -> None:
        allocation_id = self.ledger.allocate(self.db, self.buyer, self.item.id, 6, AllocationOwner(project_ref=1))
        self.ledger.allocate(self.db, self.buyer, self.item.id, 2, AllocationOwner(project_ref=2))

        self.ledger.adjust_allocation(self.db, self.buyer, allocation_id, 8)
        self.assertEqual(self.ledger.quantities(self.db, self.item.id).available, 0)

        with self.assertRaises(InsufficientStock):
            self.ledger.adjust_allocation(self.db, self.buyer, allocation_id, 9)
        self._assert_consistent(self.item.id)

    def test_total_cannot_drop_below_allocated(self) -> None:
        self.ledger.allocate(self.db, self.buyer, self.item.id, 7, AllocationOwner(project_ref=1))
        with self.assertRaises(InvalidQuantity) as ctx:
            self.ledger.upsert_item(
                self.db,
                self.buyer,
                StockItemInput(item_id=self.item.id, name="Parafuso M8", total_quantity=6),
            )
        self.assertEqual(ctx.exception.message_key, "quantity_below_allocated")

        updated = self.ledger.upsert_item(
            self.db,
            self.buyer,
            StockItemInput(item_id=self.item.id, name="Parafuso M8", total_quantity=7, unit_value="3.5"),
        )
        self.assertEqual(updated.available_quantity, 0)
        self.assertEqual(updated.unit_value, Decimal("3.50"))

    def test_negative_total_and_unit_value_are_rejected(self) -> None:
        with self.assertRaises(InvalidQuantity):
            self.ledger.upsert_item(self.db, self.buyer, StockItemInput(name="X", total_quantity=-1))
        with self.assertRaises(InvalidRequest):
            self.ledger.upsert_item(self.db, self.buyer, StockItemInput(name="X", total_quantity=1, unit_value="-1"))
        with self.assertRaises(InvalidRequest):
            self.ledger.upsert_item(self.db, self.buyer, StockItemInput(name="  ", total_quantity=1))

    def test_item_with_allocations_cannot_be_deleted(self) -> None:
        allocation_id = self.ledger.allocate(self.db, self.buyer, self.item.id, 1, AllocationOwner(user_ref=5))
        with self.assertRaises(Conflict) as ctx:
            self.ledger.delete_item(self.db, self.buyer, self.item.id)
        self.assertEqual(ctx.exception.message_key, "item_has_allocations")

        self.ledger.release(self.db, self.buyer, allocation_id)
        self.ledger.delete_item(self.db, self.buyer, self.item.id)
        with self.assertRaises(NotFound):
            self.ledger.get_item(self.db, self.item.id)

    def test_stock_moves_need_permission(self) -> None:
        executor = actor_with_role(self.db, "EXECUTOR")
        with self.assertRaises(Forbidden):
            self.ledger.allocate(self.db, executor, self.item.id, 1, AllocationOwner(user_ref=executor.actor_id))
        with self.assertRaises(Forbidden):
            self.ledger.upsert_item(self.db, executor, StockItemInput(name="Y", total_quantity=1))
        self.assertEqual(self.ledger.quantities(self.db, self.item.id).allocated, 0)

    def test_receive_adds_to_matching_item_or_creates_one(self) -> None:
        matched = self.ledger.receive(self.db, quantity=5, unit_value=Decimal("2.10"), name="parafuso m8")
        self.assertEqual(matched.id, self.item.id)
        self.assertEqual(matched.total_quantity, 15)
        self.assertEqual(matched.unit_value, Decimal("2.10"))

        other_project = self.ledger.receive(
            self.db, quantity=2, unit_value=Decimal("2.10"), name="Parafuso M8", project_ref=4
        )
        self.assertNotEqual(other_project.id, self.item.id)
        self.assertEqual(other_project.total_quantity, 2)
        self.assertEqual(other_project.project_ref, 4)

        by_ref = self.ledger.receive(self.db, quantity=1, unit_value="0", item_id=other_project.id)
        self.assertEqual(by_ref.total_quantity, 3)

    def test_search_by_name(self) -> None:
        self.ledger.upsert_item(self.db, self.buyer, StockItemInput(name="Cabo flexivel 2,5mm", total_quantity=100))
        names = [item.name for item in self.ledger.list_items(self.db, search="cabo")]
        self.assertEqual(names, ["Cabo flexivel 2,5mm"])


class StockLedgerConcurrencyTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="stock_concurrency")
        self.db = self._temp_db.connect()
        self.buyer = actor_with_role(self.db, "COMPRADOR")
        self.item = StockLedger().upsert_item(self.db, self.buyer, StockItemInput(name="Broca", total_quantity=10))

    def tearDown(self) -> None:
        self.db.close()
        self._temp_db.cleanup()

    def test_concurrent_allocations_never_oversubscribe(self) -> None:
        barrier = threading.Barrier(2)
        outcomes = {}

        def _allocate(quantity: int, project_ref: int) -> None:
            db = connect_database(self._temp_db.db_path, lock_timeout=30.0)
            try:
                barrier.wait(timeout=10)
                StockLedger().allocate(db, self.buyer, self.item.id, quantity, AllocationOwner(project_ref=project_ref))
                outcomes[quantity] = "ok"
            except InsufficientStock:
                outcomes[quantity] = "insufficient"
            finally:
                db.close()

        threads = [
            threading.Thread(target=_allocate, args=(4, 1)),
            threading.Thread(target=_allocate, args=(7, 2)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertEqual(sorted(outcomes.values()), ["insufficient", "ok"])
        quantities = StockLedger().quantities(self.db, self.item.id)
        winner = next(quantity for quantity, outcome in outcomes.items() if outcome == "ok")
        self.assertEqual(quantities.allocated, winner)
        self.assertEqual(quantities.allocated + quantities.available, 10)


if __name__ == "__main__":
    unittest.main()
