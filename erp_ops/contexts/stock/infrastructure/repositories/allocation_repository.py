from __future__ import annotations

from typing import Any

from erp_ops.domain.contracts import AllocationOwner
from erp_ops.infrastructure.repositories.base import BaseRepository


_OWNER_FIELDS = ("project_ref", "stage_ref", "user_ref", "purchase_request_ref")


class AllocationRepository(BaseRepository):
    def create(self, db, *, stock_item_id: int, quantity: int, owner: AllocationOwner) -> int:
        cursor = db.execute(
            """
            INSERT INTO stock_allocations (
                stock_item_id, quantity, project_ref, stage_ref, user_ref, purchase_request_ref
            )
            VALUES (?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                stock_item_id,
                int(quantity),
                owner.project_ref,
                owner.stage_ref,
                owner.user_ref,
                owner.purchase_request_ref,
            ),
        )
        return self.returning_id(cursor)

    def get_by_id(self, db, allocation_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT id, stock_item_id, quantity, project_ref, stage_ref, user_ref,
                   purchase_request_ref, created_at, updated_at
            FROM stock_allocations
            WHERE id = ?
            """,
            (allocation_id,),
        ).fetchone()
        return self.row_to_dict(row)

    def find_for_owner(self, db, *, stock_item_id: int, owner: AllocationOwner) -> dict | None:
        clauses = ["stock_item_id = ?"]
        params: list[Any] = [stock_item_id]
        for name in _OWNER_FIELDS:
            value = getattr(owner, name)
            if value is None:
                clauses.append(f"{name} IS NULL")
            else:
                clauses.append(f"{name} = ?")
                params.append(value)
        row = db.execute(
            f"""
            SELECT id, stock_item_id, quantity, project_ref, stage_ref, user_ref, purchase_request_ref
            FROM stock_allocations
            WHERE {" AND ".join(clauses)}
            ORDER BY id
            LIMIT 1
            """,
            tuple(params),
        ).fetchone()
        return self.row_to_dict(row)

    def list_allocations(
        self,
        db,
        *,
        stock_item_id: int | None = None,
        project_ref: int | None = None,
        stage_ref: int | None = None,
        user_ref: int | None = None,
        purchase_request_ref: int | None = None,
    ) -> list[dict]:
        filters = {
            "a.stock_item_id": stock_item_id,
            "a.project_ref": project_ref,
            "a.stage_ref": stage_ref,
            "a.user_ref": user_ref,
            "a.purchase_request_ref": purchase_request_ref,
        }
        clauses = [f"{column} = ?" for column, value in filters.items() if value is not None]
        params = [value for value in filters.values() if value is not None]
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = db.execute(
            f"""
            SELECT a.id, a.stock_item_id, i.name AS item_name, a.quantity, a.project_ref,
                   a.stage_ref, a.user_ref, a.purchase_request_ref, a.created_at
            FROM stock_allocations a
            JOIN stock_items i ON i.id = a.stock_item_id
            {where}
            ORDER BY a.id
            """,
            tuple(params),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def sum_for_item(self, db, stock_item_id: int, *, exclude_id: int | None = None) -> int:
        query = "SELECT COALESCE(SUM(quantity), 0) AS total FROM stock_allocations WHERE stock_item_id = ?"
        params: tuple = (stock_item_id,)
        if exclude_id is not None:
            query += " AND id <> ?"
            params = (stock_item_id, exclude_id)
        row = db.execute(query, params).fetchone()
        return int(row["total"] if row else 0)

    def count_for_item(self, db, stock_item_id: int) -> int:
        row = db.execute(
            "SELECT COUNT(*) AS total FROM stock_allocations WHERE stock_item_id = ?",
            (stock_item_id,),
        ).fetchone()
        return int(row["total"] if row else 0)

    def set_quantity(self, db, allocation_id: int, quantity: int) -> None:
        db.execute(
            "UPDATE stock_allocations SET quantity = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (int(quantity), allocation_id),
        )

    def delete_by_id(self, db, allocation_id: int) -> None:
        db.execute("DELETE FROM stock_allocations WHERE id = ?", (allocation_id,))
