from __future__ import annotations

from typing import Any

from erp_ops.infrastructure.repositories.base import BaseRepository


_ITEM_COLUMNS = """
    i.id, i.name, i.description, i.total_quantity, i.unit_value, i.attachments_json,
    i.project_ref, i.stage_ref, i.category_ref, i.created_at, i.updated_at,
    COALESCE((SELECT SUM(a.quantity) FROM stock_allocations a WHERE a.stock_item_id = i.id), 0)
        AS allocated_quantity
"""


class StockItemRepository(BaseRepository):
    def create(
        self,
        db,
        *,
        name: str,
        description: str | None,
        total_quantity: int,
        unit_value: Any,
        attachments_json: str,
        project_ref: int | None,
        stage_ref: int | None,
        category_ref: int | None,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO stock_items (
                name, description, total_quantity, unit_value, attachments_json,
                project_ref, stage_ref, category_ref
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                name,
                description,
                int(total_quantity),
                self.money_param(db, unit_value),
                attachments_json,
                project_ref,
                stage_ref,
                category_ref,
            ),
        )
        return self.returning_id(cursor)

    def get_by_id(self, db, item_id: int) -> dict | None:
        row = db.execute(
            f"SELECT {_ITEM_COLUMNS} FROM stock_items i WHERE i.id = ?",
            (item_id,),
        ).fetchone()
        return self.row_to_dict(row)

    def lock(self, db, item_id: int) -> dict | None:
        # Plain row read under FOR UPDATE; aggregates cannot be locked on postgres.
        row = db.execute(
            f"SELECT id, total_quantity FROM stock_items WHERE id = ?{db.for_update()}",
            (item_id,),
        ).fetchone()
        return self.row_to_dict(row)

    def find_match(
        self,
        db,
        *,
        name: str,
        project_ref: int | None,
        stage_ref: int | None,
    ) -> dict | None:
        row = db.execute(
            f"""
            SELECT {_ITEM_COLUMNS}
            FROM stock_items i
            WHERE LOWER(i.name) = LOWER(?)
              AND COALESCE(i.project_ref, 0) = COALESCE(?, 0)
              AND COALESCE(i.stage_ref, 0) = COALESCE(?, 0)
            ORDER BY i.id
            LIMIT 1
            """,
            (name, project_ref, stage_ref),
        ).fetchone()
        return self.row_to_dict(row)

    def list_items(self, db, *, search: str | None = None, limit: int = 200) -> list[dict]:
        params: list[Any] = []
        where = ""
        if search:
            where = "WHERE LOWER(i.name) LIKE ? OR LOWER(COALESCE(i.description, '')) LIKE ?"
            pattern = f"%{search.strip().lower()}%"
            params.extend([pattern, pattern])
        params.append(int(limit))
        rows = db.execute(
            f"""
            SELECT {_ITEM_COLUMNS}
            FROM stock_items i
            {where}
            ORDER BY i.name, i.id
            LIMIT ?
            """,
            tuple(params),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def update_fields(self, db, item_id: int, fields: dict[str, Any]) -> None:
        if not fields:
            return
        if "unit_value" in fields:
            fields = {**fields, "unit_value": self.money_param(db, fields["unit_value"])}
        updates = [f"{key} = ?" for key in fields.keys()]
        params = list(fields.values())
        params.append(item_id)
        db.execute(
            f"""
            UPDATE stock_items
            SET {", ".join(updates)}, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            tuple(params),
        )

    def delete_by_id(self, db, item_id: int) -> None:
        db.execute("DELETE FROM stock_items WHERE id = ?", (item_id,))

    def count_request_references(self, db, item_id: int) -> int:
        row = db.execute(
            "SELECT COUNT(*) AS total FROM purchase_requests WHERE stock_item_ref = ?",
            (item_id,),
        ).fetchone()
        return int(row["total"] if row else 0)
