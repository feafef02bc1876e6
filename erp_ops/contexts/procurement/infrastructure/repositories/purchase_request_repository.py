from __future__ import annotations

from typing import Any, Iterable

from erp_ops.infrastructure.repositories.base import BaseRepository


class PurchaseRequestRepository(BaseRepository):
    def create(
        self,
        db,
        *,
        item_name: str,
        description: str | None,
        quantity: int,
        status: str,
        quotations_json: str,
        category_ref: int | None,
        project_ref: int | None,
        stage_ref: int | None,
        stock_item_ref: int | None,
        requested_by: int,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO purchase_requests (
                item_name, description, quantity, status, quotations_json,
                category_ref, project_ref, stage_ref, stock_item_ref, requested_by
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                item_name,
                description,
                int(quantity),
                status,
                quotations_json,
                category_ref,
                project_ref,
                stage_ref,
                stock_item_ref,
                requested_by,
            ),
        )
        return self.returning_id(cursor)

    def get_by_id(self, db, purchase_request_id: int, *, lock: bool = False) -> dict | None:
        suffix = db.for_update() if lock else ""
        row = db.execute(
            f"""
            SELECT *
            FROM purchase_requests
            WHERE id = ?
            LIMIT 1{suffix}
            """,
            (purchase_request_id,),
        ).fetchone()
        return self.row_to_dict(row)

    def update_versioned(
        self,
        db,
        purchase_request_id: int,
        expected_version: int,
        fields: dict[str, Any],
    ) -> bool:
        """Apply ``fields`` only if the row still carries ``expected_version``."""
        if "unit_value" in fields:
            fields = {**fields, "unit_value": self.money_param(db, fields["unit_value"])}
        updates = [f"{key} = ?" for key in fields.keys()]
        updates.append("version = version + 1")
        params = list(fields.values())
        params.extend([purchase_request_id, int(expected_version)])
        cursor = db.execute(
            f"""
            UPDATE purchase_requests
            SET {", ".join(updates)}, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND version = ?
            """,
            tuple(params),
        )
        return int(cursor.rowcount or 0) == 1

    def delete_by_id(self, db, purchase_request_id: int) -> None:
        db.execute("DELETE FROM purchase_requests WHERE id = ?", (purchase_request_id,))

    def list_requests(
        self,
        db,
        *,
        statuses: Iterable[str] | None = None,
        exclude_statuses: Iterable[str] | None = None,
        requested_by: int | None = None,
        project_ref: int | None = None,
        search: str | None = None,
        limit: int = 200,
    ) -> list[dict]:
        clauses: list[str] = []
        params: list[Any] = []

        status_list = [status for status in (statuses or []) if status]
        if status_list:
            clauses.append(f"status IN ({', '.join('?' for _ in status_list)})")
            params.extend(status_list)
        excluded = [status for status in (exclude_statuses or []) if status]
        if excluded:
            clauses.append(f"status NOT IN ({', '.join('?' for _ in excluded)})")
            params.extend(excluded)
        if requested_by is not None:
            clauses.append("requested_by = ?")
            params.append(requested_by)
        if project_ref is not None:
            clauses.append("project_ref = ?")
            params.append(project_ref)
        if search:
            clauses.append("LOWER(item_name) LIKE ?")
            params.append(f"%{search.strip().lower()}%")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(int(limit))
        rows = db.execute(
            f"""
            SELECT *
            FROM purchase_requests
            {where}
            ORDER BY id DESC
            LIMIT ?
            """,
            tuple(params),
        ).fetchall()
        return self.rows_to_dicts(rows)
