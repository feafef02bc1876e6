from __future__ import annotations

from typing import Iterable

from erp_ops.infrastructure.repositories.base import BaseRepository


class AccessRepository(BaseRepository):
    """Permission catalog, page catalog, roles and users."""

    def upsert_permission(self, db, *, module: str, action: str, description: str | None) -> dict:
        db.execute(
            """
            INSERT INTO permissions (module, action, description)
            VALUES (?, ?, ?)
            ON CONFLICT (module, action) DO UPDATE SET description = excluded.description
            """,
            (module, action, description),
        )
        return self.find_permission(db, module=module, action=action)

    def find_permission(self, db, *, module: str, action: str) -> dict | None:
        row = db.execute(
            "SELECT id, module, action, description FROM permissions WHERE module = ? AND action = ?",
            (module, action),
        ).fetchone()
        return self.row_to_dict(row)

    def list_permissions(self, db) -> list[dict]:
        rows = db.execute(
            "SELECT id, module, action, description FROM permissions ORDER BY module, action"
        ).fetchall()
        return self.rows_to_dicts(rows)

    def upsert_page(self, db, *, path: str, label: str | None) -> dict:
        db.execute(
            """
            INSERT INTO pages (path, label)
            VALUES (?, ?)
            ON CONFLICT (path) DO UPDATE SET label = excluded.label
            """,
            (path, label),
        )
        row = db.execute("SELECT id, path, label FROM pages WHERE path = ?", (path,)).fetchone()
        return dict(row)

    def list_pages(self, db) -> list[dict]:
        rows = db.execute("SELECT id, path, label FROM pages ORDER BY path").fetchall()
        return self.rows_to_dicts(rows)

    def find_role_by_name(self, db, name: str) -> dict | None:
        row = db.execute(
            "SELECT id, name, description, active FROM roles WHERE name = ?",
            (name,),
        ).fetchone()
        return self.row_to_dict(row)

    def get_role(self, db, role_id: int) -> dict | None:
        row = db.execute(
            "SELECT id, name, description, active FROM roles WHERE id = ?",
            (role_id,),
        ).fetchone()
        return self.row_to_dict(row)

    def list_roles(self, db, *, include_inactive: bool = False) -> list[dict]:
        query = "SELECT id, name, description, active FROM roles"
        if not include_inactive:
            query += " WHERE active = ?"
            rows = db.execute(query + " ORDER BY name", (True,)).fetchall()
        else:
            rows = db.execute(query + " ORDER BY name").fetchall()
        return self.rows_to_dicts(rows)

    def create_role(self, db, *, name: str, description: str | None, active: bool) -> int:
        cursor = db.execute(
            """
            INSERT INTO roles (name, description, active)
            VALUES (?, ?, ?)
            RETURNING id
            """,
            (name, description, bool(active)),
        )
        return self.returning_id(cursor)

    def update_role(self, db, role_id: int, *, description: str | None, active: bool) -> None:
        db.execute(
            """
            UPDATE roles
            SET description = ?, active = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (description, bool(active), role_id),
        )

    def set_role_active(self, db, role_id: int, active: bool) -> None:
        db.execute(
            "UPDATE roles SET active = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (bool(active), role_id),
        )

    def delete_role(self, db, role_id: int) -> None:
        db.execute("DELETE FROM roles WHERE id = ?", (role_id,))

    def replace_role_permissions(self, db, role_id: int, permission_ids: Iterable[int]) -> None:
        db.execute("DELETE FROM role_permissions WHERE role_id = ?", (role_id,))
        for permission_id in sorted(set(permission_ids)):
            db.execute(
                "INSERT INTO role_permissions (role_id, permission_id) VALUES (?, ?)",
                (role_id, permission_id),
            )

    def replace_role_pages(self, db, role_id: int, page_ids: Iterable[int]) -> None:
        db.execute("DELETE FROM role_pages WHERE role_id = ?", (role_id,))
        for page_id in sorted(set(page_ids)):
            db.execute(
                "INSERT INTO role_pages (role_id, page_id) VALUES (?, ?)",
                (role_id, page_id),
            )

    def role_permission_rows(self, db, role_id: int) -> list[dict]:
        rows = db.execute(
            """
            SELECT p.id, p.module, p.action, p.description
            FROM role_permissions rp
            JOIN permissions p ON p.id = rp.permission_id
            WHERE rp.role_id = ?
            ORDER BY p.module, p.action
            """,
            (role_id,),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def role_page_paths(self, db, role_id: int) -> list[str]:
        rows = db.execute(
            """
            SELECT pg.path
            FROM role_pages rp
            JOIN pages pg ON pg.id = rp.page_id
            WHERE rp.role_id = ?
            ORDER BY pg.path
            """,
            (role_id,),
        ).fetchall()
        return [str(row["path"]) for row in rows]

    def count_users_with_role(self, db, role_id: int) -> int:
        row = db.execute("SELECT COUNT(*) AS total FROM users WHERE role_id = ?", (role_id,)).fetchone()
        return int(row["total"] if row else 0)

    def create_user(self, db, *, name: str, email: str, role_id: int, active: bool) -> int:
        cursor = db.execute(
            """
            INSERT INTO users (name, email, role_id, active)
            VALUES (?, ?, ?, ?)
            RETURNING id
            """,
            (name, email, role_id, bool(active)),
        )
        return self.returning_id(cursor)

    def get_user(self, db, user_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT u.id, u.name, u.email, u.active, u.role_id,
                   r.name AS role_name, r.active AS role_active
            FROM users u
            JOIN roles r ON r.id = u.role_id
            WHERE u.id = ?
            """,
            (user_id,),
        ).fetchone()
        return self.row_to_dict(row)

    def email_exists(self, db, email: str) -> bool:
        row = db.execute("SELECT 1 FROM users WHERE email = ?", (email,)).fetchone()
        return bool(row)

    def update_user(self, db, user_id: int, fields: dict) -> None:
        if not fields:
            return
        updates = [f"{key} = ?" for key in fields.keys()]
        params = list(fields.values())
        params.append(user_id)
        db.execute(
            f"""
            UPDATE users
            SET {", ".join(updates)}, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            tuple(params),
        )
