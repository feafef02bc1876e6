import contextlib
import sqlite3
from typing import Iterable

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


PURCHASE_STATUS_CHECK = "'SOLICITADO','PENDENTE','COMPRADO_ACAMINHO','ENTREGUE','REPROVADO'"


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection
        self._in_transaction = False

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    @contextlib.contextmanager
    def transaction(self):
        """All-or-nothing unit of work.

        SQLite takes the database write lock up front (BEGIN IMMEDIATE) so two
        writers never interleave; on PostgreSQL rows are locked with
        ``for_update()`` inside the transaction. Nested calls join the outer
        transaction.
        """
        if self._in_transaction:
            yield self
            return
        self.execute("BEGIN IMMEDIATE" if self.backend == "sqlite" else "BEGIN")
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            self._in_transaction = False
            self.execute("ROLLBACK")
            raise
        self._in_transaction = False
        try:
            self.execute("COMMIT")
        except BaseException:
            # A refused COMMIT (busy, deferred constraint) leaves SQLite inside the transaction.
            if self.backend == "postgres" or self._conn.in_transaction:
                self.execute("ROLLBACK")
            raise

    def for_update(self) -> str:
        if self.backend == "postgres" and self._in_transaction:
            return " FOR UPDATE"
        return ""

    def commit(self):
        self._conn.commit()

    def close(self):
        self._conn.close()


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def connect_database(db_path: str, lock_timeout: float = 30.0) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 nao instalado.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    # isolation_level=None: statements autocommit, transactions are explicit.
    conn = sqlite3.connect(db_path, timeout=float(lock_timeout), isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        lock_timeout = current_app.config.get("DB_LOCK_TIMEOUT_SECONDS", 30)
        g.db = connect_database(db_path, lock_timeout)
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db(db: Database | None = None) -> None:
    db = db or get_db()
    if db.backend == "postgres":
        _init_db_postgres(db)
        return

    _init_db_sqlite(db)


def _init_db_sqlite(db) -> None:
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS permissions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            module TEXT NOT NULL,
            action TEXT NOT NULL,
            description TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (module, action)
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS pages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            path TEXT NOT NULL UNIQUE,
            label TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS roles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            description TEXT,
            active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS role_permissions (
            role_id INTEGER NOT NULL REFERENCES roles(id) ON DELETE CASCADE,
            permission_id INTEGER NOT NULL REFERENCES permissions(id),
            PRIMARY KEY (role_id, permission_id)
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS role_pages (
            role_id INTEGER NOT NULL REFERENCES roles(id) ON DELETE CASCADE,
            page_id INTEGER NOT NULL REFERENCES pages(id),
            PRIMARY KEY (role_id, page_id)
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            email TEXT NOT NULL UNIQUE,
            active INTEGER NOT NULL DEFAULT 1,
            role_id INTEGER NOT NULL REFERENCES roles(id),
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS stock_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            description TEXT,
            total_quantity INTEGER NOT NULL DEFAULT 0 CHECK (total_quantity >= 0),
            unit_value TEXT NOT NULL DEFAULT '0',
            attachments_json TEXT NOT NULL DEFAULT '[]',
            project_ref INTEGER,
            stage_ref INTEGER,
            category_ref INTEGER,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS stock_allocations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            stock_item_id INTEGER NOT NULL REFERENCES stock_items(id),
            quantity INTEGER NOT NULL CHECK (quantity > 0),
            project_ref INTEGER,
            stage_ref INTEGER,
            user_ref INTEGER,
            purchase_request_ref INTEGER,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        f"""
        CREATE TABLE IF NOT EXISTS purchase_requests (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            item_name TEXT NOT NULL,
            description TEXT,
            quantity INTEGER NOT NULL CHECK (quantity > 0),
            status TEXT NOT NULL DEFAULT 'SOLICITADO' CHECK (status IN ({PURCHASE_STATUS_CHECK})),
            quotations_json TEXT NOT NULL DEFAULT '[]',
            selected_index INTEGER,
            unit_value TEXT,
            category_ref INTEGER,
            project_ref INTEGER,
            stage_ref INTEGER,
            stock_item_ref INTEGER REFERENCES stock_items(id),
            reservation_ref INTEGER,
            requested_by INTEGER NOT NULL,
            rejection_reason TEXT,
            delivery_info_json TEXT,
            version INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS status_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            entity TEXT NOT NULL,
            entity_id INTEGER NOT NULL,
            from_status TEXT,
            to_status TEXT,
            reason TEXT,
            actor_id INTEGER,
            occurred_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    _ensure_indexes(db)


def _init_db_postgres(db) -> None:
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS permissions (
            id SERIAL PRIMARY KEY,
            module TEXT NOT NULL,
            action TEXT NOT NULL,
            description TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (module, action)
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS pages (
            id SERIAL PRIMARY KEY,
            path TEXT NOT NULL UNIQUE,
            label TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS roles (
            id SERIAL PRIMARY KEY,
            name TEXT NOT NULL UNIQUE,
            description TEXT,
            active BOOLEAN NOT NULL DEFAULT TRUE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS role_permissions (
            role_id INTEGER NOT NULL REFERENCES roles(id) ON DELETE CASCADE,
            permission_id INTEGER NOT NULL REFERENCES permissions(id),
            PRIMARY KEY (role_id, permission_id)
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS role_pages (
            role_id INTEGER NOT NULL REFERENCES roles(id) ON DELETE CASCADE,
            page_id INTEGER NOT NULL REFERENCES pages(id),
            PRIMARY KEY (role_id, page_id)
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            id SERIAL PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT NOT NULL UNIQUE,
            active BOOLEAN NOT NULL DEFAULT TRUE,
            role_id INTEGER NOT NULL REFERENCES roles(id),
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS stock_items (
            id SERIAL PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT,
            total_quantity INTEGER NOT NULL DEFAULT 0 CHECK (total_quantity >= 0),
            unit_value NUMERIC(14, 2) NOT NULL DEFAULT 0,
            attachments_json TEXT NOT NULL DEFAULT '[]',
            project_ref INTEGER,
            stage_ref INTEGER,
            category_ref INTEGER,
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS stock_allocations (
            id SERIAL PRIMARY KEY,
            stock_item_id INTEGER NOT NULL REFERENCES stock_items(id),
            quantity INTEGER NOT NULL CHECK (quantity > 0),
            project_ref INTEGER,
            stage_ref INTEGER,
            user_ref INTEGER,
            purchase_request_ref INTEGER,
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        f"""
        CREATE TABLE IF NOT EXISTS purchase_requests (
            id SERIAL PRIMARY KEY,
            item_name TEXT NOT NULL,
            description TEXT,
            quantity INTEGER NOT NULL CHECK (quantity > 0),
            status TEXT NOT NULL DEFAULT 'SOLICITADO' CHECK (status IN ({PURCHASE_STATUS_CHECK})),
            quotations_json TEXT NOT NULL DEFAULT '[]',
            selected_index INTEGER,
            unit_value NUMERIC(14, 2),
            category_ref INTEGER,
            project_ref INTEGER,
            stage_ref INTEGER,
            stock_item_ref INTEGER REFERENCES stock_items(id),
            reservation_ref INTEGER,
            requested_by INTEGER NOT NULL,
            rejection_reason TEXT,
            delivery_info_json TEXT,
            version INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS status_events (
            id SERIAL PRIMARY KEY,
            entity TEXT NOT NULL,
            entity_id INTEGER NOT NULL,
            from_status TEXT,
            to_status TEXT,
            reason TEXT,
            actor_id INTEGER,
            occurred_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    _create_postgres_updated_at_triggers(db)
    _ensure_indexes(db)


def _create_postgres_updated_at_triggers(db) -> None:
    db.execute(
        """
        CREATE OR REPLACE FUNCTION set_updated_at()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.updated_at = CURRENT_TIMESTAMP;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
        """
    )

    for table in ("roles", "users", "stock_items", "stock_allocations", "purchase_requests"):
        db.execute(f"DROP TRIGGER IF EXISTS trg_{table}_updated_at ON {table}")
        db.execute(
            f"""
            CREATE TRIGGER trg_{table}_updated_at
            BEFORE UPDATE ON {table}
            FOR EACH ROW
            EXECUTE FUNCTION set_updated_at()
            """
        )


def _ensure_indexes(db) -> None:
    db.execute("CREATE INDEX IF NOT EXISTS idx_stock_allocations_item ON stock_allocations (stock_item_id)")
    db.execute("CREATE INDEX IF NOT EXISTS idx_purchase_requests_status ON purchase_requests (status)")
    db.execute("CREATE INDEX IF NOT EXISTS idx_status_events_entity ON status_events (entity, entity_id)")
    db.execute("CREATE INDEX IF NOT EXISTS idx_users_role ON users (role_id)")
