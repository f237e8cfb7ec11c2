import argparse
from datetime import datetime, timezone

from .db import connect_db, parse_database_config


ACTIVE_IMPORT_STATUSES = ("upload", "mapping", "preview")

DEFAULT_CATEGORIES = [
    ("Food", "utensils"),
    ("Transport", "car"),
    ("Entertainment", "film"),
    ("Bills", "file-text"),
    ("Shopping", "shopping-bag"),
    ("Other", "more-horizontal"),
]

REQUIRED_TABLES = {
    "users": {
        "columns": {"id", "email", "password_hash", "created_at"},
        "indexes": set(),
    },
    "categories": {
        "columns": {"id", "name", "icon"},
        "indexes": set(),
    },
    "expenses": {
        "columns": {"id", "user_id", "category_id", "amount", "description", "date", "created_at", "import_session_id"},
        "indexes": {"idx_expenses_user_date"},
    },
    "import_sessions": {
        "columns": {
            "id",
            "user_id",
            "status",
            "file_name",
            "file_size",
            "raw_csv_data",
            "delimiter",
            "column_mapping",
            "parsed_rows",
            "valid_row_count",
            "invalid_row_count",
            "skipped_row_count",
            "imported_expense_count",
            "created_at",
            "updated_at",
        },
        "indexes": {"idx_import_sessions_user_status", "uq_import_sessions_active_user"},
    },
    "import_history": {
        "columns": {"id", "user_id", "session_id", "file_name", "total_rows", "imported_rows", "skipped_rows", "created_at"},
        "indexes": {"idx_import_history_user_created"},
    },
}


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def utc_now_text():
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def table_exists(conn, name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?",
            (name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (name,)).fetchone()
    return row is not None


def get_table_columns(conn, table):
    if backend_name(conn) == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_schema = current_schema() AND table_name = ? ORDER BY ordinal_position",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}

    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row[1] for row in rows}


def column_exists(conn, table, column):
    if not table_exists(conn, table):
        return False
    return column in get_table_columns(conn, table)


def index_exists(conn, index_name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
            (index_name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name = ?", (index_name,)).fetchone()
    return row is not None


def add_column_if_missing(conn, table, col_def_sql):
    column = col_def_sql.split()[0]
    if backend_name(conn) == "postgres":
        conn.execute(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {col_def_sql}")
    elif not column_exists(conn, table, column):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_def_sql}")


def create_index_if_missing(conn, index_name, create_sql):
    if not index_exists(conn, index_name):
        conn.execute(create_sql)


def ensure_table(conn, create_sql):
    if backend_name(conn) == "postgres":
        create_sql = create_sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")
    conn.execute(create_sql)


def migration_001(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT UNIQUE NOT NULL,
            icon TEXT NOT NULL DEFAULT 'more-horizontal'
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS expenses (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            category_id INTEGER,
            amount REAL NOT NULL,
            description TEXT NOT NULL,
            date TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE,
            FOREIGN KEY (category_id) REFERENCES categories (id)
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_expenses_user_date",
        "CREATE INDEX idx_expenses_user_date ON expenses(user_id, date)",
    )


def migration_002(conn):
    existing = {row[0] for row in conn.execute("SELECT name FROM categories").fetchall()}
    for name, icon in DEFAULT_CATEGORIES:
        if name not in existing:
            conn.execute("INSERT INTO categories (name, icon) VALUES (?, ?)", (name, icon))


def migration_003(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS import_sessions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            status TEXT NOT NULL DEFAULT 'upload'
                CHECK(status IN ('upload', 'mapping', 'preview', 'completed', 'cancelled')),
            file_name TEXT,
            file_size INTEGER,
            raw_csv_data TEXT,
            column_mapping TEXT,
            parsed_rows TEXT,
            valid_row_count INTEGER NOT NULL DEFAULT 0,
            invalid_row_count INTEGER NOT NULL DEFAULT 0,
            skipped_row_count INTEGER NOT NULL DEFAULT 0,
            imported_expense_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_import_sessions_user_status",
        "CREATE INDEX idx_import_sessions_user_status ON import_sessions(user_id, status)",
    )
    active = ", ".join(f"'{status}'" for status in ACTIVE_IMPORT_STATUSES)
    create_index_if_missing(
        conn,
        "uq_import_sessions_active_user",
        f"CREATE UNIQUE INDEX uq_import_sessions_active_user ON import_sessions(user_id) WHERE status IN ({active})",
    )

    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS import_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            session_id INTEGER NOT NULL,
            file_name TEXT,
            total_rows INTEGER NOT NULL DEFAULT 0,
            imported_rows INTEGER NOT NULL DEFAULT 0,
            skipped_rows INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE,
            FOREIGN KEY (session_id) REFERENCES import_sessions (id)
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_import_history_user_created",
        "CREATE INDEX idx_import_history_user_created ON import_history(user_id, created_at)",
    )


def migration_004(conn):
    # Databases created at schema version 3 lack these columns; fresh databases get them here too.
    # Sessions remember the delimiter sniffed at upload; expenses remember their import.
    add_column_if_missing(conn, "import_sessions", "delimiter TEXT")
    add_column_if_missing(conn, "expenses", "import_session_id INTEGER DEFAULT NULL")
    if column_exists(conn, "import_sessions", "raw_csv_data"):
        conn.execute("UPDATE import_sessions SET delimiter = ',' WHERE delimiter IS NULL AND raw_csv_data IS NOT NULL")


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
    (4, migration_004),
]


def _ensure_schema_version_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def current_schema_version(conn):
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    return int(row[0] or 0)


def validate_required_schema(conn):
    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            "Schema invariants failed after migrations. "
            f"Missing tables={health['missing_tables']}, missing columns={health['missing_columns']}"
        )


def _run_migrations(conn):
    _ensure_schema_version_table(conn)

    applied_versions = {
        row[0] for row in conn.execute("SELECT version FROM schema_version").fetchall()
    }

    for version, migration_fn in MIGRATIONS:
        if version in applied_versions:
            continue
        try:
            migration_fn(conn)
            conn.execute(
                "INSERT INTO schema_version(version, applied_at) VALUES (?, ?)",
                (version, utc_now_text()),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    validate_required_schema(conn)


def apply_migrations(db_or_config_or_path):
    if hasattr(db_or_config_or_path, "execute"):
        _run_migrations(db_or_config_or_path)
        return

    config = db_or_config_or_path if isinstance(db_or_config_or_path, dict) else parse_database_config(db_or_config_or_path)
    conn = connect_db(config)
    try:
        _run_migrations(conn)
    finally:
        conn.close()


def inspect_db_health(conn):
    _ensure_schema_version_table(conn)
    missing_tables = []
    missing_columns = {}
    missing_indexes = []

    for table_name, table_spec in REQUIRED_TABLES.items():
        if not table_exists(conn, table_name):
            missing_tables.append(table_name)
            missing_columns[table_name] = sorted(table_spec["columns"])
            missing_indexes.extend(sorted(table_spec["indexes"]))
            continue

        table_cols = get_table_columns(conn, table_name)
        missing_columns[table_name] = sorted(col for col in table_spec["columns"] if col not in table_cols)

        for idx in sorted(table_spec["indexes"]):
            if not index_exists(conn, idx):
                missing_indexes.append(idx)

    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes,
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(set(missing_indexes)),
    }


def get_db_health(db_config_or_path):
    config = db_config_or_path if isinstance(db_config_or_path, dict) else parse_database_config(db_config_or_path)
    conn = connect_db(config)
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()


def main():
    parser = argparse.ArgumentParser(description="Check expense tracker DB schema health")
    parser.add_argument("db_path", help="Path to SQLite DB file")
    args = parser.parse_args()
    print(get_db_health(args.db_path))


if __name__ == "__main__":
    main()
