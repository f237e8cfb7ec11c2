from expense_tracker.db import CompatCursor, CompatRow, parse_database_config, rewrite_sql, row_to_dict


class _TupleCursor:
    description = [("id",), ("status",)]
    rowcount = 1

    def fetchone(self):
        return (7, "preview")

    def fetchall(self):
        return [(7, "preview"), (8, "cancelled")]


def test_compat_row_reads_by_name_and_position():
    row = CompatRow(["id", "status"], (7, "preview"))

    assert row["status"] == "preview"
    assert row[0] == 7
    assert row_to_dict(row) == {"id": 7, "status": "preview"}


def test_compat_cursor_wraps_tuple_rows():
    cursor = CompatCursor(_TupleCursor())

    assert row_to_dict(cursor.fetchone()) == {"id": 7, "status": "preview"}
    assert [row["id"] for row in cursor.fetchall()] == [7, 8]
    assert cursor.rowcount == 1


def test_rewrite_sql_for_postgres():
    sql, params = rewrite_sql("postgres", "SELECT last_insert_rowid() AS id WHERE a = ? AND b = ?", None)

    assert sql == "SELECT lastval() AS id WHERE a = %s AND b = %s"
    assert params == ()
    assert rewrite_sql("sqlite", "SELECT ?", (1,)) == ("SELECT ?", (1,))


def test_parse_database_config_prefers_postgres_url(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://user:pw@localhost/expenses")

    config = parse_database_config("instance/ignored.sqlite")

    assert config["backend"] == "postgres"
    assert config["database_name"] == "expenses"
