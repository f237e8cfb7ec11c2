import sqlite3

import pytest

from expense_tracker import import_sessions
from expense_tracker.csv_import import InvalidCsv
from expense_tracker.db_migrations import utc_now_text
from expense_tracker.import_sessions import (
    InvalidMapping,
    NoCsvData,
    NoParsedRows,
    NotInPreview,
    NoValidRows,
    RowNotFound,
    SessionClosed,
    SessionNotFound,
    cancel_session,
    confirm_import,
    create_session,
    get_active_session,
    get_parsed_rows,
    get_session,
    list_import_history,
    save_mapping,
    session_payload,
    skip_row,
    update_row,
    upload_csv,
)

MAPPING = {"date": "Date", "amount": "Amount", "description": "Description"}
SAMPLE_CSV = "Date,Amount,Description\n2024-01-15,100,Groceries\n,invalid,"
CATEGORY_CSV = (
    "Date,Amount,Description,Category\n"
    "2024-01-15,12.50,Weekly shop,groceries\n"
    "2024-01-16,30,Cab home,Transport\n"
    "2024-01-17,8,Mystery,Unknown\n"
)


def active_count(db, user_id):
    row = db.execute(
        "SELECT COUNT(*) FROM import_sessions WHERE user_id = ? AND status IN ('upload', 'mapping', 'preview')",
        (user_id,),
    ).fetchone()
    return row[0]


def preview_session(db, user_id, text=SAMPLE_CSV, mapping=MAPPING):
    uploaded = upload_csv(db, user_id, "bank.csv", text)
    session_id = uploaded["session"]["id"]
    save_mapping(db, session_id, user_id, mapping)
    return session_id


def test_create_session_cancels_previous_active_session(db, user_id):
    first = create_session(db, user_id)
    second = create_session(db, user_id)

    assert first["status"] == "upload"
    assert get_session(db, first["id"], user_id)["status"] == "cancelled"
    assert get_active_session(db, user_id)["id"] == second["id"]
    assert active_count(db, user_id) == 1


def test_active_session_index_rejects_second_active_row(db, user_id):
    create_session(db, user_id)
    now = utc_now_text()

    with pytest.raises(sqlite3.IntegrityError):
        db.execute(
            "INSERT INTO import_sessions (user_id, status, created_at, updated_at) VALUES (?, 'mapping', ?, ?)",
            (user_id, now, now),
        )
    db.rollback()


def test_get_active_session_is_none_without_sessions(db, user_id):
    assert get_active_session(db, user_id) is None


def test_cancel_session_only_moves_open_sessions(db, user_id):
    created = create_session(db, user_id)

    assert cancel_session(db, created["id"], user_id) is True
    assert cancel_session(db, created["id"], user_id) is False
    assert cancel_session(db, 9999, user_id) is False
    assert get_active_session(db, user_id) is None


def test_upload_stores_file_and_moves_to_mapping(db, user_id):
    result = upload_csv(db, user_id, "bank.csv", "Date;Amount;Description\n2024-01-15;1,50;Coffee\n")

    stored = result["session"]
    assert stored["status"] == "mapping"
    assert stored["file_name"] == "bank.csv"
    assert stored["delimiter"] == ";"
    assert stored["file_size"] == len("Date;Amount;Description\n2024-01-15;1,50;Coffee\n".encode("utf-8"))
    assert result["structure"]["row_count"] == 1
    assert result["structure"]["suggested_mapping"] == MAPPING


def test_upload_reuses_session_waiting_for_upload(db, user_id):
    created = create_session(db, user_id)

    result = upload_csv(db, user_id, "bank.csv", SAMPLE_CSV)

    assert result["session"]["id"] == created["id"]


def test_upload_replaces_session_past_upload_step(db, user_id):
    first = upload_csv(db, user_id, "one.csv", SAMPLE_CSV)["session"]
    second = upload_csv(db, user_id, "two.csv", SAMPLE_CSV)["session"]

    assert second["id"] != first["id"]
    assert get_session(db, first["id"], user_id)["status"] == "cancelled"
    assert active_count(db, user_id) == 1


def test_upload_header_only_file_leaves_database_untouched(db, user_id):
    existing = upload_csv(db, user_id, "good.csv", SAMPLE_CSV)["session"]

    with pytest.raises(InvalidCsv):
        upload_csv(db, user_id, "empty.csv", "Date,Amount,Description\n")

    assert get_active_session(db, user_id)["id"] == existing["id"]
    assert get_active_session(db, user_id)["status"] == "mapping"


def test_save_mapping_counts_valid_and_invalid_rows(db, user_id):
    session_id = upload_csv(db, user_id, "bank.csv", SAMPLE_CSV)["session"]["id"]

    result = save_mapping(db, session_id, user_id, MAPPING)

    assert result["valid_count"] == 1
    assert result["invalid_count"] == 1
    assert result["valid_count"] + result["invalid_count"] == len(result["parsed_rows"])
    second = result["parsed_rows"][1]
    assert {"date", "amount"} <= {error["field"] for error in second.errors}
    assert result["session"]["status"] == "preview"
    assert session_payload(result["session"])["column_mapping"] == MAPPING


def test_save_mapping_resolves_categories(db, user_id):
    session_id = upload_csv(db, user_id, "bank.csv", CATEGORY_CSV)["session"]["id"]

    rows = save_mapping(db, session_id, user_id, dict(MAPPING, category="Category"))["parsed_rows"]

    assert [(row.category, row.category_id) for row in rows] == [("Food", 1), ("Transport", 2), (None, None)]


def test_save_mapping_validates_the_mapping(db, user_id):
    session_id = upload_csv(db, user_id, "bank.csv", SAMPLE_CSV)["session"]["id"]

    with pytest.raises(InvalidMapping):
        save_mapping(db, session_id, user_id, {"date": "Date", "amount": "Amount"})
    with pytest.raises(InvalidMapping):
        save_mapping(db, session_id, user_id, dict(MAPPING, description="Memo"))
    with pytest.raises(InvalidMapping):
        save_mapping(db, session_id, user_id, ["Date"])

    assert get_session(db, session_id, user_id)["status"] == "mapping"


def test_save_mapping_requires_uploaded_data(db, user_id):
    created = create_session(db, user_id)

    with pytest.raises(NoCsvData):
        save_mapping(db, created["id"], user_id, MAPPING)
    with pytest.raises(SessionNotFound):
        save_mapping(db, 9999, user_id, MAPPING)


def test_remapping_discards_row_edits(db, user_id):
    session_id = preview_session(db, user_id)
    update_row(db, session_id, user_id, 1, {"date": "2024-01-20", "amount": "5", "description": "Fixed"})

    save_mapping(db, session_id, user_id, MAPPING)

    assert not get_parsed_rows(db, session_id, user_id)[1].is_valid


def test_update_row_revalidates_and_refreshes_counts(db, user_id):
    session_id = preview_session(db, user_id)

    row = update_row(
        db,
        session_id,
        user_id,
        1,
        {"date": "01/20/2024", "amount": "$5.25", "description": " Bus ", "category": "transit", "status": "hacked"},
    )

    assert row.is_valid
    assert (row.date, row.amount, row.description) == ("2024-01-20", 5.25, "Bus")
    assert row.category_id == 2
    stored = get_session(db, session_id, user_id)
    assert (stored["valid_row_count"], stored["invalid_row_count"]) == (2, 0)
    assert stored["status"] == "preview"
    assert get_parsed_rows(db, session_id, user_id)[1] == row


def test_update_row_failures(db, user_id):
    session_id = preview_session(db, user_id)

    with pytest.raises(RowNotFound):
        update_row(db, session_id, user_id, 42, {"description": "x"})
    with pytest.raises(SessionNotFound):
        update_row(db, 9999, user_id, 0, {"description": "x"})

    mapping_only = upload_csv(db, user_id, "again.csv", SAMPLE_CSV)["session"]["id"]
    with pytest.raises(NoParsedRows):
        update_row(db, mapping_only, user_id, 0, {"description": "x"})


def test_skip_row_is_idempotent_and_keeps_errors(db, user_id):
    session_id = preview_session(db, user_id)

    first = skip_row(db, session_id, user_id, 1, True)
    second = skip_row(db, session_id, user_id, 1, True)

    assert first == second
    assert second.skipped is True
    assert second.errors
    assert skip_row(db, session_id, user_id, 1, False).skipped is False


def test_get_parsed_rows_never_raises(db, user_id):
    created = create_session(db, user_id)

    assert get_parsed_rows(db, 9999, user_id) == []
    assert get_parsed_rows(db, created["id"], user_id) == []


def test_sessions_are_isolated_between_users(db, user_id, make_user):
    other_user = make_user("other@example.com")
    session_id = preview_session(db, user_id)

    assert get_session(db, session_id, other_user) is None
    assert get_parsed_rows(db, session_id, other_user) == []
    assert cancel_session(db, session_id, other_user) is False
    with pytest.raises(SessionNotFound):
        confirm_import(db, session_id, other_user)

    preview_session(db, other_user)
    assert active_count(db, user_id) == 1
    assert active_count(db, other_user) == 1


def test_confirm_import_writes_expenses_and_history(db, user_id):
    session_id = preview_session(db, user_id, CATEGORY_CSV, dict(MAPPING, category="Category"))
    skip_row(db, session_id, user_id, 1, True)

    result = confirm_import(db, session_id, user_id)

    assert result["imported_count"] == 2
    assert result["skipped_count"] == 1
    expenses = db.execute(
        "SELECT description, amount, category_id, date, import_session_id FROM expenses WHERE user_id = ? ORDER BY id",
        (user_id,),
    ).fetchall()
    other_id = db.execute("SELECT id FROM categories WHERE name = 'Other'").fetchone()[0]
    assert [tuple(row) for row in expenses] == [
        ("Weekly shop", 12.5, 1, "2024-01-15", session_id),
        ("Mystery", 8.0, other_id, "2024-01-17", session_id),
    ]

    stored = get_session(db, session_id, user_id)
    assert stored["status"] == "completed"
    assert stored["imported_expense_count"] == 2
    assert stored["skipped_row_count"] == 1

    history = list_import_history(db, user_id)
    assert len(history) == 1
    assert history[0] == result["history"]
    assert (history[0]["file_name"], history[0]["total_rows"], history[0]["imported_rows"], history[0]["skipped_rows"]) == (
        "bank.csv",
        3,
        2,
        1,
    )


def test_confirm_import_counts_invalid_rows_as_skipped(db, user_id):
    session_id = preview_session(db, user_id)

    result = confirm_import(db, session_id, user_id)

    assert (result["imported_count"], result["skipped_count"]) == (1, 1)


def test_confirm_import_requires_importable_rows(db, user_id):
    session_id = preview_session(db, user_id, "Date,Amount,Description\n2024-01-15,100,Groceries\n")
    skip_row(db, session_id, user_id, 0, True)

    with pytest.raises(NoValidRows):
        confirm_import(db, session_id, user_id)
    assert get_session(db, session_id, user_id)["status"] == "preview"


def test_confirm_import_requires_preview(db, user_id):
    session_id = upload_csv(db, user_id, "bank.csv", SAMPLE_CSV)["session"]["id"]

    with pytest.raises(NotInPreview):
        confirm_import(db, session_id, user_id)

    save_mapping(db, session_id, user_id, MAPPING)
    confirm_import(db, session_id, user_id)
    with pytest.raises(NotInPreview):
        confirm_import(db, session_id, user_id)
    with pytest.raises(SessionClosed):
        skip_row(db, session_id, user_id, 0, True)
    with pytest.raises(SessionClosed):
        save_mapping(db, session_id, user_id, MAPPING)


def test_confirm_import_rolls_back_on_failure(db, user_id, monkeypatch):
    session_id = preview_session(db, user_id)

    def broken_insert(*_args, **_kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(import_sessions, "insert_returning_id", broken_insert)

    with pytest.raises(RuntimeError, match="disk full"):
        confirm_import(db, session_id, user_id)

    assert db.execute("SELECT COUNT(*) FROM expenses").fetchone()[0] == 0
    assert get_session(db, session_id, user_id)["status"] == "preview"
    assert list_import_history(db, user_id) == []

    monkeypatch.undo()
    assert confirm_import(db, session_id, user_id)["imported_count"] == 1


def test_confirm_import_loses_race_when_session_leaves_preview(db, user_id, monkeypatch):
    session_id = preview_session(db, user_id)
    lookup = import_sessions._category_id_by_name

    def cancel_then_lookup(conn, name):
        conn.execute("UPDATE import_sessions SET status = 'cancelled' WHERE id = ?", (session_id,))
        conn.commit()
        return lookup(conn, name)

    monkeypatch.setattr(import_sessions, "_category_id_by_name", cancel_then_lookup)

    with pytest.raises(NotInPreview):
        confirm_import(db, session_id, user_id)

    assert db.execute("SELECT COUNT(*) FROM expenses").fetchone()[0] == 0
    assert list_import_history(db, user_id) == []
    assert get_session(db, session_id, user_id)["status"] == "cancelled"


class _CommitFails:
    def __init__(self, db):
        self._db = db

    def __getattr__(self, name):
        return getattr(self._db, name)

    def commit(self):
        raise sqlite3.OperationalError("database is locked")


def test_upload_rolls_back_when_commit_fails(db, user_id):
    created = create_session(db, user_id)

    with pytest.raises(sqlite3.OperationalError):
        upload_csv(_CommitFails(db), user_id, "bank.csv", SAMPLE_CSV)

    stored = get_session(db, created["id"], user_id)
    assert stored["status"] == "upload"
    assert stored["raw_csv_data"] is None
