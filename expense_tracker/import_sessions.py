"""Import session lifecycle: upload -> mapping -> preview -> completed/cancelled.

Every function takes an open connection from ``expense_tracker.db`` and the id
of the authenticated user. Sessions are always looked up by ``(id, user_id)``
so one user can never see or touch another user's import.
"""

import json
import logging

from .csv_import import (
    CANONICAL_FIELDS,
    REQUIRED_FIELDS,
    SAMPLE_ROW_LIMIT,
    UPDATABLE_FIELDS,
    CsvImportError,
    ParsedRow,
    apply_row_updates,
    build_header_index,
    detect_delimiter,
    detect_structure,
    parse_line,
    split_lines,
    validate_row,
)
from .db import insert_returning_id, row_to_dict
from .db_migrations import utc_now_text

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("completed", "cancelled")
DEFAULT_IMPORT_CATEGORY = "Other"


class SessionNotFound(CsvImportError):
    pass


class SessionClosed(CsvImportError):
    pass


class NoCsvData(CsvImportError):
    pass


class InvalidMapping(CsvImportError):
    pass


class NoParsedRows(CsvImportError):
    pass


class RowNotFound(CsvImportError):
    pass


class NotInPreview(CsvImportError):
    pass


class NoValidRows(CsvImportError):
    pass


def get_session(db, session_id, user_id):
    row = db.execute(
        "SELECT * FROM import_sessions WHERE id = ? AND user_id = ?",
        (session_id, user_id),
    ).fetchone()
    return row_to_dict(row)


def get_active_session(db, user_id):
    row = db.execute(
        """
        SELECT * FROM import_sessions
        WHERE user_id = ? AND status NOT IN (?, ?)
        ORDER BY created_at DESC, id DESC
        LIMIT 1
        """,
        (user_id, *TERMINAL_STATUSES),
    ).fetchone()
    return row_to_dict(row)


def _require_session(db, session_id, user_id):
    session = get_session(db, session_id, user_id)
    if session is None:
        raise SessionNotFound("Session not found")
    return session


def _require_open(session):
    if session["status"] in TERMINAL_STATUSES:
        raise SessionClosed(f"Session is already {session['status']}")


def _decode_rows(session):
    if not session.get("parsed_rows"):
        return None
    return [ParsedRow.from_dict(item) for item in json.loads(session["parsed_rows"])]


def _encode_rows(rows):
    return json.dumps([row.to_dict() for row in rows])


def _find_row(rows, row_index):
    for row in rows:
        if row.row_index == row_index:
            return row
    raise RowNotFound("Row not found")


def _load_categories(db):
    return [row_to_dict(row) for row in db.execute("SELECT id, name FROM categories ORDER BY id").fetchall()]


def _count_valid(rows):
    valid = sum(1 for row in rows if row.is_valid)
    return valid, len(rows) - valid


def session_payload(session):
    if session is None:
        return None
    payload = {key: value for key, value in session.items() if key not in ("raw_csv_data", "parsed_rows")}
    payload["column_mapping"] = json.loads(session["column_mapping"]) if session.get("column_mapping") else None
    return payload


def create_session(db, user_id):
    now = utc_now_text()
    try:
        cancelled = db.execute(
            "UPDATE import_sessions SET status = 'cancelled', updated_at = ? WHERE user_id = ? AND status NOT IN (?, ?)",
            (now, user_id, *TERMINAL_STATUSES),
        ).rowcount
        session_id = insert_returning_id(
            db,
            "INSERT INTO import_sessions (user_id, status, created_at, updated_at) VALUES (?, 'upload', ?, ?)",
            (user_id, now, now),
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    if cancelled:
        logger.warning("Cancelled %s active import session(s) for user_id=%s", cancelled, user_id)
    logger.info("Created import session %s for user_id=%s", session_id, user_id)
    return get_session(db, session_id, user_id)


def cancel_session(db, session_id, user_id):
    cursor = db.execute(
        "UPDATE import_sessions SET status = 'cancelled', updated_at = ? WHERE id = ? AND user_id = ? AND status NOT IN (?, ?)",
        (utc_now_text(), session_id, user_id, *TERMINAL_STATUSES),
    )
    db.commit()
    cancelled = cursor.rowcount > 0
    if cancelled:
        logger.info("Cancelled import session %s for user_id=%s", session_id, user_id)
    return cancelled


def upload_csv(db, user_id, file_name, raw_text, file_size=None, sample_size=SAMPLE_ROW_LIMIT):
    structure = detect_structure(raw_text, sample_size=sample_size)

    session = get_active_session(db, user_id)
    if session is None or session["status"] != "upload":
        session = create_session(db, user_id)

    if file_size is None:
        file_size = len(raw_text.encode("utf-8"))

    try:
        db.execute(
            """
            UPDATE import_sessions
            SET status = 'mapping', file_name = ?, file_size = ?, raw_csv_data = ?, delimiter = ?,
                column_mapping = NULL, parsed_rows = NULL, updated_at = ?
            WHERE id = ? AND user_id = ?
            """,
            (file_name, file_size, raw_text, structure["delimiter"], utc_now_text(), session["id"], user_id),
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(
        "Uploaded %s to import session %s: %s rows, delimiter=%r",
        file_name,
        session["id"],
        structure["row_count"],
        structure["delimiter"],
    )
    return {"session": get_session(db, session["id"], user_id), "structure": structure}


def _clean_mapping(mapping, headers):
    if not isinstance(mapping, dict):
        raise InvalidMapping("Column mapping must be an object of field -> column name")

    cleaned = {}
    for field_name in CANONICAL_FIELDS:
        header = mapping.get(field_name)
        if header is None or not str(header).strip():
            continue
        header = str(header).strip()
        if header not in headers:
            raise InvalidMapping(f"Column '{header}' mapped to {field_name} is not in the file")
        cleaned[field_name] = header

    missing = [field_name for field_name in REQUIRED_FIELDS if field_name not in cleaned]
    if missing:
        raise InvalidMapping(f"Column mapping is missing required fields: {', '.join(missing)}")
    return cleaned


def save_mapping(db, session_id, user_id, mapping, aliases=None, max_decimals=None):
    session = _require_session(db, session_id, user_id)
    _require_open(session)
    lines = split_lines(session["raw_csv_data"])
    if not lines:
        raise NoCsvData("No CSV data in session")

    delimiter = session["delimiter"] or detect_delimiter(lines[0])
    headers = parse_line(lines[0], delimiter)
    mapping = _clean_mapping(mapping, headers)
    header_index = build_header_index(headers)
    categories = _load_categories(db)

    parsed_rows = [
        validate_row(
            parse_line(line, delimiter),
            header_index,
            mapping,
            categories,
            row_index=row_index,
            aliases=aliases,
            max_decimals=max_decimals,
        )
        for row_index, line in enumerate(lines[1:])
    ]
    valid_count, invalid_count = _count_valid(parsed_rows)

    db.execute(
        """
        UPDATE import_sessions
        SET status = 'preview', column_mapping = ?, parsed_rows = ?, valid_row_count = ?,
            invalid_row_count = ?, skipped_row_count = 0, updated_at = ?
        WHERE id = ? AND user_id = ?
        """,
        (json.dumps(mapping), _encode_rows(parsed_rows), valid_count, invalid_count, utc_now_text(), session_id, user_id),
    )
    db.commit()
    logger.info(
        "Saved mapping for import session %s: %s valid, %s invalid",
        session_id,
        valid_count,
        invalid_count,
    )
    return {
        "session": get_session(db, session_id, user_id),
        "parsed_rows": parsed_rows,
        "valid_count": valid_count,
        "invalid_count": invalid_count,
    }


def _load_open_rows(db, session_id, user_id):
    session = _require_session(db, session_id, user_id)
    _require_open(session)
    rows = _decode_rows(session)
    if rows is None:
        raise NoParsedRows("No parsed rows in session")
    return rows


def _store_rows(db, session_id, user_id, rows):
    valid_count, invalid_count = _count_valid(rows)
    db.execute(
        """
        UPDATE import_sessions
        SET parsed_rows = ?, valid_row_count = ?, invalid_row_count = ?, updated_at = ?
        WHERE id = ? AND user_id = ?
        """,
        (_encode_rows(rows), valid_count, invalid_count, utc_now_text(), session_id, user_id),
    )
    db.commit()


def update_row(db, session_id, user_id, row_index, updates, aliases=None, max_decimals=None):
    rows = _load_open_rows(db, session_id, user_id)
    row = _find_row(rows, row_index)
    accepted = {key: value for key, value in (updates or {}).items() if key in UPDATABLE_FIELDS}
    apply_row_updates(row, accepted, _load_categories(db), aliases=aliases, max_decimals=max_decimals)
    _store_rows(db, session_id, user_id, rows)
    logger.debug("Updated row %s of import session %s: %s", row_index, session_id, sorted(accepted))
    return row


def skip_row(db, session_id, user_id, row_index, skip):
    rows = _load_open_rows(db, session_id, user_id)
    row = _find_row(rows, row_index)
    row.skipped = bool(skip)
    _store_rows(db, session_id, user_id, rows)
    logger.debug("Set skipped=%s on row %s of import session %s", row.skipped, row_index, session_id)
    return row


def get_parsed_rows(db, session_id, user_id):
    session = get_session(db, session_id, user_id)
    if session is None:
        return []
    return _decode_rows(session) or []


def list_import_history(db, user_id):
    rows = db.execute(
        "SELECT * FROM import_history WHERE user_id = ? ORDER BY created_at DESC, id DESC",
        (user_id,),
    ).fetchall()
    return [row_to_dict(row) for row in rows]


def _category_id_by_name(db, name):
    row = db.execute("SELECT id FROM categories WHERE name = ?", (name,)).fetchone()
    return row["id"] if row else None


def confirm_import(db, session_id, user_id, default_category=DEFAULT_IMPORT_CATEGORY):
    session = _require_session(db, session_id, user_id)
    if session["status"] != "preview":
        raise NotInPreview("Session is not in preview status")
    rows = _decode_rows(session)
    if rows is None:
        raise NoParsedRows("No parsed rows in session")

    importable = [row for row in rows if row.is_importable]
    if not importable:
        raise NoValidRows("No valid rows to import")

    default_category_id = _category_id_by_name(db, default_category)
    valid_count, invalid_count = _count_valid(rows)
    imported_count = len(importable)
    skipped_count = len(rows) - imported_count
    now = utc_now_text()

    try:
        for row in importable:
            db.execute(
                """
                INSERT INTO expenses (user_id, category_id, amount, description, date, import_session_id)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    row.category_id if row.category_id is not None else default_category_id,
                    row.amount,
                    row.description,
                    row.date,
                    session_id,
                ),
            )
        completed = db.execute(
            """
            UPDATE import_sessions
            SET status = 'completed', valid_row_count = ?, invalid_row_count = ?, skipped_row_count = ?,
                imported_expense_count = ?, updated_at = ?
            WHERE id = ? AND user_id = ? AND status = 'preview'
            """,
            (valid_count, invalid_count, skipped_count, imported_count, now, session_id, user_id),
        ).rowcount
        if not completed:
            raise NotInPreview("Session is not in preview status")
        history_id = insert_returning_id(
            db,
            """
            INSERT INTO import_history (user_id, session_id, file_name, total_rows, imported_rows, skipped_rows, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (user_id, session_id, session["file_name"], len(rows), imported_count, skipped_count, now),
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.warning("Rolled back import commit for session %s", session_id)
        raise

    logger.info(
        "Completed import session %s for user_id=%s: %s imported, %s skipped",
        session_id,
        user_id,
        imported_count,
        skipped_count,
    )
    history = db.execute("SELECT * FROM import_history WHERE id = ?", (history_id,)).fetchone()
    return {"imported_count": imported_count, "skipped_count": skipped_count, "history": row_to_dict(history)}
