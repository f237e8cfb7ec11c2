import os
import sqlite3
from functools import wraps

from flask import Flask, g, jsonify, request, session

from .csv_import import CsvImportError, InvalidCsv
from .db import connect_db, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .import_sessions import (
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


class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be opened or migrated."""


IMPORT_ERROR_STATUS = {
    InvalidCsv: 400,
    InvalidMapping: 400,
    NoCsvData: 400,
    NoParsedRows: 400,
    NoValidRows: 400,
    SessionNotFound: 404,
    RowNotFound: 404,
    NotInPreview: 409,
    SessionClosed: 409,
}


def decode_csv_bytes(file_bytes):
    for encoding in ["utf-8-sig", "utf-8", "cp1252", "latin-1"]:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def row_payload(row):
    payload = row.to_dict()
    payload["is_valid"] = row.is_valid
    return payload


def error_response(error, message, status):
    return jsonify({"error": error, "message": message}), status


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY="dev",
        DATABASE=os.path.join(app.instance_path, "expense_tracker.sqlite"),
        IMPORT_SAMPLE_ROWS=5,
        IMPORT_AMOUNT_MAX_DECIMALS=None,
        IMPORT_DEFAULT_CATEGORY="Other",
        CATEGORY_ALIASES=None,
        MAX_IMPORT_BYTES=5 * 1024 * 1024,
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    def database_config():
        return parse_database_config(app.config["DATABASE"])

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(database_config())
            except (sqlite3.Error, OSError, RuntimeError) as exc:
                message = f"Unable to open database {app.config['DATABASE']}: {exc}"
                app.logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        try:
            apply_migrations(database_config())
            app.config["DB_INIT_ERROR"] = None
        except (sqlite3.Error, OSError, RuntimeError) as exc:
            message = f"Failed to initialize database {app.config['DATABASE']}: {exc}"
            app.logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(database_config()))
        except (sqlite3.Error, RuntimeError) as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    @app.before_request
    def load_logged_in_user():
        if request.endpoint == "db_health":
            return None
        if app.config.get("DB_INIT_ERROR"):
            return error_response("DatabaseInitError", app.config["DB_INIT_ERROR"], 500)

        user_id = session.get("user_id")
        if user_id is None:
            g.user = None
        else:
            g.user = get_db().execute("SELECT id, email FROM users WHERE id = ?", (user_id,)).fetchone()
        return None

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                return error_response("Unauthorized", "Login required", 401)
            return view(**kwargs)

        return wrapped_view

    @app.errorhandler(CsvImportError)
    def handle_import_error(exc):
        status = IMPORT_ERROR_STATUS.get(type(exc), 400)
        app.logger.info("Import request failed with %s: %s", type(exc).__name__, exc)
        return error_response(type(exc).__name__, str(exc), status)

    def import_options():
        return {
            "aliases": app.config.get("CATEGORY_ALIASES"),
            "max_decimals": app.config.get("IMPORT_AMOUNT_MAX_DECIMALS"),
        }

    @app.get("/api/import/session")
    @login_required
    def active_import_session():
        current = get_active_session(get_db(), g.user["id"])
        return jsonify({"session": session_payload(current)})

    @app.post("/api/import/session")
    @login_required
    def new_import_session():
        created = create_session(get_db(), g.user["id"])
        return jsonify({"session": session_payload(created)}), 201

    @app.get("/api/import/session/<int:session_id>")
    @login_required
    def import_session_detail(session_id):
        found = get_session(get_db(), session_id, g.user["id"])
        if found is None:
            raise SessionNotFound("Session not found")
        return jsonify({"session": session_payload(found)})

    @app.delete("/api/import/session/<int:session_id>")
    @login_required
    def cancel_import_session(session_id):
        return jsonify({"cancelled": cancel_session(get_db(), session_id, g.user["id"])})

    @app.post("/api/import/upload")
    @login_required
    def upload_import_file():
        uploaded = request.files.get("file")
        if uploaded is None or not uploaded.filename:
            return error_response("InvalidCsv", "Please choose a CSV file to upload.", 400)

        file_bytes = uploaded.read()
        if len(file_bytes) > app.config["MAX_IMPORT_BYTES"]:
            app.logger.warning("Rejected upload %s for user_id=%s: %s bytes", uploaded.filename, g.user["id"], len(file_bytes))
            return error_response("FileTooLarge", "The uploaded file is too large.", 413)

        raw_text = decode_csv_bytes(file_bytes)
        if raw_text is None:
            return error_response("InvalidCsv", "Unable to decode the uploaded file.", 400)

        result = upload_csv(
            get_db(),
            g.user["id"],
            uploaded.filename,
            raw_text,
            file_size=len(file_bytes),
            sample_size=app.config["IMPORT_SAMPLE_ROWS"],
        )
        return jsonify({"session": session_payload(result["session"]), "structure": result["structure"]}), 201

    @app.put("/api/import/session/<int:session_id>/mapping")
    @login_required
    def save_import_mapping(session_id):
        payload = request.get_json(silent=True)
        mapping = payload.get("mapping", payload) if isinstance(payload, dict) else payload
        result = save_mapping(get_db(), session_id, g.user["id"], mapping, **import_options())
        return jsonify({
            "session": session_payload(result["session"]),
            "parsed_rows": [row_payload(row) for row in result["parsed_rows"]],
            "valid_count": result["valid_count"],
            "invalid_count": result["invalid_count"],
        })

    @app.get("/api/import/session/<int:session_id>/rows")
    @login_required
    def import_session_rows(session_id):
        rows = get_parsed_rows(get_db(), session_id, g.user["id"])
        return jsonify({"rows": [row_payload(row) for row in rows]})

    @app.patch("/api/import/session/<int:session_id>/rows/<int:row_index>")
    @login_required
    def update_import_row(session_id, row_index):
        updates = request.get_json(silent=True)
        if not isinstance(updates, dict):
            updates = {}
        row = update_row(get_db(), session_id, g.user["id"], row_index, updates, **import_options())
        return jsonify({"row": row_payload(row)})

    @app.post("/api/import/session/<int:session_id>/rows/<int:row_index>/skip")
    @login_required
    def skip_import_row(session_id, row_index):
        payload = request.get_json(silent=True)
        skip = payload.get("skip", True) if isinstance(payload, dict) else None
        if not isinstance(skip, bool):
            return error_response("InvalidRequest", 'Body must be a JSON object with a boolean "skip".', 400)
        row = skip_row(get_db(), session_id, g.user["id"], row_index, skip)
        return jsonify({"row": row_payload(row)})

    @app.post("/api/import/session/<int:session_id>/confirm")
    @login_required
    def confirm_import_session(session_id):
        result = confirm_import(
            get_db(),
            session_id,
            g.user["id"],
            default_category=app.config["IMPORT_DEFAULT_CATEGORY"],
        )
        return jsonify(result)

    @app.get("/api/import/history")
    @login_required
    def import_history():
        return jsonify({"history": list_import_history(get_db(), g.user["id"])})

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    return app
