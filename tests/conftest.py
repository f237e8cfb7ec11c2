from pathlib import Path

import pytest
from werkzeug.security import generate_password_hash

from expense_tracker import create_app
from expense_tracker.db import connect_db, insert_returning_id, parse_database_config
from expense_tracker.db_migrations import apply_migrations


@pytest.fixture(autouse=True)
def sqlite_only(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)


def _add_user(db, email="user1@example.com"):
    user_id = insert_returning_id(
        db,
        "INSERT INTO users (email, password_hash) VALUES (?, ?)",
        (email, generate_password_hash("password")),
    )
    db.commit()
    return user_id


@pytest.fixture()
def db(tmp_path: Path):
    config = parse_database_config(str(tmp_path / "import.sqlite"))
    conn = connect_db(config)
    apply_migrations(conn)
    yield conn
    conn.close()


@pytest.fixture()
def user_id(db):
    return _add_user(db)


@pytest.fixture()
def app(tmp_path: Path):
    db_path = tmp_path / "test.sqlite"
    app = create_app({"TESTING": True, "SECRET_KEY": "test", "DATABASE": str(db_path)})

    with app.app_context():
        app.init_db()

    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def login(client):
    def _login(email="user1@example.com"):
        with client.application.app_context():
            user_id = _add_user(client.application.get_db(), email)
        with client.session_transaction() as flask_session:
            flask_session["user_id"] = user_id
        return user_id

    return _login


@pytest.fixture()
def make_user(db):
    def _make_user(email):
        return _add_user(db, email)

    return _make_user
