"""
Shared fixtures for the Task Tree test suite.

Every test gets its own temporary SQLite database. API tests talk to the
FastAPI app through ``TestClient`` with the database and config dependencies
overridden, so the lifespan handler never opens the configured database.
"""

import sys
import uuid
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

project_root = Path(__file__).parent.parent.parent / "src"
sys.path.insert(0, str(project_root))

from tasktree.api import app, get_config, get_database
from tasktree.config import get_config as preset
from tasktree.database import Database
from tasktree.statements import utc_now_str


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "tasktree_test.db"), pool_size=4, timeout_seconds=2.0)
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def config(tmp_path):
    return preset("test").model_copy(update={"database_path": str(tmp_path / "tasktree_test.db")})


def _insert_user(db, username):
    user_id = str(uuid.uuid4())
    now = utc_now_str()
    with db.transaction() as conn:
        conn.execute(
            "INSERT INTO users (id, username, created_at, updated_at) VALUES (?, ?, ?, ?)",
            (user_id, username, now, now),
        )
    return user_id


@pytest.fixture
def client(db, config):
    app.dependency_overrides[get_database] = lambda: db
    app.dependency_overrides[get_config] = lambda: config
    test_client = TestClient(app)
    # TestClient reports its peer as "testclient", which is not an address
    test_client.headers.update({"X-Real-IP": "127.0.0.1", "User-Agent": "pytest"})
    yield test_client
    app.dependency_overrides.clear()


def _register_and_login(client, email, password, username):
    response = client.post(
        "/register/email", json={"email": email, "password": password, "username": username}
    )
    assert response.status_code == 200, response.text
    response = client.post("/login/email", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    body = response.json()
    return body["user_id"], {"Authorization": f"Bearer {body['session_token']}"}


@pytest.fixture
def make_user(db):
    """Insert a bare user row and return its id."""
    def factory(username="alice"):
        return _insert_user(db, username)
    return factory


@pytest.fixture
def login(client):
    """Register a user through the API and return ``(user_id, auth headers)``."""
    def factory(email="alice@x.com", password="pw1234", username="alice"):
        return _register_and_login(client, email, password, username)
    return factory


@pytest.fixture
def alice(login):
    return login()


@pytest.fixture
def bob(login):
    return login(email="bob@x.com", password="hunter22", username="bob")
