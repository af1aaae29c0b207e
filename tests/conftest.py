"""Shared fixtures: a fresh sqlite database per test and a Flask test client."""

import os
import tempfile

import pytest

# server.py initialises its database on import, keep that out of the repo.
os.environ.setdefault("FLEETPLAN_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="fleetplan-"), "import.db"))
os.environ.setdefault("FLEETPLAN_LOG_LEVEL", "WARNING")

import server  # noqa: E402
from fleetplan import db  # noqa: E402

ADMIN_EMAIL = "admin@example.com"
USER_EMAIL = "user@example.com"


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = str(tmp_path / "fleetplan.db")
    monkeypatch.setattr(server, "DB_PATH", path)
    db.init_db(path, server.SECRET)
    return path


@pytest.fixture
def conn(db_path):
    c = db.connect(db_path)
    yield c
    c.close()


@pytest.fixture
def fleet(conn):
    """A driver, two locations and two vehicles (capacity 8 and 12)."""
    cur = conn.execute("INSERT INTO users (email, name, role) VALUES ('driver@example.com', 'Dana', 'driver')")
    driver_id = cur.lastrowid
    yard = conn.execute("INSERT INTO locations (name) VALUES ('Yard')").lastrowid
    site = conn.execute("INSERT INTO locations (name) VALUES ('Site')").lastrowid
    v8 = conn.execute("INSERT INTO vehicles (plate, board_capacity, driver_id) VALUES ('V-8', 8, ?)",
                      [driver_id]).lastrowid
    v12 = conn.execute("INSERT INTO vehicles (plate, board_capacity, driver_id) VALUES ('W-12', 12, ?)",
                       [driver_id]).lastrowid
    conn.commit()
    return {"driver_id": driver_id, "yard": yard, "site": site, "v8": v8, "v12": v12}


@pytest.fixture
def client(db_path):
    server.app.config["TESTING"] = True
    return server.app.test_client()


def login(client, email, password=db.SEED_PASSWORD):
    resp = client.post("/api/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.get_json()
    return {"Authorization": f"Bearer {resp.get_json()['token']}"}


@pytest.fixture
def admin(client):
    return login(client, ADMIN_EMAIL)


@pytest.fixture
def user(client):
    return login(client, USER_EMAIL)
