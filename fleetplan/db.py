"""
db.py - sqlite connection, schema and seed data for fleetplan.
"""

import hashlib
import json
import logging
import sqlite3
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

SCHEMA = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT UNIQUE,
    password_hash TEXT,
    name TEXT,
    role TEXT NOT NULL DEFAULT 'user' CHECK(role IN ('admin','planner','driver','user')),
    is_active INTEGER DEFAULT 1,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS locations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    address TEXT,
    lat REAL,
    lng REAL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS vehicles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    plate TEXT NOT NULL UNIQUE,
    board_capacity INTEGER NOT NULL CHECK(board_capacity > 0),
    driver_id INTEGER NOT NULL REFERENCES users(id),
    is_active INTEGER DEFAULT 1
);

CREATE TABLE IF NOT EXISTS requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    boards INTEGER NOT NULL CHECK(boards > 0),
    estimated_task_duration_minutes INTEGER NOT NULL DEFAULT 120,
    sourcer_id INTEGER REFERENCES users(id),
    start_location_id INTEGER REFERENCES locations(id),
    end_location_id INTEGER REFERENCES locations(id),
    notes TEXT,
    assigned_boards INTEGER NOT NULL DEFAULT 0,
    completed_boards INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'incoming' CHECK(status IN ('incoming','partially_assigned','finished')),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    boards INTEGER NOT NULL CHECK(boards > 0),
    request_id INTEGER NOT NULL REFERENCES requests(id),
    assigned_vehicle_id INTEGER REFERENCES vehicles(id),
    estimated_duration_minutes INTEGER,
    status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending','assigned','completed')),
    scheduled_date TEXT,
    scheduled_start_minute INTEGER,
    scheduled_end_minute INTEGER,
    scheduled_lane INTEGER
);

CREATE TABLE IF NOT EXISTS todos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    text TEXT NOT NULL,
    completed INTEGER NOT NULL DEFAULT 0,
    user_id INTEGER NOT NULL REFERENCES users(id),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER,
    action TEXT NOT NULL,
    entity_type TEXT,
    entity_id INTEGER,
    old_value TEXT,
    new_value TEXT,
    ip_address TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_tasks_request ON tasks(request_id);
CREATE INDEX IF NOT EXISTS idx_tasks_date ON tasks(scheduled_date);
CREATE INDEX IF NOT EXISTS idx_tasks_vehicle_date ON tasks(assigned_vehicle_id, scheduled_date);
CREATE INDEX IF NOT EXISTS idx_requests_status_updated ON requests(status, updated_at);
CREATE INDEX IF NOT EXISTS idx_vehicles_driver ON vehicles(driver_id);
CREATE INDEX IF NOT EXISTS idx_todos_user ON todos(user_id, completed);
"""

SEED_PASSWORD = "12345678"
SEED_ACCOUNTS = [
    ("admin@example.com", "Admin", "admin"),
    ("user@example.com", "User", "user"),
]


def connect(path):
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def now_iso():
    return datetime.now(timezone.utc).isoformat()


def hash_password(password, salt):
    return hashlib.sha256((password + salt).encode()).hexdigest()


def row_to_dict(row):
    if row is None:
        return None
    return dict(row)


def rows_to_list(rows):
    return [dict(r) for r in rows]


def public_user(user):
    """Strip secrets from a user row before it leaves the server."""
    if user is None:
        return None
    user = dict(user)
    user.pop("password_hash", None)
    return user


def log_audit(conn, user_id, action, entity_type=None, entity_id=None,
              old_val=None, new_val=None, ip=""):
    """Record a mutation. Written in the caller's transaction, not committed here."""
    conn.execute(
        "INSERT INTO audit_log (user_id, action, entity_type, entity_id, old_value, new_value, ip_address) VALUES (?,?,?,?,?,?,?)",
        [user_id, action, entity_type, entity_id,
         json.dumps(old_val, default=str) if old_val else None,
         json.dumps(new_val, default=str) if new_val else None, ip]
    )


def init_db(path, salt, seed=True):
    """Create all tables and insert the default accounts if not already present."""
    conn = connect(path)
    try:
        c = conn.cursor()
        c.executescript(SCHEMA)
        conn.commit()

        if seed and c.execute("SELECT COUNT(*) FROM users").fetchone()[0] == 0:
            c.executemany(
                "INSERT INTO users (email, password_hash, name, role) VALUES (?,?,?,?)",
                [(email, hash_password(SEED_PASSWORD, salt), name, role)
                 for email, name, role in SEED_ACCOUNTS])
            conn.commit()
            logger.info("Seeded %d default accounts", len(SEED_ACCOUNTS))
    finally:
        conn.close()
