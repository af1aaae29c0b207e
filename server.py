#!/usr/bin/env python3
"""
server.py - Flask server for fleetplan, the fleet request scheduling system.
Serves the JSON API under /api for deployment on Railway/Render/etc.
"""

import os
import json
import base64
import hashlib
import hmac
import logging
import re
from datetime import datetime, timezone, timedelta
from flask import Flask, request, jsonify
from flask_cors import CORS

from fleetplan import scheduling, timeline
from fleetplan.db import (
    connect,
    hash_password,
    init_db,
    log_audit,
    now_iso,
    public_user,
    row_to_dict,
    rows_to_list,
)
from fleetplan.errors import (
    AuthenticationRequired,
    FleetError,
    NotFoundError,
    PermissionDenied,
    StateError,
    ValidationError,
)
from fleetplan.permissions import (
    ROLES,
    abilities_from_roles,
    make_session,
    require_ability,
    require_any_ability,
    require_user,
)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DB_PATH = os.environ.get("FLEETPLAN_DB_PATH", os.path.join(BASE_DIR, "data.db"))
SECRET = os.environ.get("FLEETPLAN_SECRET", "fleetplan_dev_secret")
TOKEN_TTL = timedelta(hours=float(os.environ.get("FLEETPLAN_TOKEN_TTL_HOURS", "24")))
SEED = os.environ.get("FLEETPLAN_SEED", "1") == "1"
LOG_LEVEL = os.environ.get("FLEETPLAN_LOG_LEVEL", "INFO").upper()

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("fleetplan.server")

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

app = Flask(__name__)
CORS(app)

# ---------------------------------------------------------------------------
# Database helpers
# ---------------------------------------------------------------------------

def get_connection():
    return connect(DB_PATH)


def setup_db():
    init_db(DB_PATH, SECRET, seed=SEED)


# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------

def _sign(payload):
    return hmac.new(SECRET.encode(), payload.encode(), hashlib.sha256).hexdigest()


def make_token(user_id, role, issued_at=None):
    issued_at = issued_at or datetime.now(timezone.utc)
    payload = json.dumps({"user_id": user_id, "role": role, "ts": issued_at.isoformat()})
    encoded = base64.urlsafe_b64encode(payload.encode()).decode()
    return f"{encoded}.{_sign(encoded)}"


def decode_token(token):
    """Payload of a well-signed, unexpired token, else None."""
    encoded, _, signature = token.partition(".")
    if not signature or not hmac.compare_digest(signature.encode(), _sign(encoded).encode()):
        return None
    try:
        payload = json.loads(base64.urlsafe_b64decode(encoded.encode()).decode())
        issued_at = datetime.fromisoformat(payload["ts"])
    except (ValueError, KeyError, TypeError):
        return None
    if datetime.now(timezone.utc) - issued_at > TOKEN_TTL:
        return None
    return payload


def bearer_token():
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth[7:]
    return request.args.get("_token")


def get_current_user(conn):
    token = bearer_token()
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    row = conn.execute("SELECT * FROM users WHERE id=? AND is_active=1", [payload.get("user_id")]).fetchone()
    return row_to_dict(row)


def current_session(conn):
    """``{"user_id", "roles"}`` for the caller, or None."""
    user = get_current_user(conn)
    if not user:
        return None
    return make_session(user["id"], user["role"])


def audit(conn, session, action, entity_type=None, entity_id=None, old_val=None, new_val=None):
    log_audit(conn, session["user_id"] if session else None, action, entity_type, entity_id,
              old_val, new_val, ip=request.remote_addr or "")


# ---------------------------------------------------------------------------
# Route matching helper
# ---------------------------------------------------------------------------

def match(pattern, path):
    regex = re.sub(r":([a-zA-Z_]+)", r"(?P<\1>[^/]+)", pattern)
    regex = "^" + regex + "$"
    m = re.match(regex, path)
    if m:
        return m.groupdict()
    return None


def to_id(value, label="Record"):
    if not str(value).isdecimal() or int(value) > scheduling.SQLITE_INT_MAX:
        raise NotFoundError(f"{label} not found")
    return int(value)


# ---------------------------------------------------------------------------
# Helper to get query params (excluding internal ones)
# ---------------------------------------------------------------------------

def query_params():
    params = {}
    for k, v in request.args.items():
        if k not in ("route", "_token"):
            params[k] = v
    return params


def int_param(params, key, default=None):
    value = params.get(key)
    if value in (None, ""):
        return default
    try:
        number = int(value)
    except ValueError:
        raise ValidationError(f"'{key}' must be an integer")
    if abs(number) > scheduling.SQLITE_INT_MAX:
        raise ValidationError(f"'{key}' is out of range")
    return number


def paginate(conn, sql, vals, params):
    """Offset-cursor page: ``{"page", "is_done", "continue_cursor"}``."""
    offset = scheduling.parse_cursor(params.get("cursor"))
    num_items = scheduling.page_size(int_param(params, "num_items", 50))
    rows = rows_to_list(conn.execute(f"{sql} LIMIT ? OFFSET ?", vals + [num_items + 1, offset]).fetchall())
    page = rows[:num_items]
    return {"page": page, "is_done": len(rows) <= num_items, "continue_cursor": str(offset + len(page))}


def clean_email(value):
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Field 'email' is required")
    return value.strip().lower()


def own_todo(conn, session, raw_id):
    todo = row_to_dict(conn.execute("SELECT * FROM todos WHERE id=?", [to_id(raw_id, "Todo")]).fetchone())
    if not todo:
        raise NotFoundError("Todo not found")
    if todo["user_id"] != session["user_id"]:
        raise PermissionDenied("Not authorized to modify this todo")
    return todo


def ok(body, status=200):
    return {"status": status, "body": body}


# ---------------------------------------------------------------------------
# API Routes
# ---------------------------------------------------------------------------

@app.route("/api/<path:route>", methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"])
def api_handler(route):
    if request.method == "OPTIONS":
        return "", 204

    path = "/" + route
    # Strip trailing slashes
    if len(path) > 1:
        path = path.rstrip("/")

    method = request.method
    params = query_params()
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = {}

    conn = get_connection()
    try:
        result = dispatch(method, path, params, body, conn)
        if result.get("status", 200) < 400:
            conn.commit()
        else:
            conn.rollback()
        return jsonify(result.get("body", {})), result.get("status", 200)
    except FleetError as exc:
        conn.rollback()
        logger.warning("%s %s rejected: %s", method, path, exc.message)
        return jsonify(exc.to_body()), exc.status
    except Exception as exc:
        conn.rollback()
        logger.exception("Unhandled error on %s %s", method, path)
        return jsonify({"error": "Internal server error", "detail": str(exc)}), 500
    finally:
        conn.close()


def dispatch(method, path, params, body, conn):
    """Route dispatcher - returns dict with 'status' and 'body' keys.

    Writes are committed by the caller once the route returns, so every
    task mutation and its request recompute share one transaction.
    """

    # ----- HEALTH CHECK -----
    if method == "GET" and path == "/health":
        return ok({
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "db_ok": os.path.exists(DB_PATH),
        })

    # ----- AUTH -----
    if method == "POST" and path == "/auth/login":
        email = body.get("email")
        password = body.get("password")
        if not isinstance(email, str) or not isinstance(password, str) or not email.strip() or not password:
            raise ValidationError("email and password required")
        row = conn.execute("SELECT * FROM users WHERE email=? AND password_hash=? AND is_active=1",
                           [email.strip().lower(), hash_password(password, SECRET)]).fetchone()
        if not row:
            raise AuthenticationRequired("Invalid credentials")
        user = row_to_dict(row)
        logger.info("User %s logged in", user["id"])
        return ok({"token": make_token(user["id"], user["role"]), "user": public_user(user)})

    session = current_session(conn)

    if method == "GET" and path == "/auth/me":
        require_user(session)
        user = row_to_dict(conn.execute("SELECT * FROM users WHERE id=?", [session["user_id"]]).fetchone())
        abilities = abilities_from_roles(session["roles"])
        return ok({"user": public_user(user), "abilities": [list(a) for a in abilities]})

    # ----- USERS -----
    if method == "GET" and path == "/users":
        require_ability(session, "read", "users")
        rows = conn.execute("SELECT * FROM users ORDER BY name, id").fetchall()
        return ok([public_user(r) for r in rows_to_list(rows)])

    if method == "POST" and path == "/users":
        require_ability(session, "write", "users")
        for f in ["email", "name", "password", "role"]:
            if not body.get(f):
                raise ValidationError(f"Field '{f}' is required")
        if body["role"] not in ROLES:
            raise ValidationError(f"Unknown role '{body['role']}'")
        email = clean_email(body["email"])
        if not isinstance(body["password"], str) or not isinstance(body["name"], str):
            raise ValidationError("Name and password must be text")
        if conn.execute("SELECT 1 FROM users WHERE email=?", [email]).fetchone():
            raise StateError("User with this email already exists")
        cur = conn.execute("INSERT INTO users (email, password_hash, name, role) VALUES (?,?,?,?)",
                           [email, hash_password(body["password"], SECRET), body["name"], body["role"]])
        user = row_to_dict(conn.execute("SELECT * FROM users WHERE id=?", [cur.lastrowid]).fetchone())
        audit(conn, session, "create", "user", user["id"], new_val=public_user(user))
        return ok(public_user(user), 201)

    m = match("/users/:id", path)
    if m and method in ("PUT", "DELETE"):
        require_ability(session, "write", "users")
        uid = to_id(m["id"], "User")
        old = row_to_dict(conn.execute("SELECT * FROM users WHERE id=?", [uid]).fetchone())
        if not old:
            raise NotFoundError("User not found")
        if method == "DELETE":
            conn.execute("UPDATE users SET is_active=0, updated_at=CURRENT_TIMESTAMP WHERE id=?", [uid])
            audit(conn, session, "deactivate", "user", uid)
            return ok({"message": "User deactivated"})
        fields, vals = [], []
        if "email" in body:
            email = clean_email(body["email"])
            if conn.execute("SELECT 1 FROM users WHERE email=? AND id<>?", [email, uid]).fetchone():
                raise StateError("User with this email already exists")
            fields.append("email=?"); vals.append(email)
        if "name" in body:
            if not isinstance(body["name"], str) or not body["name"].strip():
                raise ValidationError("Field 'name' is required")
            fields.append("name=?"); vals.append(body["name"].strip())
        if "role" in body:
            if body["role"] not in ROLES:
                raise ValidationError(f"Unknown role '{body['role']}'")
            fields.append("role=?"); vals.append(body["role"])
        if "is_active" in body:
            fields.append("is_active=?"); vals.append(1 if body["is_active"] else 0)
        if body.get("password"):
            if not isinstance(body["password"], str):
                raise ValidationError("Password must be text")
            fields.append("password_hash=?"); vals.append(hash_password(body["password"], SECRET))
        if not fields:
            raise ValidationError("No updatable fields provided")
        fields.append("updated_at=CURRENT_TIMESTAMP")
        conn.execute(f"UPDATE users SET {', '.join(fields)} WHERE id=?", vals + [uid])
        user = row_to_dict(conn.execute("SELECT * FROM users WHERE id=?", [uid]).fetchone())
        audit(conn, session, "update", "user", uid, public_user(old), public_user(user))
        return ok(public_user(user))

    # ----- LOCATIONS -----
    if method == "GET" and path == "/locations":
        require_user(session)
        return ok(rows_to_list(conn.execute("SELECT * FROM locations ORDER BY name, id").fetchall()))

    if method == "GET" and path == "/locations/page":
        require_user(session)
        return ok(paginate(conn, "SELECT * FROM locations ORDER BY id", [], params))

    if method == "POST" and path == "/locations":
        require_ability(session, "write", "locations")
        name = (body.get("name") or "").strip()
        if not name:
            raise ValidationError("Field 'name' is required")
        cur = conn.execute("INSERT INTO locations (name, address, lat, lng) VALUES (?,?,?,?)",
                           [name, body.get("address"), body.get("lat"), body.get("lng")])
        loc = row_to_dict(conn.execute("SELECT * FROM locations WHERE id=?", [cur.lastrowid]).fetchone())
        audit(conn, session, "create", "location", loc["id"], new_val=loc)
        return ok(loc, 201)

    # ----- VEHICLES -----
    vehicle_sql = """SELECT v.*, u.name as driver_name FROM vehicles v
                     LEFT JOIN users u ON u.id=v.driver_id"""

    if method == "GET" and path == "/vehicles":
        require_user(session)
        return ok(rows_to_list(conn.execute(f"{vehicle_sql} ORDER BY v.plate").fetchall()))

    if method == "GET" and path == "/vehicles/page":
        require_user(session)
        return ok(paginate(conn, f"{vehicle_sql} ORDER BY v.id", [], params))

    if method == "POST" and path == "/vehicles":
        require_ability(session, "write", "vehicles")
        plate = (body.get("plate") or "").strip().upper()
        if not plate:
            raise ValidationError("Field 'plate' is required")
        capacity = scheduling.positive_int(body.get("board_capacity"), "Board capacity must be > 0")
        existing = conn.execute(f"{vehicle_sql} WHERE v.plate=?", [plate]).fetchone()
        if existing:
            return ok(row_to_dict(existing))
        if not conn.execute("SELECT 1 FROM users WHERE id=?", [scheduling.sql_id(body.get("driver_id"))]).fetchone():
            raise NotFoundError("Driver not found")
        cur = conn.execute("INSERT INTO vehicles (plate, board_capacity, driver_id, is_active) VALUES (?,?,?,?)",
                           [plate, capacity, body["driver_id"], 1 if body.get("is_active", True) else 0])
        vehicle = row_to_dict(conn.execute(f"{vehicle_sql} WHERE v.id=?", [cur.lastrowid]).fetchone())
        audit(conn, session, "create", "vehicle", vehicle["id"], new_val=vehicle)
        return ok(vehicle, 201)

    # ----- REQUESTS -----
    if method == "GET" and path == "/requests":
        require_ability(session, "read", "requests")
        return ok(scheduling.list_requests(conn, params.get("status")))

    if method == "POST" and path == "/requests":
        require_ability(session, "write", "requests")
        fields = dict(body)
        fields.setdefault("sourcer_id", session["user_id"])
        req = scheduling.create_request(conn, fields)
        audit(conn, session, "create", "request", req["id"], new_val=req)
        return ok(req, 201)

    if method == "GET" and path == "/requests/pending":
        require_ability(session, "read", "requests")
        return ok(scheduling.list_pending_requests_with_summary(conn, int_param(params, "limit")))

    if method == "GET" and path == "/requests/finished":
        require_ability(session, "read", "requests")
        return ok(scheduling.paginate_finished_requests_with_summary(
            conn, scheduling.parse_cursor(params.get("cursor")), int_param(params, "num_items", 20)))

    m = match("/requests/:id/assign", path)
    if m and method == "POST":
        require_ability(session, "write", "task-assignment")
        rid = to_id(m["id"], "Request")
        result = scheduling.assign_vehicles_to_request(conn, rid, body.get("assignments") or [])
        audit(conn, session, "assign", "request", rid, new_val=body.get("assignments"))
        return ok(result)

    m = match("/requests/:id/tasks", path)
    if m and method == "POST":
        require_ability(session, "write", "task-assignment")
        fields = dict(body, request_id=to_id(m["id"], "Request"))
        task_id = scheduling.create_task_for_request(conn, fields)
        audit(conn, session, "create", "task", task_id, new_val=fields)
        return ok(scheduling.get_task(conn, task_id), 201)

    m = match("/requests/:id", path)
    if m:
        rid = to_id(m["id"], "Request")
        if method == "GET":
            require_ability(session, "read", "requests")
            return ok(scheduling.request_summary(conn, rid))
        if method == "PUT":
            require_ability(session, "write", "requests")
            old = scheduling.get_request(conn, rid)
            req = scheduling.update_request(conn, rid, body)
            audit(conn, session, "update", "request", rid, old, req)
            return ok(req)
        if method == "DELETE":
            require_ability(session, "write", "requests")
            result = scheduling.delete_request(conn, rid)
            audit(conn, session, "delete", "request", rid)
            return ok(result)

    # ----- TASKS -----
    if method == "GET" and path == "/tasks":
        require_ability(session, "read", "task-assignment")
        if params.get("date"):
            tasks = scheduling.list_tasks_by_date(conn, params["date"])
        elif params.get("vehicle_id"):
            tasks = scheduling.list_tasks_by_vehicle(conn, int_param(params, "vehicle_id"))
        else:
            tasks = rows_to_list(conn.execute("SELECT * FROM tasks ORDER BY id").fetchall())
        if params.get("enriched") == "1":
            return ok(scheduling.enrich_tasks(conn, tasks))
        return ok(tasks)

    if method == "GET" and path == "/tasks/page":
        require_ability(session, "read", "task-assignment")
        return ok(paginate(conn, "SELECT * FROM tasks ORDER BY id", [], params))

    if method == "POST" and path == "/tasks":
        require_ability(session, "write", "task-assignment")
        task_id = scheduling.create_task(conn, body)
        audit(conn, session, "create", "task", task_id, new_val=body)
        return ok(scheduling.get_task(conn, task_id), 201)

    m = match("/tasks/:id/assign", path)
    if m and method == "PUT":
        require_ability(session, "write", "task-assignment")
        tid = to_id(m["id"], "Task")
        scheduling.assign_task_to_vehicle(conn, tid, body.get("vehicle_id"))
        audit(conn, session, "assign", "task", tid, new_val={"vehicle_id": body.get("vehicle_id")})
        return ok(scheduling.get_task(conn, tid))

    m = match("/tasks/:id/schedule", path)
    if m and method in ("PUT", "DELETE"):
        require_ability(session, "write", "task-assignment")
        tid = to_id(m["id"], "Task")
        if method == "DELETE":
            scheduling.unschedule_task(conn, tid)
            audit(conn, session, "unschedule", "task", tid)
            return ok(scheduling.get_task(conn, tid))
        scheduling.schedule_task(conn, tid, body.get("vehicle_id"), body.get("date"),
                                 body.get("start_minute"), body.get("end_minute"), body.get("lane"))
        audit(conn, session, "schedule", "task", tid, new_val=body)
        return ok(scheduling.get_task(conn, tid))

    m = match("/tasks/:id/complete", path)
    if m and method == "POST":
        require_any_ability(session, ("write", "task-assignment"), ("write", "my-tasks"))
        tid = to_id(m["id"], "Task")
        scheduling.complete_task(conn, tid)
        audit(conn, session, "complete", "task", tid)
        return ok(scheduling.get_task(conn, tid))

    m = match("/tasks/:id", path)
    if m and method == "DELETE":
        require_ability(session, "write", "task-assignment")
        tid = to_id(m["id"], "Task")
        result = scheduling.delete_task(conn, tid)
        audit(conn, session, "delete", "task", tid)
        return ok(result)

    # ----- DRIVER -----
    if method == "GET" and path == "/driver/tasks":
        require_ability(session, "read", "my-tasks")
        tasks = scheduling.list_driver_tasks(conn, session["user_id"], params.get("date"))
        if params.get("enriched") == "1":
            return ok(scheduling.enrich_tasks(conn, tasks))
        return ok(tasks)

    # ----- TIMELINE -----
    if method == "GET" and path == "/timeline":
        require_ability(session, "read", "task-assignment")
        date = params.get("date", datetime.now().strftime("%Y-%m-%d"))
        lanes = max(1, int_param(params, "lanes", timeline.DEFAULT_LANES))
        tasks = scheduling.list_tasks_by_date(conn, date)
        state = timeline.replace_events(timeline.TimelineState(lanes=lanes),
                                        timeline.events_from_tasks(tasks, lanes))
        events = sorted(state.events.values(), key=lambda e: (e.lane, e.start, e.id))
        return ok({
            "date": date,
            "start_minute": timeline.START_MINUTE,
            "end_minute": timeline.END_MINUTE,
            "lanes": lanes,
            "events": [timeline.event_to_dict(e) for e in events],
            "pending": scheduling.list_pending_requests_with_summary(conn),
        })

    # ----- TODOS -----
    if method == "GET" and path == "/todos":
        require_ability(session, "read", "todo")
        rows = conn.execute("SELECT * FROM todos WHERE user_id=? ORDER BY created_at DESC, id DESC",
                            [session["user_id"]]).fetchall()
        return ok(rows_to_list(rows))

    if method == "POST" and path == "/todos":
        require_ability(session, "write", "todo")
        text = (body.get("text") or "").strip()
        if not text:
            raise ValidationError("Todo text cannot be empty")
        cur = conn.execute("INSERT INTO todos (text, completed, user_id, created_at) VALUES (?,0,?,?)",
                           [text, session["user_id"], now_iso()])
        return ok(row_to_dict(conn.execute("SELECT * FROM todos WHERE id=?", [cur.lastrowid]).fetchone()), 201)

    m = match("/todos/:id/toggle", path)
    if m and method == "PUT":
        require_ability(session, "write", "todo")
        todo = own_todo(conn, session, m["id"])
        conn.execute("UPDATE todos SET completed=? WHERE id=?", [0 if todo["completed"] else 1, todo["id"]])
        return ok(row_to_dict(conn.execute("SELECT * FROM todos WHERE id=?", [todo["id"]]).fetchone()))

    m = match("/todos/:id", path)
    if m and method == "DELETE":
        require_ability(session, "write", "todo")
        todo = own_todo(conn, session, m["id"])
        conn.execute("DELETE FROM todos WHERE id=?", [todo["id"]])
        return ok({"ok": True})

    # 404
    return {"status": 404, "body": {"error": f"Route not found: {method} {path}"}}


# ---------------------------------------------------------------------------
# Init and run
# ---------------------------------------------------------------------------

# Always init DB on import (gunicorn imports the module, doesn't run __main__)
setup_db()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=False)
