"""
scheduling.py - Requests, tasks and the board-count aggregation rule.

Every function here takes an open sqlite connection and leaves committing
to the caller, so a task write and the recompute it triggers land in the
same transaction. All checks run before the first write.

Request status:
    incoming            no tasks
    partially_assigned  tasks exist, completed boards < request boards
    finished            tasks exist, completed boards >= request boards
"""

import logging
import math
from datetime import datetime

from fleetplan.db import now_iso, row_to_dict, rows_to_list
from fleetplan.errors import (
    CapacityError,
    ConservationError,
    NotFoundError,
    StateError,
    ValidationError,
)

logger = logging.getLogger(__name__)

REQUEST_STATUSES = ("incoming", "partially_assigned", "finished")
TASK_STATUSES = ("pending", "assigned", "completed")
DEFAULT_TASK_DURATION = 120
MINUTES_PER_DAY = 24 * 60
PENDING_LIMIT_DEFAULT = 200
PENDING_LIMIT_MAX = 500
PAGE_SIZE_MAX = 500
SQLITE_INT_MAX = 2 ** 63 - 1


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def _is_number(value):
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    return math.isfinite(value) if isinstance(value, float) else True


def positive_int(value, message):
    if not _is_number(value) or value <= 0 or value > SQLITE_INT_MAX or int(value) != value:
        raise ValidationError(message)
    return int(value)


def optional_positive_int(value, message):
    if value is None:
        return None
    return positive_int(value, message)


def parse_date(value):
    if not isinstance(value, str):
        raise ValidationError("Date must be YYYY-MM-DD")
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        raise ValidationError("Date must be YYYY-MM-DD")
    return value


def validate_time_range(start, end):
    if not _is_number(start) or not _is_number(end):
        raise ValidationError("Start and end minute are required")
    if end <= start:
        raise ValidationError("Invalid time range")
    if start < 0 or end > MINUTES_PER_DAY:
        raise ValidationError("Time range must fall within the day")
    return int(start), int(end)


def validate_lane(lane):
    if lane is None:
        return None
    if not isinstance(lane, int) or isinstance(lane, bool) or lane < 0 or lane > SQLITE_INT_MAX:
        raise ValidationError("Lane must be a non-negative integer")
    return lane


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------

def sql_id(value):
    """Integer ids outside sqlite's range cannot match a row; map them to NULL."""
    if isinstance(value, int) and not -SQLITE_INT_MAX - 1 <= value <= SQLITE_INT_MAX:
        return None
    return value


def get_request(conn, request_id):
    row = conn.execute("SELECT * FROM requests WHERE id=?", [sql_id(request_id)]).fetchone()
    if not row:
        raise NotFoundError("Request not found")
    return row_to_dict(row)


def get_task(conn, task_id):
    row = conn.execute("SELECT * FROM tasks WHERE id=?", [sql_id(task_id)]).fetchone()
    if not row:
        raise NotFoundError("Task not found")
    return row_to_dict(row)


def get_vehicle(conn, vehicle_id):
    row = conn.execute("SELECT * FROM vehicles WHERE id=?", [sql_id(vehicle_id)]).fetchone()
    if not row:
        raise NotFoundError("Vehicle not found")
    return row_to_dict(row)


def tasks_for_request(conn, request_id):
    return rows_to_list(conn.execute(
        "SELECT * FROM tasks WHERE request_id=? ORDER BY id", [request_id]).fetchall())


def has_tasks(conn, request_id):
    return conn.execute(
        "SELECT 1 FROM tasks WHERE request_id=? LIMIT 1", [request_id]).fetchone() is not None


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def derive_aggregates(request_boards, tasks):
    """Counters and status for a request from its task rows."""
    assigned = sum(t.get("boards") or 0 for t in tasks)
    completed = sum(t.get("boards") or 0 for t in tasks if t.get("status") == "completed")
    if not tasks:
        status = "incoming"
    elif completed >= request_boards:
        status = "finished"
    else:
        status = "partially_assigned"
    return {"assigned_boards": assigned, "completed_boards": completed, "status": status}


def recompute_request_aggregates(conn, request_id):
    request = get_request(conn, request_id)
    aggregates = derive_aggregates(request["boards"], tasks_for_request(conn, request_id))
    conn.execute(
        "UPDATE requests SET assigned_boards=?, completed_boards=?, status=?, updated_at=? WHERE id=?",
        [aggregates["assigned_boards"], aggregates["completed_boards"], aggregates["status"],
         now_iso(), request_id])
    if aggregates["status"] != request["status"]:
        logger.info("Request %s status %s -> %s", request_id, request["status"], aggregates["status"])
    return aggregates


def update_request_status(conn, request_id):
    return recompute_request_aggregates(conn, request_id)["status"]


def get_aggregates(conn, request_id):
    """Stored counters when present, otherwise derived from the task rows."""
    request = get_request(conn, request_id)
    if (request.get("assigned_boards") is not None
            and request.get("completed_boards") is not None
            and request.get("status") in REQUEST_STATUSES):
        return {
            "assigned_boards": request["assigned_boards"],
            "completed_boards": request["completed_boards"],
            "status": request["status"],
        }
    return derive_aggregates(request["boards"], tasks_for_request(conn, request_id))


def check_conservation(conn, request, new_boards):
    existing = sum(t["boards"] or 0 for t in tasks_for_request(conn, request["id"]))
    if existing + new_boards > request["boards"]:
        logger.warning("Rejected %d boards for request %s (%d of %d already assigned)",
                       new_boards, request["id"], existing, request["boards"])
        raise ConservationError("Total assigned boards would exceed request total")
    return existing


def check_capacity(vehicle, boards):
    if boards > vehicle["board_capacity"]:
        raise CapacityError(f"Boards exceed vehicle capacity ({vehicle['plate']})")


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

def _check_refs(conn, fields):
    for key, table, label in (("sourcer_id", "users", "Sourcer"),
                              ("start_location_id", "locations", "Start location"),
                              ("end_location_id", "locations", "End location")):
        value = fields.get(key)
        if value is None:
            continue
        if not conn.execute(f"SELECT 1 FROM {table} WHERE id=?", [sql_id(value)]).fetchone():
            raise NotFoundError(f"{label} not found")


def create_request(conn, fields):
    title = fields.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("Title is required")
    title = title.strip()
    boards = positive_int(fields.get("boards"), "Boards must be > 0")
    duration = fields.get("estimated_task_duration_minutes")
    duration = DEFAULT_TASK_DURATION if duration is None else positive_int(duration, "Duration must be > 0")
    _check_refs(conn, fields)

    now = now_iso()
    cur = conn.execute(
        """INSERT INTO requests (title, boards, estimated_task_duration_minutes, sourcer_id,
               start_location_id, end_location_id, notes, assigned_boards, completed_boards,
               status, created_at, updated_at)
           VALUES (?,?,?,?,?,?,?,0,0,'incoming',?,?)""",
        [title, boards, duration, fields.get("sourcer_id"), fields.get("start_location_id"),
         fields.get("end_location_id"), fields.get("notes"), now, now])
    logger.info("Created request %s (%s, %d boards)", cur.lastrowid, title, boards)
    return get_request(conn, cur.lastrowid)


REQUEST_UPDATABLE = ("title", "boards", "estimated_task_duration_minutes", "sourcer_id",
                     "start_location_id", "end_location_id", "notes")


def update_request(conn, request_id, fields):
    get_request(conn, request_id)
    if has_tasks(conn, request_id):
        raise StateError("Cannot modify a request that has derived tasks")

    update = {}
    for key in REQUEST_UPDATABLE:
        if key in fields and fields[key] is not None:
            update[key] = fields[key]
    if "title" in update:
        if not isinstance(update["title"], str) or not update["title"].strip():
            raise ValidationError("Title is required")
        update["title"] = update["title"].strip()
    if "boards" in update:
        update["boards"] = positive_int(update["boards"], "Boards must be > 0")
    if "estimated_task_duration_minutes" in update:
        update["estimated_task_duration_minutes"] = positive_int(
            update["estimated_task_duration_minutes"], "Duration must be > 0")
    _check_refs(conn, update)

    update["updated_at"] = now_iso()
    assignments = ", ".join(f"{k}=?" for k in update)
    conn.execute(f"UPDATE requests SET {assignments} WHERE id=?", list(update.values()) + [request_id])
    return get_request(conn, request_id)


def delete_request(conn, request_id):
    get_request(conn, request_id)
    if has_tasks(conn, request_id):
        raise StateError("Cannot delete a request that has derived tasks")
    conn.execute("DELETE FROM requests WHERE id=?", [request_id])
    return {"ok": True}


def list_requests(conn, status=None):
    if status is not None:
        if status not in REQUEST_STATUSES:
            raise ValidationError(f"Unknown status '{status}'")
        rows = conn.execute(
            "SELECT * FROM requests WHERE status=? ORDER BY updated_at DESC, id DESC", [status]).fetchall()
    else:
        rows = conn.execute("SELECT * FROM requests ORDER BY created_at, id").fetchall()
    return rows_to_list(rows)


def summarize(request):
    return {
        "request": request,
        "sum_assigned_boards": request.get("assigned_boards") or 0,
        "completed_boards": request.get("completed_boards") or 0,
    }


def request_summary(conn, request_id):
    request = get_request(conn, request_id)
    aggregates = get_aggregates(conn, request_id)
    return {
        "request": request,
        "sum_assigned_boards": aggregates["assigned_boards"],
        "completed_boards": aggregates["completed_boards"],
    }


def list_pending_requests_with_summary(conn, limit=None):
    cap = PENDING_LIMIT_DEFAULT if limit is None else limit
    cap = max(1, min(int(cap), PENDING_LIMIT_MAX))
    rows = conn.execute(
        """SELECT * FROM requests WHERE status IN ('incoming','partially_assigned')
           ORDER BY updated_at DESC, id DESC LIMIT ?""", [cap]).fetchall()
    return [summarize(r) for r in rows_to_list(rows)]


def parse_cursor(cursor):
    """Offset encoded in a ``continue_cursor``; missing means the first page."""
    if cursor is None or cursor == "":
        return 0
    try:
        offset = int(cursor)
    except (TypeError, ValueError):
        raise ValidationError("Invalid cursor")
    if isinstance(cursor, bool) or offset < 0 or offset > SQLITE_INT_MAX:
        raise ValidationError("Invalid cursor")
    return offset


def page_size(num_items):
    return max(1, min(int(num_items), PAGE_SIZE_MAX))


def paginate_finished_requests_with_summary(conn, cursor=None, num_items=20):
    """Offset-cursor page over finished requests, newest first."""
    offset = parse_cursor(cursor)
    num_items = page_size(num_items)
    rows = rows_to_list(conn.execute(
        """SELECT * FROM requests WHERE status='finished'
           ORDER BY updated_at DESC, id DESC LIMIT ? OFFSET ?""",
        [num_items + 1, offset]).fetchall())
    page = rows[:num_items]
    is_done = len(rows) <= num_items
    return {
        "page": [summarize(r) for r in page],
        "is_done": is_done,
        "continue_cursor": str(offset + len(page)),
    }


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------

def _normalize_assignment(item):
    schedule = {
        "scheduled_date": item.get("scheduled_date"),
        "scheduled_start_minute": item.get("scheduled_start_minute"),
        "scheduled_end_minute": item.get("scheduled_end_minute"),
        "scheduled_lane": validate_lane(item.get("scheduled_lane")),
    }
    slot = (schedule["scheduled_date"], schedule["scheduled_start_minute"], schedule["scheduled_end_minute"])
    if any(v is not None for v in slot):
        # a partial slot would never show on a day timeline
        if any(v is None for v in slot):
            raise ValidationError("Schedule needs a date, start minute and end minute")
        parse_date(schedule["scheduled_date"])
        validate_time_range(schedule["scheduled_start_minute"], schedule["scheduled_end_minute"])
    return {
        "vehicle_id": item.get("vehicle_id"),
        "boards": positive_int(item.get("boards"), "Assignment boards must be > 0"),
        "estimated_duration_minutes": optional_positive_int(
            item.get("estimated_duration_minutes"), "Duration must be > 0"),
        **schedule,
    }


def _insert_task(conn, request_id, boards, vehicle_id, duration, status, schedule=None):
    schedule = schedule or {}
    cur = conn.execute(
        """INSERT INTO tasks (boards, request_id, assigned_vehicle_id, estimated_duration_minutes,
               status, scheduled_date, scheduled_start_minute, scheduled_end_minute, scheduled_lane)
           VALUES (?,?,?,?,?,?,?,?,?)""",
        [boards, request_id, vehicle_id, duration, status,
         schedule.get("scheduled_date"), schedule.get("scheduled_start_minute"),
         schedule.get("scheduled_end_minute"), schedule.get("scheduled_lane")])
    return cur.lastrowid


def assign_vehicles_to_request(conn, request_id, assignments):
    """Insert one assigned task per item, or nothing at all.

    Rejects the whole batch if any item exceeds its vehicle's capacity or
    if the batch would push the request past its total boards.
    """
    request = get_request(conn, request_id)
    if not assignments:
        raise ValidationError("No assignments provided")

    items = [_normalize_assignment(a) for a in assignments]
    vehicles = {}
    for item in items:
        vid = item["vehicle_id"]
        if vid not in vehicles:
            vehicles[vid] = get_vehicle(conn, vid)
        check_capacity(vehicles[vid], item["boards"])

    check_conservation(conn, request, sum(i["boards"] for i in items))

    task_ids = []
    for item in items:
        duration = item["estimated_duration_minutes"] or request["estimated_task_duration_minutes"]
        task_ids.append(_insert_task(conn, request_id, item["boards"], item["vehicle_id"],
                                     duration, "assigned", item))
    aggregates = recompute_request_aggregates(conn, request_id)
    logger.info("Assigned %d task(s) to request %s", len(task_ids), request_id)
    return {"ok": True, "task_ids": task_ids, **aggregates}


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

def create_task(conn, fields):
    """Insert a task; ``assigned`` when a vehicle is given, else ``pending``."""
    boards = positive_int(fields.get("boards"), "Boards must be > 0")
    request = get_request(conn, fields.get("request_id"))
    vehicle_id = fields.get("assigned_vehicle_id")
    if vehicle_id is not None:
        check_capacity(get_vehicle(conn, vehicle_id), boards)
    duration = optional_positive_int(fields.get("estimated_duration_minutes"), "Duration must be > 0")
    check_conservation(conn, request, boards)

    status = "assigned" if vehicle_id is not None else "pending"
    task_id = _insert_task(conn, request["id"], boards, vehicle_id, duration, status)
    update_request_status(conn, request["id"])
    return task_id


def create_task_for_request(conn, fields):
    """Single-item assignment: both capacity and conservation are checked."""
    item = _normalize_assignment(fields)
    request = get_request(conn, fields.get("request_id"))
    vehicle = get_vehicle(conn, item["vehicle_id"])
    check_capacity(vehicle, item["boards"])
    check_conservation(conn, request, item["boards"])

    task_id = _insert_task(conn, request["id"], item["boards"], vehicle["id"],
                           item["estimated_duration_minutes"], "assigned", item)
    update_request_status(conn, request["id"])
    return task_id


def _require_open(task):
    if task["status"] == "completed":
        raise StateError("Task is already completed")


def assign_task_to_vehicle(conn, task_id, vehicle_id):
    task = get_task(conn, task_id)
    _require_open(task)
    check_capacity(get_vehicle(conn, vehicle_id), task["boards"])
    conn.execute("UPDATE tasks SET assigned_vehicle_id=?, status='assigned' WHERE id=?",
                 [vehicle_id, task_id])
    update_request_status(conn, task["request_id"])
    return task_id


def schedule_task(conn, task_id, vehicle_id, date, start_minute, end_minute, lane=None):
    start_minute, end_minute = validate_time_range(start_minute, end_minute)
    parse_date(date)
    lane = validate_lane(lane)
    task = get_task(conn, task_id)
    _require_open(task)
    check_capacity(get_vehicle(conn, vehicle_id), task["boards"])
    conn.execute(
        """UPDATE tasks SET assigned_vehicle_id=?, status='assigned', scheduled_date=?,
               scheduled_start_minute=?, scheduled_end_minute=?, scheduled_lane=? WHERE id=?""",
        [vehicle_id, date, start_minute, end_minute, lane, task_id])
    update_request_status(conn, task["request_id"])
    return task_id


def unschedule_task(conn, task_id):
    task = get_task(conn, task_id)
    conn.execute(
        """UPDATE tasks SET scheduled_date=NULL, scheduled_start_minute=NULL,
               scheduled_end_minute=NULL, scheduled_lane=NULL WHERE id=?""", [task_id])
    update_request_status(conn, task["request_id"])
    return task_id


def delete_task(conn, task_id):
    task = get_task(conn, task_id)
    if task["status"] == "completed":
        raise StateError("Cannot delete a completed task")
    conn.execute("DELETE FROM tasks WHERE id=?", [task_id])
    update_request_status(conn, task["request_id"])
    return {"ok": True}


def complete_task(conn, task_id):
    task = get_task(conn, task_id)
    conn.execute("UPDATE tasks SET status='completed' WHERE id=?", [task_id])
    status = update_request_status(conn, task["request_id"])
    logger.info("Task %s completed (request %s now %s)", task_id, task["request_id"], status)
    return task_id


# ---------------------------------------------------------------------------
# Read-side projections
# ---------------------------------------------------------------------------

ENRICH_FIELDS = ("id", "title", "start_location_id", "end_location_id",
                 "estimated_task_duration_minutes")


def enrich_tasks(conn, tasks):
    """Pair each task with the slice of its request the timeline needs."""
    results, cache = [], {}
    for t in tasks:
        rid = t["request_id"]
        if rid not in cache:
            cache[rid] = row_to_dict(conn.execute("SELECT * FROM requests WHERE id=?", [rid]).fetchone())
        req = cache[rid]
        if not req:
            continue
        results.append({"task": t, "request": {k: req[k] for k in ENRICH_FIELDS}})
    return results


def list_tasks_by_date(conn, date):
    parse_date(date)
    return rows_to_list(conn.execute(
        "SELECT * FROM tasks WHERE scheduled_date=? ORDER BY scheduled_start_minute, id", [date]).fetchall())


def list_tasks_by_vehicle(conn, vehicle_id):
    return rows_to_list(conn.execute(
        "SELECT * FROM tasks WHERE assigned_vehicle_id=? ORDER BY scheduled_date, scheduled_start_minute, id",
        [vehicle_id]).fetchall())


def list_driver_tasks(conn, driver_id, date=None):
    where, vals = ["v.driver_id=?"], [driver_id]
    if date:
        parse_date(date)
        where.append("t.scheduled_date=?")
        vals.append(date)
    return rows_to_list(conn.execute(
        f"""SELECT t.* FROM tasks t JOIN vehicles v ON v.id=t.assigned_vehicle_id
            WHERE {' AND '.join(where)} ORDER BY t.scheduled_date, t.scheduled_start_minute, t.id""",
        vals).fetchall())
