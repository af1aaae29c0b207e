"""
timeline.py - Day timeline geometry, event store and drag controller.

The timeline shows one day between START_MINUTE and END_MINUTE, split into
horizontal lanes of LANE_HEIGHT pixels. Horizontal zoom is ``px_per_minute``.

State lives in an immutable ``TimelineState``. Actions are plain functions
``action(state, ...) -> state`` and return the same object when nothing
changed. ``TimelineStore`` owns one state and tells subscribers about
each write; the ``DragController`` is handed a store rather than reaching
for a global one.
"""

import logging
import math
from dataclasses import asdict, dataclass, field, replace
from typing import Callable, Dict, List, Optional, Tuple

from fleetplan.scheduling import DEFAULT_TASK_DURATION

logger = logging.getLogger(__name__)

START_MINUTE = 6 * 60
END_MINUTE = 20 * 60
LANE_HEIGHT = 64
SNAP_MINUTES = 1
MIN_EVENT_MINUTES = 15
DEFAULT_PX_PER_MINUTE = 2.0
MIN_PX_PER_MINUTE = 0.25
MAX_PX_PER_MINUTE = 12.0
DEFAULT_LANES = 4


# ---------------------------------------------------------------------------
# Coordinate mapping
# ---------------------------------------------------------------------------

def clamp(value, lo, hi):
    """Clamp into [lo, hi]; ``lo`` wins when the range is empty."""
    return max(lo, min(value, hi))


def snap(minute, step=SNAP_MINUTES):
    return int(math.floor(minute / step + 0.5)) * step


def minute_to_pixel(minute, px_per_minute=DEFAULT_PX_PER_MINUTE):
    return (clamp(minute, START_MINUTE, END_MINUTE) - START_MINUTE) * px_per_minute


def pixel_to_minute(x, px_per_minute=DEFAULT_PX_PER_MINUTE):
    return snap(clamp(START_MINUTE + x / px_per_minute, START_MINUTE, END_MINUTE))


def span_to_width(start, end, px_per_minute=DEFAULT_PX_PER_MINUTE):
    start = clamp(start, START_MINUTE, END_MINUTE)
    end = clamp(end, START_MINUTE, END_MINUTE)
    return max(0, end - start) * px_per_minute


def timeline_width(px_per_minute=DEFAULT_PX_PER_MINUTE):
    return (END_MINUTE - START_MINUTE) * px_per_minute


def lane_from_offset(y, lanes):
    return clamp(int(math.floor(y / LANE_HEIGHT)), 0, max(1, lanes) - 1)


def lane_to_offset(lane):
    return lane * LANE_HEIGHT


def format_minute(minute):
    minute = int(minute)
    return f"{minute // 60:02d}:{minute % 60:02d}"


def make_point_to_minute(origin_x, px_per_minute=DEFAULT_PX_PER_MINUTE, scroll_left=0):
    """Converter from a viewport x coordinate to a timeline minute."""
    def point_to_minute(client_x):
        return pixel_to_minute(client_x - origin_x + scroll_left, px_per_minute)
    return point_to_minute


def place(start, duration):
    """Snap and clamp a start so the whole block stays inside the window."""
    start = snap(clamp(start, START_MINUTE, END_MINUTE - duration))
    return start, min(END_MINUTE, start + duration)


@dataclass(frozen=True)
class Rect:
    left: float
    top: float
    right: float
    bottom: float

    @property
    def height(self):
        return self.bottom - self.top

    def contains(self, x, y):
        return self.left <= x <= self.right and self.top <= y <= self.bottom


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DragSource:
    request_id: int
    task_id: Optional[int] = None


@dataclass(frozen=True)
class TimelineEvent:
    id: str
    request_id: int
    task_id: Optional[int]
    start: int
    end: int
    lane: int

    @property
    def duration(self):
        return self.end - self.start


@dataclass(frozen=True)
class PreviewState:
    request_id: int
    task_id: Optional[int]
    minute: int
    lane: int


@dataclass(frozen=True)
class DraggingState:
    event_id: str
    start: int
    end: int
    lane: int


@dataclass(frozen=True)
class TimeRange:
    start: int
    end: int


@dataclass(frozen=True)
class TimelineState:
    events: Dict[str, TimelineEvent] = field(default_factory=dict)
    task_to_event: Dict[int, str] = field(default_factory=dict)
    px_per_minute: float = DEFAULT_PX_PER_MINUTE
    lanes: int = DEFAULT_LANES
    preview: Optional[PreviewState] = None
    dragging: Optional[DraggingState] = None
    tasks: Tuple[dict, ...] = ()
    requests: Tuple[dict, ...] = ()
    next_event_seq: int = 1


def event_id_for_seq(seq):
    return f"evt-{seq}"


def event_id_for_task(task_id):
    return f"task-{task_id}"


# ---------------------------------------------------------------------------
# Getters
# ---------------------------------------------------------------------------

def resolve_task(state, task_id):
    for t in state.tasks:
        if t.get("id") == task_id:
            return t
    return None


def resolve_request(state, request_id):
    for r in state.requests:
        if r.get("id") == request_id:
            return r
    return None


def resolve_request_label(state, request_id):
    req = resolve_request(state, request_id)
    if req and req.get("title"):
        return req["title"]
    return f"Request {request_id}"


def get_duration_for_source(state, source):
    """Task estimate, then the request default, then the global default."""
    if source.task_id is not None:
        task = resolve_task(state, source.task_id)
        if task and task.get("estimated_duration_minutes"):
            return task["estimated_duration_minutes"]
    req = resolve_request(state, source.request_id)
    if req and req.get("estimated_task_duration_minutes"):
        return req["estimated_task_duration_minutes"]
    return DEFAULT_TASK_DURATION


def detect_overlaps(state, event_id):
    """Intersections of an event with the other events in its lane."""
    ev = state.events.get(event_id)
    if ev is None:
        return []
    ranges = []
    for other in state.events.values():
        if other.id == ev.id or other.lane != ev.lane:
            continue
        if other.start < ev.end and ev.start < other.end:
            ranges.append(TimeRange(max(ev.start, other.start), min(ev.end, other.end)))
    return sorted(ranges, key=lambda r: (r.start, r.end))


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

def _with_event(state, event, **changes):
    events = dict(state.events)
    events[event.id] = event
    return replace(state, events=events, **changes)


def _lane(state, lane, default=0):
    if lane is None:
        lane = default
    return clamp(int(lane), 0, state.lanes - 1)


def upsert_event(state, request_id, minute, task_id=None, lane=None):
    """Move a task's event in place, or create it on first drop."""
    duration = get_duration_for_source(state, DragSource(request_id, task_id))
    start, end = place(minute, duration)
    existing_id = state.task_to_event.get(task_id) if task_id is not None else None
    if existing_id and existing_id in state.events:
        ev = state.events[existing_id]
        moved = replace(ev, start=start, end=end, lane=_lane(state, lane, ev.lane))
        if moved == ev:
            return state
        return _with_event(state, moved)

    event_id = event_id_for_seq(state.next_event_seq)
    ev = TimelineEvent(event_id, request_id, task_id, start, end, _lane(state, lane))
    task_to_event = dict(state.task_to_event)
    if task_id is not None:
        task_to_event[task_id] = event_id
    return _with_event(state, ev, task_to_event=task_to_event,
                       next_event_seq=state.next_event_seq + 1)


def insert_event(state, request_id, minute, lane=None):
    """Always add a new event; a request may spawn any number of them."""
    duration = get_duration_for_source(state, DragSource(request_id))
    start, end = place(minute, duration)
    ev = TimelineEvent(event_id_for_seq(state.next_event_seq), request_id, None,
                       start, end, _lane(state, lane))
    return _with_event(state, ev, next_event_seq=state.next_event_seq + 1)


def move_event(state, event_id, minute, lane=None):
    ev = state.events.get(event_id)
    if ev is None:
        return state
    start, end = place(minute, ev.duration)
    moved = replace(ev, start=start, end=end, lane=_lane(state, lane, ev.lane))
    return state if moved == ev else _with_event(state, moved)


def resize_left(state, event_id, new_start):
    ev = state.events.get(event_id)
    if ev is None:
        return state
    start = clamp(snap(new_start), START_MINUTE, ev.end - MIN_EVENT_MINUTES)
    return state if start == ev.start else _with_event(state, replace(ev, start=start))


def resize_right(state, event_id, new_end):
    ev = state.events.get(event_id)
    if ev is None:
        return state
    end = clamp(snap(new_end), ev.start + MIN_EVENT_MINUTES, END_MINUTE)
    return state if end == ev.end else _with_event(state, replace(ev, end=end))


def delete_event(state, event_id):
    if event_id not in state.events:
        return state
    events = {k: v for k, v in state.events.items() if k != event_id}
    task_to_event = {k: v for k, v in state.task_to_event.items() if v != event_id}
    dragging = None if state.dragging and state.dragging.event_id == event_id else state.dragging
    return replace(state, events=events, task_to_event=task_to_event, dragging=dragging)


def reset_events(state):
    if not state.events and state.dragging is None and state.preview is None:
        return state
    return replace(state, events={}, task_to_event={}, dragging=None, preview=None)


def replace_events(state, items):
    """Swap in events projected from stored task schedules."""
    events, task_to_event = {}, {}
    for item in items:
        event_id = event_id_for_task(item["task_id"])
        events[event_id] = TimelineEvent(event_id, item["request_id"], item["task_id"],
                                         item["start"], item["end"],
                                         _lane(state, item.get("lane")))
        task_to_event[item["task_id"]] = event_id
    return replace(state, events=events, task_to_event=task_to_event, dragging=None)


def set_px_per_minute(state, value):
    value = clamp(float(value), MIN_PX_PER_MINUTE, MAX_PX_PER_MINUTE)
    return state if value == state.px_per_minute else replace(state, px_per_minute=value)


def set_lanes(state, value):
    lanes = max(1, int(value))
    if lanes == state.lanes:
        return state
    events = {k: replace(v, lane=min(v.lane, lanes - 1)) for k, v in state.events.items()}
    return replace(state, lanes=lanes, events=events)


def set_tasks(state, tasks):
    return replace(state, tasks=tuple(tasks))


def set_requests(state, requests):
    return replace(state, requests=tuple(requests))


def set_preview_state(state, preview):
    return state if preview == state.preview else replace(state, preview=preview)


def update_dragging_event(state, event_id, start, end, lane):
    dragging = DraggingState(event_id, start, end, lane)
    return state if dragging == state.dragging else replace(state, dragging=dragging)


def end_dragging(state):
    """Apply the in-flight drag to its event and drop the drag state."""
    drag = state.dragging
    if drag is None:
        return state
    ev = state.events.get(drag.event_id)
    if ev is None:
        return replace(state, dragging=None)
    start, end = place(drag.start, drag.end - drag.start)
    moved = replace(ev, start=start, end=end, lane=_lane(state, drag.lane))
    return _with_event(state, moved, dragging=None)


# ---------------------------------------------------------------------------
# Lane assignment and projection from tasks
# ---------------------------------------------------------------------------

def assign_lanes(items, lanes=DEFAULT_LANES):
    """Give items without a lane the first lane they do not overlap in.

    Items that already carry a lane keep it. When every lane is busy the
    item goes to the lane that frees up earliest.
    """
    lanes = max(1, lanes)
    busy = {lane: [] for lane in range(lanes)}
    fixed, floating = [], []
    for item in items:
        (fixed if item.get("lane") is not None else floating).append(item)
    placed = []
    for item in fixed:
        lane = clamp(int(item["lane"]), 0, lanes - 1)
        busy[lane].append((item["start"], item["end"]))
        placed.append(dict(item, lane=lane))
    for item in sorted(floating, key=lambda i: (i["start"], i["end"])):
        chosen = None
        for lane in range(lanes):
            if all(item["end"] <= s or e <= item["start"] for s, e in busy[lane]):
                chosen = lane
                break
        if chosen is None:
            chosen = min(range(lanes), key=lambda ln: max(e for _, e in busy[ln]))
        busy[chosen].append((item["start"], item["end"]))
        placed.append(dict(item, lane=chosen))
    return placed


def events_from_tasks(tasks, lanes=DEFAULT_LANES):
    items = [
        {
            "request_id": t["request_id"],
            "task_id": t["id"],
            "start": t["scheduled_start_minute"],
            "end": t["scheduled_end_minute"],
            "lane": t.get("scheduled_lane"),
        }
        for t in tasks
        if t.get("scheduled_start_minute") is not None and t.get("scheduled_end_minute") is not None
    ]
    return assign_lanes(items, lanes)


def event_to_dict(event):
    return asdict(event)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class TimelineStore:
    """Owner of one TimelineState; notifies subscribers once per write."""

    def __init__(self, state=None):
        self._state = state if state is not None else TimelineState()
        self._listeners: List[Callable[[TimelineState], None]] = []

    @property
    def state(self):
        return self._state

    def subscribe(self, listener):
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def dispatch(self, action, *args, **kwargs):
        new_state = action(self._state, *args, **kwargs)
        if new_state is self._state:
            return False
        self._state = new_state
        for listener in list(self._listeners):
            listener(new_state)
        return True


# ---------------------------------------------------------------------------
# Drag / preview controller
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DragOverlay:
    source: DragSource
    client_x: float
    client_y: float
    anchor_px: Optional[float] = None
    anchor_py: Optional[float] = None


@dataclass(frozen=True)
class OverlayGeometry:
    left: float
    top: float
    width: float
    translate_x: float
    translate_y: float
    duration: int
    label: str
    start: Optional[int]
    end: Optional[int]

    @property
    def time_label(self):
        if self.start is None or self.end is None:
            return None
        return f"{format_minute(self.start)} - {format_minute(self.end)}"


class DragController:
    """Turns pointer positions into proposed slots and commits them on release.

    Nothing happens until the timeline has mounted its drop zone and
    registered a pixel-to-minute converter. ``on_commit`` is called with
    the committed event so the caller can persist it.
    """

    def __init__(self, store: TimelineStore, read_only=False, on_commit=None):
        self.store = store
        self.read_only = read_only
        self.on_commit = on_commit
        self.dropzone: Optional[Rect] = None
        self.overlay: Optional[DragOverlay] = None
        self._point_to_minute: Optional[Callable[[float], int]] = None
        self._last_preview: Optional[PreviewState] = None

    def mount(self, dropzone, point_to_minute=None):
        self.dropzone = dropzone
        if point_to_minute is not None:
            self.register_point_to_minute(point_to_minute)

    def unmount(self):
        self.dropzone = None
        self._point_to_minute = None
        self.clear()

    def register_point_to_minute(self, fn):
        self._point_to_minute = fn

    def point_to_minute(self, client_x):
        if self._point_to_minute is None:
            return None
        return self._point_to_minute(client_x)

    def is_point_over_dropzone(self, client_x, client_y):
        return self.dropzone is not None and self.dropzone.contains(client_x, client_y)

    def is_over_dropzone(self, chip):
        """A chip counts as over the zone by its left edge and vertical centre."""
        if self.dropzone is None:
            return False
        return self.dropzone.contains(chip.left, chip.top + chip.height / 2)

    def lane_from_client_y(self, client_y):
        if self.dropzone is None:
            return 0
        return lane_from_offset(client_y - self.dropzone.top, self.store.state.lanes)

    def _slot(self, source, client_x, client_y):
        minute = self.point_to_minute(client_x)
        if minute is None:
            return None
        duration = get_duration_for_source(self.store.state, source)
        start = snap(clamp(minute - duration / 2, START_MINUTE, END_MINUTE - duration))
        return start, self.lane_from_client_y(client_y)

    def preview(self, source, client_x, client_y):
        if self.read_only or self._point_to_minute is None:
            return
        self.update_overlay(source, client_x, client_y)
        if not self.is_point_over_dropzone(client_x, client_y):
            self.clear_preview()
            return
        slot = self._slot(source, client_x, client_y)
        if slot is None:
            return
        start, lane = slot
        preview = PreviewState(source.request_id, source.task_id, start, lane)
        if preview == self._last_preview:
            return
        self._last_preview = preview
        self.store.dispatch(set_preview_state, preview)

    def commit(self, source, client_x, client_y):
        """Drop at the pointer. Returns the committed event, or None."""
        if self.read_only:
            return None
        if not self.is_point_over_dropzone(client_x, client_y):
            self.clear()
            return None
        slot = self._slot(source, client_x, client_y)
        if slot is None:
            return None
        start, lane = slot
        state = self.store.state
        if source.task_id is not None:
            event_id = state.task_to_event.get(source.task_id) or event_id_for_seq(state.next_event_seq)
            self.store.dispatch(upsert_event, source.request_id, start,
                                task_id=source.task_id, lane=lane)
        else:
            event_id = event_id_for_seq(state.next_event_seq)
            self.store.dispatch(insert_event, source.request_id, start, lane=lane)
        self.clear()
        event = self.store.state.events.get(event_id)
        logger.debug("Committed %s at %s lane %d", event_id, format_minute(start), lane)
        if event is not None and self.on_commit is not None:
            self.on_commit(event)
        return event

    def clear_preview(self):
        self._last_preview = None
        self.store.dispatch(set_preview_state, None)

    def clear(self):
        self.clear_preview()
        self.clear_overlay()

    def update_overlay(self, source, client_x, client_y, anchor_px=None, anchor_py=None):
        self.overlay = DragOverlay(source, client_x, client_y, anchor_px, anchor_py)

    def clear_overlay(self):
        self.overlay = None

    def overlay_geometry(self):
        """Where to draw the floating chip for the current overlay, if any."""
        ov = self.overlay
        if ov is None:
            return None
        state = self.store.state
        duration = get_duration_for_source(state, ov.source)
        ppm = state.px_per_minute
        width = duration * ppm
        anchor_x = ov.anchor_px if ov.anchor_px is not None else width / 2
        anchor_y = ov.anchor_py if ov.anchor_py is not None else LANE_HEIGHT / 2
        center = self.point_to_minute(ov.client_x)
        start = end = None
        if center is not None and self.is_point_over_dropzone(ov.client_x, ov.client_y):
            start = snap(clamp(center - anchor_x / ppm, START_MINUTE, END_MINUTE - duration))
            end = start + duration
        return OverlayGeometry(
            left=ov.client_x,
            top=ov.client_y,
            width=width,
            translate_x=anchor_x,
            translate_y=anchor_y,
            duration=duration,
            label=resolve_request_label(state, ov.source.request_id),
            start=start,
            end=end,
        )
