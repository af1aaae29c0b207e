"""Tests for fleetplan.scheduling: board accounting and request status."""

import pytest

from fleetplan import scheduling
from fleetplan.errors import (
    CapacityError,
    ConservationError,
    NotFoundError,
    StateError,
    ValidationError,
)


def new_request(conn, fleet, boards=10, **extra):
    fields = {"title": "Pine boards", "boards": boards,
              "start_location_id": fleet["yard"], "end_location_id": fleet["site"]}
    fields.update(extra)
    return scheduling.create_request(conn, fields)


def assert_consistent(conn, request_id):
    """Stored counters match the task rows and status follows the rule."""
    req = scheduling.get_request(conn, request_id)
    tasks = scheduling.tasks_for_request(conn, request_id)
    assert req["assigned_boards"] == sum(t["boards"] for t in tasks)
    assert req["completed_boards"] == sum(t["boards"] for t in tasks if t["status"] == "completed")
    if not tasks:
        assert req["status"] == "incoming"
    else:
        assert (req["status"] == "finished") == (req["completed_boards"] >= req["boards"])
    return req


class TestDeriveAggregates:

    def test_no_tasks_is_incoming(self):
        assert scheduling.derive_aggregates(10, []) == {
            "assigned_boards": 0, "completed_boards": 0, "status": "incoming"}

    def test_open_tasks_are_partially_assigned(self):
        tasks = [{"boards": 10, "status": "assigned"}]
        assert scheduling.derive_aggregates(10, tasks)["status"] == "partially_assigned"

    def test_completed_boards_reaching_total_is_finished(self):
        tasks = [{"boards": 6, "status": "completed"}, {"boards": 4, "status": "completed"}]
        result = scheduling.derive_aggregates(10, tasks)
        assert result == {"assigned_boards": 10, "completed_boards": 10, "status": "finished"}


class TestRequests:

    def test_create_starts_incoming(self, conn, fleet):
        req = new_request(conn, fleet)
        assert req["status"] == "incoming"
        assert req["assigned_boards"] == 0
        assert req["completed_boards"] == 0
        assert req["estimated_task_duration_minutes"] == scheduling.DEFAULT_TASK_DURATION

    @pytest.mark.parametrize("boards", [0, -3, 2.5, "ten", None, True, 2 ** 63, float("inf"), float("nan")])
    def test_create_rejects_bad_boards(self, conn, fleet, boards):
        with pytest.raises(ValidationError):
            new_request(conn, fleet, boards=boards)

    def test_create_rejects_zero_duration(self, conn, fleet):
        with pytest.raises(ValidationError):
            new_request(conn, fleet, estimated_task_duration_minutes=0)

    def test_create_rejects_unknown_location(self, conn, fleet):
        with pytest.raises(NotFoundError):
            new_request(conn, fleet, start_location_id=999)

    def test_update_without_tasks(self, conn, fleet):
        req = new_request(conn, fleet)
        updated = scheduling.update_request(conn, req["id"], {"boards": 12, "notes": "rush"})
        assert updated["boards"] == 12
        assert updated["notes"] == "rush"

    def test_update_and_delete_blocked_by_tasks(self, conn, fleet):
        req = new_request(conn, fleet)
        scheduling.assign_vehicles_to_request(conn, req["id"], [{"vehicle_id": fleet["v8"], "boards": 2}])
        with pytest.raises(StateError):
            scheduling.update_request(conn, req["id"], {"title": "Other"})
        with pytest.raises(StateError):
            scheduling.delete_request(conn, req["id"])

    def test_delete_without_tasks(self, conn, fleet):
        req = new_request(conn, fleet)
        assert scheduling.delete_request(conn, req["id"]) == {"ok": True}
        with pytest.raises(NotFoundError):
            scheduling.get_request(conn, req["id"])

    def test_list_requests_rejects_unknown_status(self, conn):
        with pytest.raises(ValidationError):
            scheduling.list_requests(conn, "lost")


class TestAssignment:

    def test_full_lifecycle(self, conn, fleet):
        req = new_request(conn, fleet, boards=10)
        rid = req["id"]

        result = scheduling.assign_vehicles_to_request(conn, rid, [{"vehicle_id": fleet["v8"], "boards": 6}])
        assert result["status"] == "partially_assigned"
        assert result["assigned_boards"] == 6
        first = result["task_ids"][0]

        scheduling.complete_task(conn, first)
        req = assert_consistent(conn, rid)
        assert req["completed_boards"] == 6
        assert req["status"] == "partially_assigned"

        second = scheduling.assign_vehicles_to_request(
            conn, rid, [{"vehicle_id": fleet["v8"], "boards": 4}])["task_ids"][0]
        req = assert_consistent(conn, rid)
        assert req["assigned_boards"] == 10

        scheduling.complete_task(conn, second)
        req = assert_consistent(conn, rid)
        assert req["completed_boards"] == 10
        assert req["status"] == "finished"

    def test_over_assignment_rejected_without_changes(self, conn, fleet):
        rid = new_request(conn, fleet, boards=10)["id"]
        scheduling.assign_vehicles_to_request(conn, rid, [{"vehicle_id": fleet["v8"], "boards": 6}])
        before = scheduling.get_request(conn, rid)

        with pytest.raises(ConservationError):
            scheduling.assign_vehicles_to_request(conn, rid, [{"vehicle_id": fleet["v12"], "boards": 9}])

        assert scheduling.get_request(conn, rid) == before
        assert len(scheduling.tasks_for_request(conn, rid)) == 1

    def test_batch_sum_over_total_inserts_nothing(self, conn, fleet):
        rid = new_request(conn, fleet, boards=10)["id"]
        with pytest.raises(ConservationError):
            scheduling.assign_vehicles_to_request(conn, rid, [
                {"vehicle_id": fleet["v8"], "boards": 6},
                {"vehicle_id": fleet["v8"], "boards": 6},
            ])
        assert scheduling.tasks_for_request(conn, rid) == []
        assert scheduling.get_request(conn, rid)["status"] == "incoming"

    def test_single_item_over_capacity_rejects_batch(self, conn, fleet):
        rid = new_request(conn, fleet, boards=20)["id"]
        with pytest.raises(CapacityError, match="V-8"):
            scheduling.assign_vehicles_to_request(conn, rid, [
                {"vehicle_id": fleet["v12"], "boards": 4},
                {"vehicle_id": fleet["v8"], "boards": 9},
            ])
        assert scheduling.tasks_for_request(conn, rid) == []

    def test_empty_batch(self, conn, fleet):
        rid = new_request(conn, fleet)["id"]
        with pytest.raises(ValidationError):
            scheduling.assign_vehicles_to_request(conn, rid, [])

    def test_non_positive_boards(self, conn, fleet):
        rid = new_request(conn, fleet)["id"]
        with pytest.raises(ValidationError):
            scheduling.assign_vehicles_to_request(conn, rid, [{"vehicle_id": fleet["v8"], "boards": 0}])

    def test_missing_vehicle_and_request(self, conn, fleet):
        rid = new_request(conn, fleet)["id"]
        with pytest.raises(NotFoundError, match="Vehicle"):
            scheduling.assign_vehicles_to_request(conn, rid, [{"vehicle_id": 404, "boards": 1}])
        with pytest.raises(NotFoundError, match="Request"):
            scheduling.assign_vehicles_to_request(conn, 404, [{"vehicle_id": fleet["v8"], "boards": 1}])

    def test_duration_defaults_to_request(self, conn, fleet):
        rid = new_request(conn, fleet, estimated_task_duration_minutes=45)["id"]
        ids = scheduling.assign_vehicles_to_request(conn, rid, [
            {"vehicle_id": fleet["v8"], "boards": 2},
            {"vehicle_id": fleet["v8"], "boards": 2, "estimated_duration_minutes": 90},
        ])["task_ids"]
        durations = [scheduling.get_task(conn, t)["estimated_duration_minutes"] for t in ids]
        assert durations == [45, 90]

    def test_batch_with_schedule(self, conn, fleet):
        rid = new_request(conn, fleet)["id"]
        tid = scheduling.assign_vehicles_to_request(conn, rid, [{
            "vehicle_id": fleet["v8"], "boards": 3, "scheduled_date": "2026-10-19",
            "scheduled_start_minute": 480, "scheduled_end_minute": 600, "scheduled_lane": 2,
        }])["task_ids"][0]
        task = scheduling.get_task(conn, tid)
        assert task["status"] == "assigned"
        assert (task["scheduled_start_minute"], task["scheduled_end_minute"], task["scheduled_lane"]) == (480, 600, 2)

    @pytest.mark.parametrize("slot", [
        {"scheduled_date": "2026-10-19"},
        {"scheduled_start_minute": 480, "scheduled_end_minute": 600},
        {"scheduled_date": "2026-10-19", "scheduled_start_minute": 480},
    ])
    def test_batch_rejects_partial_schedule(self, conn, fleet, slot):
        rid = new_request(conn, fleet)["id"]
        with pytest.raises(ValidationError, match="Schedule needs"):
            scheduling.assign_vehicles_to_request(conn, rid, [dict(vehicle_id=fleet["v8"], boards=3, **slot)])
        assert scheduling.tasks_for_request(conn, rid) == []

    def test_out_of_range_ids_are_not_found(self, conn, fleet):
        rid = new_request(conn, fleet)["id"]
        with pytest.raises(NotFoundError, match="Vehicle"):
            scheduling.assign_vehicles_to_request(conn, rid, [{"vehicle_id": 10 ** 20, "boards": 1}])
        with pytest.raises(NotFoundError, match="Request"):
            scheduling.get_request(conn, 10 ** 20)
        with pytest.raises(NotFoundError, match="Start location"):
            new_request(conn, fleet, start_location_id=10 ** 20)

    def test_batch_with_bad_schedule(self, conn, fleet):
        rid = new_request(conn, fleet)["id"]
        with pytest.raises(ValidationError):
            scheduling.assign_vehicles_to_request(conn, rid, [{
                "vehicle_id": fleet["v8"], "boards": 3,
                "scheduled_start_minute": 600, "scheduled_end_minute": 600,
            }])


class TestTasks:

    def test_create_task_without_vehicle_is_pending(self, conn, fleet):
        rid = new_request(conn, fleet)["id"]
        tid = scheduling.create_task(conn, {"request_id": rid, "boards": 3})
        assert scheduling.get_task(conn, tid)["status"] == "pending"
        assert assert_consistent(conn, rid)["status"] == "partially_assigned"

    def test_create_task_respects_request_total(self, conn, fleet):
        rid = new_request(conn, fleet, boards=5)["id"]
        with pytest.raises(ConservationError):
            scheduling.create_task(conn, {"request_id": rid, "boards": 6})

    def test_create_task_for_request_checks_capacity(self, conn, fleet):
        rid = new_request(conn, fleet, boards=20)["id"]
        with pytest.raises(CapacityError):
            scheduling.create_task_for_request(conn, {"request_id": rid, "vehicle_id": fleet["v8"], "boards": 9})
        tid = scheduling.create_task_for_request(conn, {"request_id": rid, "vehicle_id": fleet["v12"], "boards": 9})
        assert scheduling.get_task(conn, tid)["assigned_vehicle_id"] == fleet["v12"]
        assert assert_consistent(conn, rid)["assigned_boards"] == 9

    def test_assign_task_checks_capacity(self, conn, fleet):
        rid = new_request(conn, fleet, boards=20)["id"]
        tid = scheduling.create_task(conn, {"request_id": rid, "boards": 10})
        with pytest.raises(CapacityError):
            scheduling.assign_task_to_vehicle(conn, tid, fleet["v8"])
        scheduling.assign_task_to_vehicle(conn, tid, fleet["v12"])
        assert scheduling.get_task(conn, tid)["status"] == "assigned"

    def test_schedule_and_unschedule(self, conn, fleet):
        rid = new_request(conn, fleet)["id"]
        tid = scheduling.create_task(conn, {"request_id": rid, "boards": 4})
        scheduling.schedule_task(conn, tid, fleet["v8"], "2026-10-19", 420, 540, lane=1)
        task = scheduling.get_task(conn, tid)
        assert task["scheduled_date"] == "2026-10-19"
        assert task["scheduled_lane"] == 1
        assert task["status"] == "assigned"

        scheduling.unschedule_task(conn, tid)
        task = scheduling.get_task(conn, tid)
        assert task["scheduled_date"] is None
        assert task["scheduled_start_minute"] is None
        assert_consistent(conn, rid)

    @pytest.mark.parametrize("start,end", [(600, 600), (600, 540), (-5, 60), (1400, 1500)])
    def test_schedule_rejects_bad_range(self, conn, fleet, start, end):
        rid = new_request(conn, fleet)["id"]
        tid = scheduling.create_task(conn, {"request_id": rid, "boards": 4})
        with pytest.raises(ValidationError):
            scheduling.schedule_task(conn, tid, fleet["v8"], "2026-10-19", start, end)

    def test_schedule_rejects_bad_date(self, conn, fleet):
        rid = new_request(conn, fleet)["id"]
        tid = scheduling.create_task(conn, {"request_id": rid, "boards": 4})
        with pytest.raises(ValidationError):
            scheduling.schedule_task(conn, tid, fleet["v8"], "19/10/2026", 420, 480)

    def test_delete_open_task_recomputes(self, conn, fleet):
        rid = new_request(conn, fleet)["id"]
        tid = scheduling.create_task(conn, {"request_id": rid, "boards": 4})
        scheduling.delete_task(conn, tid)
        req = assert_consistent(conn, rid)
        assert req["status"] == "incoming"
        assert req["assigned_boards"] == 0

    def test_completed_task_is_terminal(self, conn, fleet):
        rid = new_request(conn, fleet)["id"]
        tid = scheduling.create_task_for_request(conn, {"request_id": rid, "vehicle_id": fleet["v8"], "boards": 4})
        scheduling.complete_task(conn, tid)
        with pytest.raises(StateError):
            scheduling.delete_task(conn, tid)
        with pytest.raises(StateError):
            scheduling.assign_task_to_vehicle(conn, tid, fleet["v12"])
        with pytest.raises(StateError):
            scheduling.schedule_task(conn, tid, fleet["v8"], "2026-10-19", 420, 480)
        assert scheduling.get_task(conn, tid)["status"] == "completed"

    def test_missing_task(self, conn):
        with pytest.raises(NotFoundError):
            scheduling.complete_task(conn, 12345)

    def test_counters_hold_after_every_mutation(self, conn, fleet):
        rid = new_request(conn, fleet, boards=30)["id"]
        a = scheduling.create_task(conn, {"request_id": rid, "boards": 5})
        assert_consistent(conn, rid)
        b = scheduling.create_task_for_request(conn, {"request_id": rid, "vehicle_id": fleet["v12"], "boards": 12})
        assert_consistent(conn, rid)
        scheduling.assign_task_to_vehicle(conn, a, fleet["v8"])
        assert_consistent(conn, rid)
        scheduling.schedule_task(conn, a, fleet["v8"], "2026-10-20", 400, 460)
        assert_consistent(conn, rid)
        scheduling.complete_task(conn, b)
        assert_consistent(conn, rid)
        scheduling.unschedule_task(conn, a)
        assert_consistent(conn, rid)
        scheduling.delete_task(conn, a)
        req = assert_consistent(conn, rid)
        assert (req["assigned_boards"], req["completed_boards"]) == (12, 12)
        assert req["status"] == "partially_assigned"


class TestListings:

    def test_pending_excludes_finished_and_orders_newest_first(self, conn, fleet):
        done = new_request(conn, fleet, boards=2, title="Done")["id"]
        older = new_request(conn, fleet, title="Older")["id"]
        newer = new_request(conn, fleet, title="Newer")["id"]
        tid = scheduling.create_task_for_request(conn, {"request_id": done, "vehicle_id": fleet["v8"], "boards": 2})
        scheduling.complete_task(conn, tid)
        scheduling.create_task(conn, {"request_id": older, "boards": 1})

        pending = scheduling.list_pending_requests_with_summary(conn)
        ids = [p["request"]["id"] for p in pending]
        assert ids == [older, newer]
        assert pending[0]["sum_assigned_boards"] == 1

    def test_pending_limit_is_clamped(self, conn, fleet):
        for _ in range(3):
            new_request(conn, fleet)
        assert len(scheduling.list_pending_requests_with_summary(conn, 0)) == 1
        assert len(scheduling.list_pending_requests_with_summary(conn, 10_000)) == 3

    @pytest.mark.parametrize("cursor", ["abc", "-1", -5, "1.5"])
    def test_finished_rejects_bad_cursor(self, conn, cursor):
        with pytest.raises(ValidationError, match="cursor"):
            scheduling.paginate_finished_requests_with_summary(conn, cursor)

    def test_finished_page_size_is_bounded(self, conn):
        page = scheduling.paginate_finished_requests_with_summary(conn, "0", 10 ** 20)
        assert page == {"page": [], "is_done": True, "continue_cursor": "0"}

    def test_paginate_finished(self, conn, fleet):
        for _ in range(3):
            rid = new_request(conn, fleet, boards=1)["id"]
            tid = scheduling.create_task_for_request(conn, {"request_id": rid, "vehicle_id": fleet["v8"], "boards": 1})
            scheduling.complete_task(conn, tid)

        first = scheduling.paginate_finished_requests_with_summary(conn, None, 2)
        assert len(first["page"]) == 2
        assert first["is_done"] is False
        rest = scheduling.paginate_finished_requests_with_summary(conn, first["continue_cursor"], 2)
        assert len(rest["page"]) == 1
        assert rest["is_done"] is True
        seen = {p["request"]["id"] for p in first["page"] + rest["page"]}
        assert len(seen) == 3

    def test_driver_tasks_follow_vehicle_driver(self, conn, fleet):
        rid = new_request(conn, fleet)["id"]
        tid = scheduling.create_task_for_request(conn, {
            "request_id": rid, "vehicle_id": fleet["v8"], "boards": 2,
            "scheduled_date": "2026-10-19", "scheduled_start_minute": 420, "scheduled_end_minute": 480,
        })
        assert [t["id"] for t in scheduling.list_driver_tasks(conn, fleet["driver_id"])] == [tid]
        assert scheduling.list_driver_tasks(conn, fleet["driver_id"], "2026-10-20") == []
        enriched = scheduling.enrich_tasks(conn, scheduling.list_tasks_by_date(conn, "2026-10-19"))
        assert enriched[0]["request"]["title"] == "Pine boards"
