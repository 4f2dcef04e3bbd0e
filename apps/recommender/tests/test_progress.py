# apps/recommender/tests/test_progress.py
import json

import pytest

from config import settings


def test_lifecycle_and_percentages(progress):
    snapshot = progress.create("generate-movie-recommendations", job_id="j1", total_steps=2)
    assert snapshot["status"] == "idle"

    progress.start("j1")
    progress.set_step("j1", 1, "Generating")
    updated = progress.update_items("j1", 1, 4, "alice (1/4)")
    assert updated["status"] == "running"
    assert updated["step_progress"] == 25.0
    assert updated["overall_progress"] == pytest.approx(62.5)
    assert updated["current_item"] == "alice (1/4)"

    done = progress.complete("j1", {"success": 4, "failed": 0})
    assert done["status"] == "completed"
    assert done["overall_progress"] == 100.0
    assert progress.get("j1")["result"] == {"success": 4, "failed": 0}


def test_terminal_states_are_final(progress):
    progress.create("job", job_id="j2")
    progress.start("j2")
    progress.fail("j2", "boom")

    progress.complete("j2", {"success": 1})
    progress.update_items("j2", 5, 5)
    snapshot = progress.get("j2")
    assert snapshot["status"] == "failed"
    assert snapshot["error"] == "boom"
    assert snapshot["items_processed"] == 0


def test_terminal_snapshots_expire(progress, redis_conn):
    progress.create("job", job_id="j3")
    assert redis_conn.ttl("job:progress:j3") == -1
    progress.complete("j3")
    assert 0 < redis_conn.ttl("job:progress:j3") <= settings.progress_completed_ttl_seconds

    progress.create("job", job_id="j4")
    progress.fail("j4", "x")
    assert settings.progress_completed_ttl_seconds < redis_conn.ttl("job:progress:j4") <= settings.progress_failed_ttl_seconds


def test_logs_are_capped(progress, monkeypatch):
    monkeypatch.setattr(settings, "progress_log_limit", 3)
    progress.create("job", job_id="j5")
    for i in range(5):
        progress.log("j5", "info", f"line {i}", {"i": i})
    logs = progress.get("j5")["logs"]
    assert [entry["message"] for entry in logs] == ["line 2", "line 3", "line 4"]
    assert logs[-1]["data"] == {"i": 4}


def test_cancel_flag(progress):
    assert progress.request_cancel("missing") is False

    progress.create("job", job_id="j6")
    progress.start("j6")
    assert progress.request_cancel("j6") is True
    assert progress.is_cancel_requested("j6")

    progress.cancel("j6", {"success": 0})
    assert progress.get("j6")["status"] == "cancelled"
    assert not progress.is_cancel_requested("j6")
    assert progress.request_cancel("j6") is False


def test_updates_are_published(progress, redis_conn):
    pubsub = redis_conn.pubsub(ignore_subscribe_messages=True)
    pubsub.subscribe("job:events:j7")
    progress.create("job", job_id="j7")
    progress.start("j7")

    messages = []
    for _ in range(10):
        message = pubsub.get_message(timeout=0.1)
        if message:
            messages.append(json.loads(message["data"]))
    assert [m["status"] for m in messages] == ["idle", "running"]


def test_subscribe_streams_until_terminal(progress):
    progress.create("job", job_id="j8")
    stream = progress.subscribe("j8", timeout=5, poll_interval=0.05)

    assert next(stream)["status"] == "idle"
    progress.start("j8")
    progress.update_items("j8", 1, 2, "bob")
    progress.complete("j8")

    rest = list(stream)
    assert [s["status"] for s in rest] == ["running", "running", "completed"]
    assert rest[1]["current_item"] == "bob"


def test_subscribe_to_finished_job_yields_once(progress):
    progress.create("job", job_id="j9")
    progress.complete("j9")
    assert [s["status"] for s in progress.subscribe("j9", timeout=1)] == ["completed"]


def test_concurrent_writer_is_not_overwritten(progress, redis_conn):
    from progress import ProgressStore

    job_id = progress.create("generate-movie-recommendations")["job_id"]
    progress.start(job_id)
    api_side = ProgressStore(redis_conn)
    attempts = []

    def apply(snapshot):
        attempts.append(1)
        if len(attempts) == 1:
            # lands between the worker's read and its write
            api_side.log(job_id, "warn", "Cancellation requested")
        snapshot["items_processed"] = 5

    progress._mutate(job_id, apply)

    snapshot = progress.get(job_id)
    assert len(attempts) == 2
    assert snapshot["items_processed"] == 5
    assert [entry["message"] for entry in snapshot["logs"]] == ["Cancellation requested"]
