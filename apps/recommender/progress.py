# apps/recommender/progress.py
from __future__ import annotations

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, Optional

import redis

from config import settings

log = logging.getLogger("jobs.progress")

JOB_STATUSES = ("idle", "running", "completed", "failed", "cancelled")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _progress_key(job_id: str) -> str:
    return f"job:progress:{job_id}"


def _channel(job_id: str) -> str:
    return f"job:events:{job_id}"


def _cancel_key(job_id: str) -> str:
    return f"job:cancel:{job_id}"


def _pct(done: float, total: float) -> float:
    if total <= 0:
        return 0.0
    return round(min(100.0, max(0.0, done / total * 100.0)), 2)


class ProgressStore:
    """
    Job progress snapshots kept in redis. Every change is written to
    ``job:progress:<id>`` and published on ``job:events:<id>``; terminal
    snapshots expire after a TTL. Once a job reaches a terminal status
    further updates are ignored.
    """

    def __init__(self, client: redis.Redis):
        self.redis = client

    # -- reads --

    def get(self, job_id: str) -> Optional[Dict[str, Any]]:
        raw = self.redis.get(_progress_key(job_id))
        if not raw:
            return None
        return json.loads(raw)

    def is_terminal(self, job_id: str) -> bool:
        snapshot = self.get(job_id)
        return bool(snapshot and snapshot.get("status") in TERMINAL_STATUSES)

    # -- lifecycle --

    def create(
        self, job_name: str, *, job_id: Optional[str] = None, total_steps: int = 1
    ) -> Dict[str, Any]:
        job_id = job_id or str(uuid.uuid4())
        snapshot = {
            "job_id": job_id,
            "job_name": job_name,
            "status": "idle",
            "started_at": None,
            "completed_at": None,
            "current_step": None,
            "current_step_index": 0,
            "total_steps": max(1, int(total_steps)),
            "step_progress": 0.0,
            "overall_progress": 0.0,
            "items_processed": 0,
            "items_total": 0,
            "current_item": None,
            "logs": [],
            "error": None,
            "result": None,
        }
        self._save(snapshot)
        return snapshot

    def start(
        self, job_id: str, job_name: Optional[str] = None, *, total_steps: Optional[int] = None
    ) -> Dict[str, Any]:
        def apply(s: Dict[str, Any]) -> None:
            s["status"] = "running"
            s["started_at"] = s.get("started_at") or _now()
            if total_steps:
                s["total_steps"] = max(1, int(total_steps))
            if job_name:
                s["job_name"] = job_name

        if self.get(job_id) is None:
            self.create(job_name or "job", job_id=job_id, total_steps=total_steps or 1)
        return self._mutate(job_id, apply)

    def set_step(self, job_id: str, index: int, name: str) -> Optional[Dict[str, Any]]:
        def apply(s: Dict[str, Any]) -> None:
            s["current_step"] = name
            s["current_step_index"] = index
            s["step_progress"] = 0.0
            self._recompute(s)

        return self._mutate(job_id, apply)

    def update_items(
        self,
        job_id: str,
        processed: int,
        total: int,
        current_item: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        def apply(s: Dict[str, Any]) -> None:
            s["items_processed"] = processed
            s["items_total"] = total
            s["current_item"] = current_item
            s["step_progress"] = _pct(processed, total)
            self._recompute(s)

        return self._mutate(job_id, apply)

    def log(
        self,
        job_id: str,
        level: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        log.log(_LOG_LEVELS.get(level, logging.INFO), "job=%s %s", job_id, message)

        def apply(s: Dict[str, Any]) -> None:
            entry = {"timestamp": _now(), "level": level, "message": message}
            if data:
                entry["data"] = data
            logs = s.get("logs") or []
            logs.append(entry)
            s["logs"] = logs[-settings.progress_log_limit :]

        return self._mutate(job_id, apply)

    def complete(
        self, job_id: str, result: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        def apply(s: Dict[str, Any]) -> None:
            s["status"] = "completed"
            s["completed_at"] = _now()
            s["result"] = result
            s["step_progress"] = 100.0
            s["overall_progress"] = 100.0

        return self._mutate(job_id, apply)

    def fail(self, job_id: str, error: str) -> Optional[Dict[str, Any]]:
        def apply(s: Dict[str, Any]) -> None:
            s["status"] = "failed"
            s["completed_at"] = _now()
            s["error"] = error

        return self._mutate(job_id, apply)

    def cancel(
        self, job_id: str, result: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        def apply(s: Dict[str, Any]) -> None:
            s["status"] = "cancelled"
            s["completed_at"] = _now()
            s["result"] = result

        snapshot = self._mutate(job_id, apply)
        self.redis.delete(_cancel_key(job_id))
        return snapshot

    # -- cancellation flag --

    def request_cancel(self, job_id: str) -> bool:
        if self.get(job_id) is None or self.is_terminal(job_id):
            return False
        self.redis.set(_cancel_key(job_id), "1", ex=settings.progress_failed_ttl_seconds)
        self.log(job_id, "warn", "Cancellation requested")
        return True

    def is_cancel_requested(self, job_id: str) -> bool:
        return bool(self.redis.exists(_cancel_key(job_id)))

    # -- streaming --

    def subscribe(
        self, job_id: str, timeout: Optional[float] = None, poll_interval: float = 1.0
    ) -> Iterator[Dict[str, Any]]:
        """
        Yield the current snapshot, then every published snapshot, until a
        terminal status is seen or ``timeout`` seconds pass without one.
        """
        pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(_channel(job_id))
        deadline = time.monotonic() + timeout if timeout is not None else None
        try:
            current = self.get(job_id)
            if current is not None:
                yield current
                if current.get("status") in TERMINAL_STATUSES:
                    return
            while deadline is None or time.monotonic() < deadline:
                message = pubsub.get_message(timeout=poll_interval)
                if not message or message.get("type") != "message":
                    continue
                snapshot = json.loads(message["data"])
                yield snapshot
                if snapshot.get("status") in TERMINAL_STATUSES:
                    return
        finally:
            pubsub.close()

    # -- internals --

    def _recompute(self, s: Dict[str, Any]) -> None:
        total_steps = max(1, int(s.get("total_steps") or 1))
        done = int(s.get("current_step_index") or 0) + float(s.get("step_progress") or 0) / 100.0
        s["overall_progress"] = _pct(done, total_steps)

    def _mutate(
        self, job_id: str, apply: Callable[[Dict[str, Any]], None]
    ) -> Optional[Dict[str, Any]]:
        """
        Read-modify-write under WATCH. ``apply`` is re-run on a fresh read
        when another writer touched the snapshot in between.
        """
        key = _progress_key(job_id)
        with self.redis.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if not raw:
                        log.warning("progress_unknown_job job_id=%s", job_id)
                        return None
                    snapshot = json.loads(raw)
                    if snapshot.get("status") in TERMINAL_STATUSES:
                        log.warning(
                            "progress_update_after_terminal job_id=%s status=%s",
                            job_id,
                            snapshot.get("status"),
                        )
                        return snapshot
                    apply(snapshot)
                    pipe.multi()
                    self._write(pipe, snapshot)
                    pipe.execute()
                    return snapshot
                except redis.WatchError:
                    log.debug("progress_write_conflict job_id=%s", job_id)
                    continue

    def _save(self, snapshot: Dict[str, Any]) -> None:
        self._write(self.redis, snapshot)

    def _write(self, conn: Any, snapshot: Dict[str, Any]) -> None:
        job_id = snapshot["job_id"]
        payload = json.dumps(snapshot, default=str)
        status = snapshot.get("status")
        if status == "completed":
            conn.set(_progress_key(job_id), payload, ex=settings.progress_completed_ttl_seconds)
        elif status in ("failed", "cancelled"):
            conn.set(_progress_key(job_id), payload, ex=settings.progress_failed_ttl_seconds)
        else:
            conn.set(_progress_key(job_id), payload)
        conn.publish(_channel(job_id), payload)
