# apps/recommender/worker.py
import os
import json
import uuid
import time
import threading
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Response

from config import settings
from db import healthcheck as db_health
from embedding_index import OpenSearchEmbeddingStore, ensure_index
from explanations import ExplanationGenerator
from health import collect_health_status
from jobs import QUEUE_KEY, DLQ_KEY, JOB_KINDS, redis_client, progress_store, healthcheck as cache_health
from orchestrator import RecommendationOrchestrator

logging.basicConfig(level=logging.INFO)
log = logging.getLogger("worker")

app = FastAPI(title="Recommendation Worker")

_stop_event = threading.Event()
_orchestrator: Optional[RecommendationOrchestrator] = None


def get_orchestrator() -> RecommendationOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = RecommendationOrchestrator(
            OpenSearchEmbeddingStore(),
            progress_store,
            explainer=ExplanationGenerator(),
        )
    return _orchestrator


def _lock_key(media_type: str) -> str:
    return f"lock:recommendations:{media_type}"


def acquire_lock(media_type: str, worker_id: str, ttl_ms: int) -> bool:
    try:
        ok = redis_client.set(_lock_key(media_type), worker_id, nx=True, px=ttl_ms)
        return bool(ok)
    except Exception:
        log.exception("acquire_lock_failed")
        return False


def release_lock(media_type: str, worker_id: str) -> None:
    try:
        val = redis_client.get(_lock_key(media_type))
        if val == worker_id:
            redis_client.delete(_lock_key(media_type))
    except Exception:
        log.exception("release_lock_failed")


def _run_kind(orch: RecommendationOrchestrator, data: Dict[str, Any]) -> Dict[str, Any]:
    job_id = data["job_id"]
    kind = data["kind"]
    media_type = data.get("media_type") or "movie"

    if kind == "generate_all":
        return orch.generate_for_all_users(job_id, media_type=media_type)
    if kind == "rebuild_all":
        return orch.clear_and_rebuild_all(job_id, media_type=media_type)

    # regenerate_user has no batch wrapper, so the job record is driven here
    progress = orch.progress
    progress.start(job_id)
    try:
        result = orch.regenerate(uuid.UUID(data["user_id"]), media_type=media_type)
    except Exception as e:
        progress.fail(job_id, str(e))
        raise
    summary = {"run_id": str(result["run_id"]), "count": result["count"]}
    progress.complete(job_id, summary)
    return summary


def process_job(data: Dict[str, Any], orch: Optional[RecommendationOrchestrator] = None) -> None:
    job_id = data.get("job_id")
    kind = data.get("kind")
    if not job_id or kind not in JOB_KINDS:
        log.warning(json.dumps({"step": "load", "error": "invalid_payload", "payload": data}))
        return
    orch = orch or get_orchestrator()
    media_type = data.get("media_type") or "movie"

    worker_id = f"pid:{os.getpid()}-thr:{threading.get_ident()}"
    if not acquire_lock(media_type, worker_id, settings.worker_lock_ttl_ms):
        log.info(json.dumps({"job_id": job_id, "step": "lock_skip", "reason": "already_running"}))
        orch.progress.fail(job_id, f"another {media_type} recommendation job is running")
        return

    t0 = time.time()
    log.info(json.dumps({"job_id": job_id, "step": "job_start", "kind": kind, "media_type": media_type}))
    try:
        summary = _run_kind(orch, data)
        dt = int((time.time() - t0) * 1000)
        log.info(
            json.dumps(
                {"job_id": job_id, "step": "job_done", "duration_ms": dt, "result": summary},
                default=str,
            )
        )
    except Exception as e:
        log.exception("process_job_failed")
        try:
            redis_client.lpush(
                DLQ_KEY,
                json.dumps({**data, "error": str(e), "ts": int(time.time())}),
            )
            redis_client.ltrim(DLQ_KEY, 0, 9999)
        except Exception:
            log.exception("dlq_push_failed")
        log.error(json.dumps({"job_id": job_id, "step": "failed_terminal", "error": str(e)}))
    finally:
        release_lock(media_type, worker_id)


def _consumer_loop():
    log.info("Worker consumer started")
    while not _stop_event.is_set():
        try:
            item = redis_client.brpop(QUEUE_KEY, timeout=5)
            if not item:
                continue
            _q, payload = item
            process_job(json.loads(payload))
        except Exception:
            log.exception("worker_loop_error")
            time.sleep(1)


@app.on_event("startup")
def on_startup():
    ensure_index()
    t = threading.Thread(target=_consumer_loop, daemon=True)
    t.start()


@app.on_event("shutdown")
def on_shutdown():
    _stop_event.set()


@app.get("/ready")
def ready(response: Response):
    """
    Kubernetes readiness/liveness probe.
    Returns 200 if healthy, 503 if not.
    """
    ok_db = True
    ok_cache = True
    try:
        db_health()
    except Exception:
        ok_db = False
    try:
        cache_health()
    except Exception:
        ok_cache = False

    is_ok = ok_db and ok_cache
    if not is_ok:
        response.status_code = 503

    return {"ok": is_ok, "db": ok_db, "cache": ok_cache}


@app.get("/healthz")
def healthz(response: Response):
    status = collect_health_status()
    if not status["ok"]:
        response.status_code = 503
    return status
