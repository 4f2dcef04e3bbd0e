# apps/recommender/jobs.py
import json
from typing import Optional
from uuid import UUID

import redis

from config import settings
from domain import MEDIA_TYPES
from progress import ProgressStore

QUEUE_KEY = "q:recommendations"
DLQ_KEY = "dlq:recommendations"

JOB_KINDS = ("generate_all", "rebuild_all", "regenerate_user")

redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
progress_store = ProgressStore(redis_client)


def healthcheck() -> bool:
    return bool(redis_client.ping())


def _enqueue(kind: str, job_name: str, media_type: str, **extra) -> str:
    if media_type not in MEDIA_TYPES:
        raise ValueError(f"unknown media_type: {media_type!r}")
    total_steps = 2 if kind == "rebuild_all" else 1
    job_id = progress_store.create(job_name, total_steps=total_steps)["job_id"]
    payload = {"job_id": job_id, "kind": kind, "media_type": media_type, **extra}
    redis_client.lpush(QUEUE_KEY, json.dumps(payload))
    return job_id


def enqueue_generate_all(media_type: str = "movie") -> str:
    return _enqueue("generate_all", f"generate-{media_type}-recommendations", media_type)


def enqueue_rebuild_all(media_type: str = "movie") -> str:
    return _enqueue("rebuild_all", f"rebuild-{media_type}-recommendations", media_type)


def enqueue_regenerate_user(user_id: UUID, media_type: str = "movie") -> str:
    return _enqueue(
        "regenerate_user",
        f"regenerate-{media_type}-recommendations",
        media_type,
        user_id=str(user_id),
    )


def request_cancel(job_id: str) -> bool:
    return progress_store.request_cancel(job_id)


def get_progress(job_id: str) -> Optional[dict]:
    return progress_store.get(job_id)
