# apps/recommender/health.py
from __future__ import annotations

import logging
from typing import Any, Dict

from config import settings
from db import healthcheck as db_healthcheck
from embedding_index import get_client
from jobs import healthcheck as cache_healthcheck

log = logging.getLogger("health")


def check_database() -> Dict[str, Any]:
    """Check if database connection is working."""
    try:
        db_healthcheck()
        return {"ok": True}
    except Exception as e:
        log.warning("Database health check failed: %s", e)
        return {"ok": False, "error": str(e)}


def check_cache() -> Dict[str, Any]:
    """Check if Redis (queue and job progress) is working."""
    try:
        if not cache_healthcheck():
            raise RuntimeError("Redis ping returned falsy response")
        return {"ok": True}
    except Exception as e:
        log.warning("Cache health check failed: %s", e)
        return {"ok": False, "error": str(e)}


def check_embedding_index() -> Dict[str, Any]:
    """Check that OpenSearch is reachable and the embeddings index exists."""
    url = (settings.opensearch_url or "").strip()
    if not url:
        return {"ok": False, "error": "OpenSearch URL not configured"}

    try:
        client = get_client()
        if not client:
            raise RuntimeError("OpenSearch client unavailable")
        if not client.ping():
            raise RuntimeError("OpenSearch ping failed")
        if not client.indices.exists(index=settings.embeddings_index):
            raise RuntimeError(f"Index '{settings.embeddings_index}' does not exist")
        cluster = client.cluster.health()
        status = cluster.get("status") if isinstance(cluster, dict) else "unknown"
        return {"ok": True, "status": status, "index": settings.embeddings_index}
    except Exception as e:
        log.warning("Embedding index health check failed: %s", e)
        return {"ok": False, "error": str(e)}


def collect_health_status() -> Dict[str, Any]:
    """
    Run all health checks and return overall status.

    Every check is required: without the embedding index no run can
    retrieve candidates.
    """
    database = check_database()
    cache = check_cache()
    index = check_embedding_index()

    overall_ok = all([
        database.get("ok", False),
        cache.get("ok", False),
        index.get("ok", False),
    ])

    return {
        "ok": overall_ok,
        "checks": {
            "database": database,
            "cache": cache,
            "embedding_index": index,
        },
    }
