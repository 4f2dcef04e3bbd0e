# apps/recommender/embedding_index.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple
from urllib.parse import urlparse
from uuid import UUID

from opensearchpy import OpenSearch
from opensearchpy.exceptions import NotFoundError

from config import settings

log = logging.getLogger("embedding_index")

_client: Optional[OpenSearch] = None
_index_ready = False

Neighbor = Tuple[UUID, float]


class EmbeddingStore(Protocol):
    def get_embedding(self, item_id: UUID) -> Optional[List[float]]: ...

    def get_embeddings(self, item_ids: Sequence[UUID]) -> Dict[UUID, List[float]]: ...

    def nearest_neighbors(
        self,
        vector: Sequence[float],
        *,
        limit: int,
        media_type: Optional[str] = None,
        library_ids: Optional[Sequence[str]] = None,
        item_ids: Optional[Sequence[UUID]] = None,
    ) -> List[Neighbor]: ...


def _build_client() -> Optional[OpenSearch]:
    url = settings.opensearch_url
    if not url:
        log.warning("No OPENSEARCH_URL configured")
        return None

    parsed = urlparse(url)
    scheme = parsed.scheme or "http"
    host = parsed.hostname or "localhost"
    port = parsed.port or (443 if scheme == "https" else 9200)
    use_ssl = scheme == "https"

    http_auth = None
    if settings.opensearch_username:
        http_auth = (settings.opensearch_username, settings.opensearch_password or "")

    try:
        client = OpenSearch(
            hosts=[{"host": host, "port": port, "scheme": scheme}],
            http_auth=http_auth,
            use_ssl=use_ssl,
            verify_certs=use_ssl,
            ssl_show_warn=False,
            retry_on_timeout=True,
            max_retries=3,
        )
        if not client.ping():
            log.error("Failed to ping OpenSearch at %s", url)
            return None
        log.info("OpenSearch connected: %s", url)
        return client
    except Exception as exc:
        log.error("Failed to connect to OpenSearch at %s: %s", url, exc)
        return None


def get_client() -> Optional[OpenSearch]:
    global _client
    if _client is None:
        _client = _build_client()
    return _client


def ensure_index() -> None:
    global _index_ready
    client = get_client()
    if not client:
        log.warning("OpenSearch not available, skipping index setup")
        return
    if _index_ready:
        return
    try:
        _ensure_embeddings_index(client)
        _index_ready = True
    except Exception as exc:
        log.error("Failed to ensure OpenSearch index: %s", exc)


def _ensure_embeddings_index(client: OpenSearch) -> None:
    index = settings.embeddings_index
    if client.indices.exists(index=index):
        return
    body = {
        "settings": {
            "number_of_shards": 1,
            "number_of_replicas": 0,
            "refresh_interval": "1s",
            "index": {"knn": True},
        },
        "mappings": {
            "properties": {
                "item_id": {"type": "keyword"},
                "media_type": {"type": "keyword"},
                "library_id": {"type": "keyword"},
                "embedding": {
                    "type": "knn_vector",
                    "dimension": settings.embedding_dimensions,
                    "method": {
                        "name": "hnsw",
                        "space_type": "cosinesimil",
                        "engine": "lucene",
                    },
                },
            }
        },
    }
    try:
        client.indices.create(index=index, body=body)
        log.info("Created OpenSearch index %s", index)
    except Exception as exc:
        if client.indices.exists(index=index):
            return
        raise exc


def _to_vector(raw: Any) -> Optional[List[float]]:
    if not isinstance(raw, (list, tuple)) or not raw:
        return None
    return [float(x) for x in raw]


def build_knn_filter(
    *,
    media_type: Optional[str] = None,
    library_ids: Optional[Sequence[str]] = None,
    item_ids: Optional[Sequence[UUID]] = None,
) -> Optional[Dict[str, Any]]:
    """Scope clauses evaluated inside the k-NN search, not after it."""
    clauses: List[Dict[str, Any]] = []
    if media_type:
        clauses.append({"term": {"media_type": media_type}})
    if library_ids is not None:
        clauses.append({"terms": {"library_id": [str(x) for x in library_ids]}})
    if item_ids is not None:
        clauses.append({"ids": {"values": [str(x) for x in item_ids]}})
    if not clauses:
        return None
    return {"bool": {"filter": clauses}}


class OpenSearchEmbeddingStore:
    """Read side of the item embedding index owned by the embedding pipeline."""

    def __init__(self, client: Optional[OpenSearch] = None, index: Optional[str] = None):
        self._client = client
        self.index = index or settings.embeddings_index

    @property
    def client(self) -> OpenSearch:
        client = self._client or get_client()
        if client is None:
            raise RuntimeError("embedding index unavailable: no OpenSearch client")
        return client

    def get_embedding(self, item_id: UUID) -> Optional[List[float]]:
        try:
            doc = self.client.get(index=self.index, id=str(item_id), _source=["embedding"])
        except NotFoundError:
            return None
        return _to_vector((doc.get("_source") or {}).get("embedding"))

    def get_embeddings(self, item_ids: Sequence[UUID]) -> Dict[UUID, List[float]]:
        if not item_ids:
            return {}
        unique_ids = list(dict.fromkeys(str(x) for x in item_ids))
        response = self.client.mget(
            index=self.index, body={"ids": unique_ids}, _source=["embedding"]
        )
        embeddings: Dict[UUID, List[float]] = {}
        for doc in response.get("docs", []):
            if not doc or not doc.get("found"):
                continue
            vector = _to_vector((doc.get("_source") or {}).get("embedding"))
            if vector is None:
                continue
            embeddings[UUID(str(doc.get("_id")))] = vector
        return embeddings

    def nearest_neighbors(
        self,
        vector: Sequence[float],
        *,
        limit: int,
        media_type: Optional[str] = None,
        library_ids: Optional[Sequence[str]] = None,
        item_ids: Optional[Sequence[UUID]] = None,
    ) -> List[Neighbor]:
        if limit <= 0:
            return []
        if library_ids is not None and len(library_ids) == 0:
            return []
        if item_ids is not None and len(item_ids) == 0:
            return []

        k = min(int(limit), settings.knn_max_results)
        knn: Dict[str, Any] = {"vector": [float(x) for x in vector], "k": k}
        knn_filter = build_knn_filter(
            media_type=media_type, library_ids=library_ids, item_ids=item_ids
        )
        if knn_filter:
            knn["filter"] = knn_filter

        body = {
            "size": k,
            "track_total_hits": False,
            "_source": False,
            "query": {"knn": {"embedding": knn}},
        }
        response = self.client.search(
            index=self.index,
            body=body,
            request_timeout=settings.opensearch_timeout_seconds,
        )
        hits = response.get("hits", {}).get("hits", [])

        neighbors: List[Neighbor] = []
        for hit in hits:
            raw_id = hit.get("_id")
            if not raw_id:
                continue
            # lucene cosinesimil scores are (1 + cos) / 2
            similarity = 2.0 * float(hit.get("_score") or 0.0) - 1.0
            neighbors.append((UUID(str(raw_id)), similarity))
        return neighbors


def healthcheck() -> bool:
    client = get_client()
    return bool(client and client.ping())
