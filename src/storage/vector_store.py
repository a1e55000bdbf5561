"""ChromaDB vector store for message and thread summary embeddings."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import chromadb
from chromadb.utils import embedding_functions

logger = logging.getLogger(__name__)

_DEFAULT_CHROMA_DIR = Path("data/chroma")
MESSAGES_COLLECTION = "messages"
THREADS_COLLECTION = "threads"


# ── Record types ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class VectorRecord:
    """One stored embedding.  Metadata values must be str, int, float or bool."""

    id: str
    embedding: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SearchResult:
    """A single result from a vector similarity search."""

    id: str
    distance: float
    metadata: dict[str, Any]


@runtime_checkable
class VectorStore(Protocol):
    """Key-value store of ``id → (embedding, metadata)`` used by the pipeline."""

    def get_by_ids(self, ids: list[str]) -> list[VectorRecord]:
        """Return the stored records for whichever of ``ids`` exist."""
        ...

    def upsert(self, records: list[VectorRecord]) -> None:
        """Insert or overwrite records keyed by id."""
        ...


# ── Store ───────────────────────────────────────────────────────────────────────


class ChromaVectorStore:
    """ChromaDB-backed store for pre-computed embeddings.

    Embeddings are produced by the inference client and passed in explicitly,
    so the collection's embedding function is only used for text queries.
    The summary text is stored as the document to keep entries readable.

    Usage::

        store = ChromaVectorStore(collection_name="threads")
        store.upsert([VectorRecord("thread_1", vector, {"summary": "..."})])
        records = store.get_by_ids(["thread_1"])
    """

    def __init__(
        self,
        persist_dir: str | Path = _DEFAULT_CHROMA_DIR,
        collection_name: str = THREADS_COLLECTION,
        embedding_function: Any = None,
    ) -> None:
        Path(persist_dir).mkdir(parents=True, exist_ok=True)
        self._client = chromadb.PersistentClient(path=str(persist_dir))
        ef = embedding_function or embedding_functions.DefaultEmbeddingFunction()
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            embedding_function=ef,  # type: ignore[arg-type]
        )

    def close(self) -> None:
        """Release ChromaDB resources (important on Windows where files stay locked)."""
        try:
            self._client._system.stop()
        except Exception:  # noqa: BLE001
            pass

    # ── Write ───────────────────────────────────────────────────────────────────

    def upsert(self, records: list[VectorRecord]) -> None:
        """Store records.  Calling again with the same id overwrites the entry."""
        if not records:
            return
        self._collection.upsert(
            ids=[r.id for r in records],
            embeddings=[list(r.embedding) for r in records],  # type: ignore[arg-type]
            metadatas=[r.metadata for r in records],  # type: ignore[arg-type]
            documents=[str(r.metadata.get("summary", "")) for r in records],
        )
        logger.debug("Upserted %d vector(s) into %s", len(records), self._collection.name)

    # ── Read ────────────────────────────────────────────────────────────────────

    def get_by_ids(self, ids: list[str]) -> list[VectorRecord]:
        """Return records for the ids that exist; unknown ids are skipped."""
        if not ids:
            return []
        raw = self._collection.get(ids=ids, include=["embeddings", "metadatas"])
        return _parse_records(raw)

    def count(self) -> int:
        return self._collection.count()

    def search(self, embedding: list[float], n_results: int = 10) -> list[SearchResult]:
        """Return the n_results entries nearest to ``embedding``."""
        count = self._collection.count()
        if count == 0:
            return []
        results = self._collection.query(
            query_embeddings=[list(embedding)],  # type: ignore[arg-type]
            n_results=min(n_results, count),
        )
        return _parse_results(results)


# ── Helpers ─────────────────────────────────────────────────────────────────────


def _parse_records(raw: Any) -> list[VectorRecord]:
    """Convert a ChromaDB ``get`` result into VectorRecords.

    Embeddings may come back as numpy arrays, so they are never tested for
    truthiness directly.
    """
    ids: list[str] = list(raw["ids"])
    embeddings = raw.get("embeddings")
    if embeddings is None:
        embeddings = [[] for _ in ids]
    metadatas = raw.get("metadatas") or [None for _ in ids]
    return [
        VectorRecord(
            id=rid,
            embedding=[float(x) for x in emb] if emb is not None else [],
            metadata=dict(meta or {}),
        )
        for rid, emb, meta in zip(ids, embeddings, metadatas)
    ]


def _parse_results(raw: Any) -> list[SearchResult]:
    """Convert a raw ChromaDB query result dict into SearchResult objects."""
    ids: list[str] = raw["ids"][0]
    distances: list[float] = raw["distances"][0]
    metadatas: list[dict[str, Any]] = raw["metadatas"][0]
    return [
        SearchResult(id=rid, distance=dist, metadata=dict(meta or {}))
        for rid, dist, meta in zip(ids, distances, metadatas)
    ]
