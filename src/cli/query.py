"""QueryEngine — semantic search over indexed thread summaries for the CLI."""

from src.processing.inference import InferenceClient
from src.storage.vector_store import ChromaVectorStore, SearchResult


class QueryEngine:
    """Embeds a free-text query and looks it up in the thread summary index.

    Uses the same embedding model the pipeline used when it stored the
    summaries, so query and index vectors are comparable.

    Usage::

        engine = QueryEngine(inference, thread_index)
        results = await engine.search("budget dispute")
    """

    def __init__(self, inference: InferenceClient, thread_index: ChromaVectorStore) -> None:
        self.inference = inference
        self.thread_index = thread_index

    def close(self) -> None:
        """Release underlying store resources."""
        self.thread_index.close()

    async def search(self, query: str, n: int = 10) -> list[SearchResult]:
        """Return the ``n`` thread summaries closest to ``query``."""
        if not query.strip() or self.thread_index.count() == 0:
            return []
        embedding = await self.inference.embed(query)
        if not embedding:
            return []
        return self.thread_index.search(embedding, n_results=n)
