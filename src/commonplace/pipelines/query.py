"""Query pipeline: semantic search over stored highlights.

How to use:
    from commonplace.pipelines.query import QueryPipeline

    pipeline = QueryPipeline(embedding_provider, index)
    results = await pipeline.search("attention is all you need", k=5)
"""

from commonplace.core.errors import ValidationError
from commonplace.core.similarity import SimilarityIndex
from commonplace.entities import SearchResult
from commonplace.observability.logging import get_logger
from commonplace.providers.base import EmbeddingProvider

logger = get_logger(__name__)


class QueryPipeline:
    """Embeds query text and ranks entries against it."""

    def __init__(self, embedding_provider: EmbeddingProvider, index: SimilarityIndex):
        self.embedding_provider = embedding_provider
        self.index = index

    async def search(self, query: str, k: int = 10) -> list[SearchResult]:
        """Perform semantic search.

        Args:
            query: Search text
            k: Number of results to return

        Returns:
            Search results, most similar first

        Raises:
            ValidationError: If the query is empty or k < 1
            ProviderError: If the query cannot be embedded
        """
        if not query or not query.strip():
            raise ValidationError("Missing query")
        if k < 1:
            raise ValidationError(f"k must be >= 1, got {k}")

        logger.info("search_started", query=query, k=k)
        query_vector = await self.embedding_provider.embed_text(query)
        results = await self.index.search(query_vector, k)

        logger.info("search_completed", query=query, result_count=len(results))
        return results
