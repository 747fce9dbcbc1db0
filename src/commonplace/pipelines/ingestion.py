"""Ingestion pipeline: validate, embed, and store highlights.

Why this exists:
- Keeps the embedding provider out of the entry store
- Rejects malformed input before paying for an embedding call
- Handles image highlights by describing them as text first

How to use:
    from commonplace.pipelines.ingestion import IngestionPipeline

    pipeline = IngestionPipeline(config, embedding_provider, store)
    entry = await pipeline.ingest_text("Some highlight", {"article": "...", "url": "..."})
"""

from typing import Any, Optional

from commonplace.config.schema import AppConfig
from commonplace.core.errors import ValidationError
from commonplace.entities import Entry, EntryMetadata
from commonplace.observability.logging import get_logger
from commonplace.providers.base import EmbeddingProvider, ProviderError
from commonplace.storage.base import EntryStore, validate_fields

logger = get_logger(__name__)


class IngestionPipeline:
    """Pipeline for adding highlights to the store."""

    def __init__(
        self,
        config: Optional[AppConfig],
        embedding_provider: EmbeddingProvider,
        store: EntryStore,
    ):
        """Initialize the ingestion pipeline.

        Args:
            config: Application configuration
            embedding_provider: Provider for embeddings and image descriptions
            store: Entry store to insert into
        """
        self.config = config
        self.embedding_provider = embedding_provider
        self.store = store

    async def ingest_text(
        self,
        content: Optional[str],
        metadata: Optional[EntryMetadata | dict[str, Any]],
    ) -> Entry:
        """Embed and store a text highlight.

        Args:
            content: Highlight text
            metadata: Source reference (article, url, optional section)

        Returns:
            The stored entry

        Raises:
            ValidationError: If content or metadata is missing or malformed
            ProviderError: If embedding fails or returns the wrong dimension;
                nothing is stored
            StorageError: If the store fails
        """
        content, metadata = validate_fields(content, metadata)

        logger.info("ingestion_started", article=metadata.article, content_length=len(content))
        embedding = await self.embedding_provider.embed_text(content)
        if len(embedding) != self.store.dimension:
            raise ProviderError(
                message=(
                    f"Provider returned a {len(embedding)}-dimensional embedding, "
                    f"store expects {self.store.dimension}"
                ),
                provider=self.embedding_provider.config.provider_type,
            )
        entry = await self.store.insert(content, metadata, embedding)

        logger.info("entry_inserted", entry_id=str(entry.id), article=metadata.article)
        return entry

    async def ingest_image(
        self,
        image_url: Optional[str],
        metadata: Optional[EntryMetadata | dict[str, Any]],
    ) -> Entry:
        """Describe an image as text, then embed and store it.

        The image URL is kept in the entry's metadata.

        Raises:
            ValidationError: If the URL or metadata is missing or malformed
            ProviderError: If description or embedding fails; nothing is stored
        """
        if not image_url or not image_url.strip():
            raise ValidationError("Missing image URL")
        # Content is not known yet; validate metadata on its own
        _, metadata = validate_fields(image_url, metadata)
        metadata = metadata.model_copy(update={"image_url": image_url})

        logger.info("image_ingestion_started", image_url=image_url, article=metadata.article)
        description = await self.embedding_provider.describe_image(image_url)

        return await self.ingest_text(description, metadata)
