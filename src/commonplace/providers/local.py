"""Local embedding provider using sentence-transformers.

Highlights are embedded on this machine; nothing is sent to an API. The
model is loaded once when the provider is created and released on close.

Image highlights are not supported: there is no local vision model, so
``describe_image`` always fails and the caller should configure the OpenAI
provider for them.
"""

import asyncio
from typing import Any, Optional

import structlog

from commonplace.providers.base import EmbeddingProvider, ProviderConfig, ProviderError

logger = structlog.get_logger(__name__)


# Known output sizes; other models report theirs after loading
MODEL_DIMENSIONS = {
    "all-MiniLM-L6-v2": 384,
    "all-MiniLM-L12-v2": 384,
    "all-mpnet-base-v2": 768,
    "multi-qa-MiniLM-L6-cos-v1": 384,
    "paraphrase-multilingual-MiniLM-L12-v2": 384,
}


class LocalEmbeddingProvider(EmbeddingProvider):
    """sentence-transformers embeddings, L2-normalized.

    ``extra_params`` are passed to ``SentenceTransformer`` (for example
    ``{"device": "cpu"}``).
    """

    def __init__(self, config: ProviderConfig) -> None:
        super().__init__(config)
        self.model_name = config.model_name
        self._model: Optional[Any] = None

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise ProviderError(
                message="sentence-transformers not installed: pip install 'commonplace[local]'",
                provider="local",
                original_error=e,
            )

        logger.info("loading_local_embedding_model", model_name=self.model_name)
        try:
            self._model = SentenceTransformer(self.model_name, **config.extra_params)
            native = MODEL_DIMENSIONS.get(self.model_name)
            if native is None:
                native = self._model.get_sentence_embedding_dimension()
        except Exception as e:
            raise ProviderError(
                message=f"Failed to load model '{self.model_name}': {e}",
                provider="local",
                original_error=e,
            )

        # Every stored vector must match the configured dimension
        if config.dimension and config.dimension != native:
            raise ProviderError(
                message=(
                    f"Model '{self.model_name}' produces {native}-dimensional embeddings, "
                    f"but embedding.dimension is {config.dimension}"
                ),
                provider="local",
            )
        self._dimension: Optional[int] = native
        logger.info("local_embedding_model_loaded", model_name=self.model_name, dimension=native)

    async def _encode(self, texts: list[str]) -> list[list[float]]:
        for i, text in enumerate(texts):
            if not text or not text.strip():
                raise ProviderError(message=f"Cannot embed empty text at index {i}", provider="local")
        if self._model is None:
            raise ProviderError(message="Model not initialized", provider="local")

        try:
            vectors = await asyncio.to_thread(
                self._model.encode,
                texts,
                convert_to_numpy=True,
                normalize_embeddings=True,
                show_progress_bar=False,
            )
        except Exception as e:
            raise ProviderError(
                message=f"Failed to generate embeddings: {e}",
                provider="local",
                original_error=e,
            )
        return vectors.tolist()

    async def embed_text(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise ProviderError(message="Cannot embed empty text", provider="local")
        (vector,) = await self._encode([text])
        logger.debug("generated_embedding", text_length=len(text))
        return vector

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        vectors = await self._encode(texts)
        logger.info("generated_batch_embeddings", batch_size=len(texts))
        return vectors

    async def describe_image(self, image_url: str) -> str:
        raise ProviderError(
            message="Image description is not supported by the local provider; use openai",
            provider="local",
        )

    def get_dimension(self) -> int:
        if self._dimension is None:
            raise ProviderError(message="Model not initialized", provider="local")
        return self._dimension

    async def close(self) -> None:
        if self._model is not None:
            logger.info("closing_local_embedding_provider", model_name=self.model_name)
        self._model = None
        self._dimension = None
