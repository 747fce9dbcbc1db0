"""Embedding provider interface.

A provider turns highlight text into vectors of a fixed dimension and, where
it can, turns an image into text first. Register new providers in
``commonplace.providers._REGISTRY``.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from pydantic import BaseModel, Field

from commonplace.config.schema import EmbeddingConfig
from commonplace.core.errors import UpstreamError


class ProviderConfig(BaseModel):
    """Settings handed to a provider; built from ``EmbeddingConfig``."""

    provider_type: str
    model_name: str
    api_key: Optional[str] = None
    dimension: Optional[int] = None
    vision_model: Optional[str] = None
    extra_params: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_embedding_config(cls, config: EmbeddingConfig) -> "ProviderConfig":
        return cls(
            provider_type=config.provider.value,
            model_name=config.model_name,
            api_key=config.api_key,
            dimension=config.dimension,
            vision_model=config.vision_model,
            extra_params=dict(config.extra_params),
        )


class EmbeddingProvider(ABC):
    """Text embedding plus optional image description."""

    def __init__(self, config: ProviderConfig) -> None:
        """Initialize provider with configuration."""
        self.config = config

    @abstractmethod
    async def embed_text(self, text: str) -> list[float]:
        """Generate embedding for a single text.

        Args:
            text: Input text to embed

        Returns:
            Embedding vector

        Raises:
            ProviderError: If embedding generation fails
        """
        pass

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts.

        Raises:
            ProviderError: If embedding generation fails
        """
        pass

    @abstractmethod
    async def describe_image(self, image_url: str) -> str:
        """Describe or transcribe an image as plain text.

        Args:
            image_url: Publicly reachable image URL

        Returns:
            Text to store as the entry content

        Raises:
            ProviderError: If the image cannot be described
        """
        pass

    @abstractmethod
    def get_dimension(self) -> int:
        """Return the embedding dimension for this model."""
        pass

    async def close(self) -> None:
        """Release client resources."""
        pass

    async def __aenter__(self) -> "EmbeddingProvider":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


class ProviderError(UpstreamError):
    """An embedding or vision backend failed."""

    def __init__(self, message: str, provider: str, original_error: Optional[Exception] = None):
        self.provider = provider
        super().__init__(message, original_error=original_error)
