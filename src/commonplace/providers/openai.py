"""OpenAI provider: embeddings API for text, a vision chat model for images.

Image highlights (screenshots, photos of a page) are transcribed or
described by ``vision_model`` and the reply is stored and embedded as the
entry's content.
"""

import os
from typing import Any, Optional, Union

import structlog

from commonplace.providers.base import EmbeddingProvider, ProviderConfig, ProviderError

logger = structlog.get_logger(__name__)


EMBEDDING_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

DEFAULT_MODEL = "text-embedding-3-small"
DEFAULT_VISION_MODEL = "gpt-4o-mini"

# Inputs per embeddings request
MAX_BATCH_SIZE = 2048

IMAGE_PROMPT = (
    "Transcribe any text in this image exactly. If there is no text, "
    "describe the image in a few sentences. Reply with the text only."
)


def _resolve_api_key(configured: Optional[str]) -> Optional[str]:
    """``configured`` may be the key or the name of a variable holding it."""
    if configured and os.getenv(configured):
        return os.getenv(configured)
    return configured or os.getenv("OPENAI_API_KEY")


def _wrap_error(e: Exception, action: str) -> ProviderError:
    """Classify an SDK exception into a ProviderError."""
    detail = str(e)
    lowered = detail.lower()

    if "authentication" in lowered or "api_key" in lowered:
        message = f"OpenAI authentication failed: {detail}"
    elif "rate_limit" in lowered or "rate limit" in lowered:
        message = f"OpenAI rate limit exceeded: {detail}"
    elif "connection" in lowered or "network" in lowered:
        message = f"Network error connecting to OpenAI: {detail}"
    else:
        message = f"Failed to {action}: {detail}"
    return ProviderError(message=message, provider="openai", original_error=e)


def _reject_blank(texts: list[str]) -> None:
    for i, text in enumerate(texts):
        if not text or not text.strip():
            raise ProviderError(message=f"Cannot embed empty text at index {i}", provider="openai")


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embeddings and image descriptions through ``openai.AsyncOpenAI``.

    ``extra_params`` go to the client constructor (``base_url``,
    ``timeout``, ``organization``). When ``dimension`` is smaller than the
    model's native size, text-embedding-3 models are asked to shorten their
    output.
    """

    def __init__(self, config: ProviderConfig) -> None:
        super().__init__(config)

        api_key = _resolve_api_key(config.api_key)
        if not api_key:
            raise ProviderError(
                message="API key is required (set embedding.api_key or OPENAI_API_KEY)",
                provider="openai",
            )

        self.model_name = config.model_name or DEFAULT_MODEL
        self.vision_model = config.vision_model or DEFAULT_VISION_MODEL

        native = EMBEDDING_DIMENSIONS.get(self.model_name)
        if native is None:
            logger.warning(
                "unknown_openai_model",
                model_name=self.model_name,
                known_models=sorted(EMBEDDING_DIMENSIONS),
            )
            native = 1536
        self._dimension = config.dimension or native

        self._request_options: dict[str, Any] = {"model": self.model_name}
        if self._dimension != native and self.model_name.startswith("text-embedding-3"):
            self._request_options["dimensions"] = self._dimension

        try:
            from openai import AsyncOpenAI
        except ImportError as e:
            raise ProviderError(
                message="openai package not installed: pip install 'commonplace[openai]'",
                provider="openai",
                original_error=e,
            )

        try:
            self.client = AsyncOpenAI(api_key=api_key, **config.extra_params)
        except Exception as e:
            raise ProviderError(
                message=f"Could not create OpenAI client: {e}",
                provider="openai",
                original_error=e,
            )

        logger.info(
            "openai_provider_ready",
            model_name=self.model_name,
            vision_model=self.vision_model,
            dimension=self._dimension,
        )

    async def _create_embeddings(self, inputs: Union[str, list[str]]) -> tuple[list[list[float]], int]:
        response = await self.client.embeddings.create(input=inputs, **self._request_options)
        usage = getattr(response, "usage", None)
        tokens = usage.total_tokens if usage else 0
        return [item.embedding for item in response.data], tokens

    async def embed_text(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise ProviderError(message="Cannot embed empty text", provider="openai")

        try:
            vectors, tokens = await self._create_embeddings(text)
        except Exception as e:
            raise _wrap_error(e, "generate embedding")

        logger.debug("openai_text_embedded", text_length=len(text), tokens=tokens)
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed ``texts`` in order, ``MAX_BATCH_SIZE`` inputs per request."""
        if not texts:
            return []
        _reject_blank(texts)

        vectors: list[list[float]] = []
        tokens = 0
        try:
            for start in range(0, len(texts), MAX_BATCH_SIZE):
                chunk, used = await self._create_embeddings(texts[start : start + MAX_BATCH_SIZE])
                vectors.extend(chunk)
                tokens += used
        except Exception as e:
            raise _wrap_error(e, "generate batch embeddings")

        logger.info("openai_batch_embedded", count=len(texts), tokens=tokens)
        return vectors

    async def describe_image(self, image_url: str) -> str:
        """Transcribe or describe the image at ``image_url``.

        Raises:
            ProviderError: If the URL is empty, the call fails or the reply is empty
        """
        if not image_url or not image_url.strip():
            raise ProviderError(message="Cannot describe empty image URL", provider="openai")

        content = [
            {"type": "text", "text": IMAGE_PROMPT},
            {"type": "image_url", "image_url": {"url": image_url}},
        ]
        try:
            response = await self.client.chat.completions.create(
                model=self.vision_model,
                messages=[{"role": "user", "content": content}],
            )
            text = response.choices[0].message.content
        except Exception as e:
            raise _wrap_error(e, "describe image")

        if not text or not text.strip():
            raise ProviderError(
                message=f"Vision model returned no text for {image_url}",
                provider="openai",
            )

        logger.info("openai_image_described", model=self.vision_model, text_length=len(text))
        return text.strip()

    def get_dimension(self) -> int:
        return self._dimension

    async def close(self) -> None:
        logger.debug("openai_provider_closed", model_name=self.model_name)
        await self.client.close()
