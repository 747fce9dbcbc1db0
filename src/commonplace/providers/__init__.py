"""Provider abstractions: embedding and image description backends."""

import importlib

from commonplace.providers.base import EmbeddingProvider, ProviderConfig, ProviderError

# provider_type -> (module, class, pip extra)
_REGISTRY = {
    "openai": ("commonplace.providers.openai", "OpenAIEmbeddingProvider", "openai"),
    "local": ("commonplace.providers.local", "LocalEmbeddingProvider", "local"),
}


def create_embedding_provider(config: ProviderConfig) -> EmbeddingProvider:
    """Instantiate the embedding provider named by ``config.provider_type``.

    Provider modules are imported on demand, so the optional SDKs are only
    needed for the provider actually configured.

    Raises:
        ValueError: If provider_type is unknown
        ProviderError: If the provider's dependencies are missing or it fails to start

    Example:
        provider = create_embedding_provider(
            ProviderConfig(provider_type="local", model_name="all-MiniLM-L6-v2")
        )
    """
    provider_type = config.provider_type.lower()
    if provider_type not in _REGISTRY:
        raise ValueError(
            f"Unknown embedding provider type: '{provider_type}'. "
            f"Supported types: {', '.join(sorted(_REGISTRY))}"
        )

    module_name, class_name, extra = _REGISTRY[provider_type]
    try:
        provider_cls = getattr(importlib.import_module(module_name), class_name)
    except ImportError as e:
        raise ProviderError(
            message=f"The {provider_type} provider is not installed: pip install 'commonplace[{extra}]'",
            provider=provider_type,
            original_error=e,
        )
    return provider_cls(config)


__all__ = [
    "EmbeddingProvider",
    "ProviderConfig",
    "ProviderError",
    "create_embedding_provider",
]
