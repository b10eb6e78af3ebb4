import logging
from typing import Callable, Dict, Optional

from .active_model import ActiveModelRegistry, NoActiveModelError
from .catalog import ModelCatalogEntry
from .providers import ProviderAdapter

logger = logging.getLogger("uvicorn.error")

AdapterFactory = Callable[[], ProviderAdapter]


class ProviderRouter:
    """Maps a catalog entry (or the active model) to the adapter serving its provider."""

    def __init__(
        self,
        factories: Dict[str, AdapterFactory],
        registry: ActiveModelRegistry,
        default_provider: str = "gemini",
    ):
        if default_provider not in factories:
            raise ValueError(f"default provider {default_provider!r} has no adapter")
        self.factories = factories
        self.registry = registry
        self.default_provider = default_provider
        self._cache: Dict[str, ProviderAdapter] = {}

    @property
    def providers(self) -> list:
        return list(self.factories)

    def for_provider(self, provider: Optional[str]) -> ProviderAdapter:
        key = provider if provider in self.factories else None
        if key is None:
            logger.warning("Unknown provider %r; falling back to %s", provider, self.default_provider)
            key = self.default_provider
        adapter = self._cache.get(key)
        if adapter is None:
            adapter = self.factories[key]()
            self._cache[key] = adapter
        return adapter

    async def resolve(self, model: Optional[ModelCatalogEntry] = None) -> ProviderAdapter:
        if model is None:
            try:
                model, _ = await self.registry.get_active_model()
            except NoActiveModelError:
                return self.for_provider(self.default_provider)
        return self.for_provider(model.provider)

    def streaming_adapter(self, preferred: Optional[str] = None) -> ProviderAdapter:
        """The preferred provider when it can stream, else the first one that can."""
        if preferred in self.factories:
            adapter = self.for_provider(preferred)
            if adapter.supports_streaming():
                return adapter
        for provider in self.factories:
            adapter = self.for_provider(provider)
            if adapter.supports_streaming():
                return adapter
        raise LookupError("no provider supports streaming")

    def cached_adapters(self) -> Dict[str, ProviderAdapter]:
        return dict(self._cache)

    def reset(self) -> None:
        self._cache.clear()
