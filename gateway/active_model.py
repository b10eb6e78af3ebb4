import logging
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .catalog import ModelCatalog, ModelCatalogEntry

logger = logging.getLogger("uvicorn.error")


class NoActiveModelError(Exception):
    def __init__(self, message: str = "no active model available"):
        super().__init__(message)


class ModelNotFoundError(Exception):
    def __init__(self, model_id: Any):
        super().__init__(f"model {model_id} not found")
        self.model_id = model_id


class ModelUnavailableError(Exception):
    def __init__(self, model_id: Any):
        super().__init__(f"model {model_id} is not available")
        self.model_id = model_id


class RegistryState(str, Enum):
    UNSET = "unset"
    SELECTING = "selecting"
    SET = "set"


ActiveModel = Tuple[ModelCatalogEntry, Dict[str, Any]]


class ActiveModelRegistry:
    """The single process-wide active model slot.

    Reads are unlocked: a caller racing an operator change may see the
    previous model or config, never a mix of the two.
    """

    def __init__(self, catalog: ModelCatalog, primary_provider: str = "gemini"):
        self.catalog = catalog
        self.primary_provider = primary_provider
        self.state = RegistryState.UNSET
        self._model_id: Optional[int] = None
        self._config: Dict[str, Any] = {}

    @property
    def active_model_id(self) -> Optional[int]:
        return self._model_id

    def clear(self) -> None:
        self.state = RegistryState.UNSET
        self._model_id = None
        self._config = {}

    async def _select_default(self) -> Optional[ModelCatalogEntry]:
        self.state = RegistryState.SELECTING
        entry = await self.catalog.first_available(self.primary_provider)
        if entry is None:
            entry = await self.catalog.first_available()
        if entry is None:
            self.clear()
            return None
        self._model_id, self._config = entry.id, dict(entry.default_config)
        self.state = RegistryState.SET
        logger.info("Active model defaulted to %s/%s (id=%s)", entry.provider, entry.name, entry.id)
        return entry

    async def _resolve_current(self) -> Optional[ModelCatalogEntry]:
        if self.state != RegistryState.SET or self._model_id is None:
            return await self._select_default()
        entry = await self.catalog.get(self._model_id)
        if entry is None or not entry.is_available:
            return None
        return entry

    async def get_active_model(self) -> ActiveModel:
        entry = await self._resolve_current()
        if entry is None and self.state == RegistryState.SET:
            logger.warning("Active model id=%s is no longer available; selecting a new default", self._model_id)
            self.clear()
            entry = await self._select_default()
        if entry is None:
            raise NoActiveModelError()
        return entry, dict(self._config)

    async def set_active_model(self, model_id: int, config: Optional[Dict[str, Any]] = None) -> ActiveModel:
        entry = await self.catalog.get(model_id)
        if entry is None:
            raise ModelNotFoundError(model_id)
        if not entry.is_available:
            raise ModelUnavailableError(model_id)
        effective = dict(config) if config else dict(entry.default_config)
        self._model_id, self._config = entry.id, effective
        self.state = RegistryState.SET
        logger.info("Active model set to %s/%s (id=%s)", entry.provider, entry.name, entry.id)
        return entry, dict(effective)

    async def update_active_model_config(self, config: Dict[str, Any]) -> ActiveModel:
        entry, _ = await self.get_active_model()
        self._config = dict(config)
        return entry, dict(self._config)
