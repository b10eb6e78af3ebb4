"""Reconciles the local model catalog with each provider's live listing.

Models that vanish from a listing are not removed: they are stamped with
`marked_as_missing_since` and only flipped to unavailable once they have
stayed missing for longer than the grace period. Seeing a model again
clears the stamp and reactivates it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from .capabilities import ModelCapabilities, infer_capabilities
from .catalog import ModelCatalog, ModelCatalogEntry, utc_now
from .catalog_defaults import get_default_model_details
from .providers import ProviderAdapter, ProviderModelInfo

logger = logging.getLogger("uvicorn.error")


@dataclass
class SyncReport:
    provider: str
    seen: int = 0
    added: int = 0
    updated: int = 0
    reactivated: int = 0
    marked_missing: int = 0
    deactivated: int = 0
    skipped: bool = False
    error: Optional[str] = None
    changes: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.reactivated or self.marked_missing or self.deactivated)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "seen": self.seen,
            "added": self.added,
            "updated": self.updated,
            "reactivated": self.reactivated,
            "marked_missing": self.marked_missing,
            "deactivated": self.deactivated,
            "skipped": self.skipped,
            "error": self.error,
            "changes": list(self.changes),
        }


class CatalogSynchronizer:
    def __init__(
        self,
        catalog: ModelCatalog,
        adapters: Mapping[str, ProviderAdapter],
        grace_period_hours: float = 72.0,
    ):
        self.catalog = catalog
        self.adapters = adapters
        self.grace_period = timedelta(hours=grace_period_hours)

    async def synchronize_all(self, now: Optional[datetime] = None) -> List[SyncReport]:
        reports: List[SyncReport] = []
        for provider in self.adapters:
            reports.append(await self.synchronize_provider(provider, now=now))
        return reports

    async def synchronize_provider(self, provider: str, now: Optional[datetime] = None) -> SyncReport:
        report = SyncReport(provider=provider)
        adapter = self.adapters[provider]
        try:
            remote = await adapter.list_models()
            if not remote:
                # An empty listing is indistinguishable from an outage; leave the catalog alone.
                report.skipped = True
                logger.warning("Model sync: %s returned no models; skipping this provider", provider)
                return report
            await self._reconcile(provider, remote, now or utc_now(), report)
        except Exception as exc:
            report.skipped = True
            report.error = str(exc)
            logger.error("Model sync for %s failed: %s", provider, exc)
            return report
        logger.log(
            logging.INFO if report.changed else logging.DEBUG,
            "Model sync %s: seen=%s added=%s updated=%s reactivated=%s missing=%s deactivated=%s",
            provider,
            report.seen,
            report.added,
            report.updated,
            report.reactivated,
            report.marked_missing,
            report.deactivated,
        )
        return report

    async def _reconcile(
        self,
        provider: str,
        remote: List[ProviderModelInfo],
        now: datetime,
        report: SyncReport,
    ) -> None:
        seen_names = set()
        for info in remote:
            if info.id in seen_names:
                continue
            seen_names.add(info.id)
            report.seen += 1
            existing = await self.catalog.find_by_name(provider, info.id)
            if existing is None:
                await self._create(provider, info, now)
                report.added += 1
                report.changes.append(f"added {info.id}")
            else:
                await self._refresh(existing, info, now, report)

        for entry in await self.catalog.find_by_provider(provider):
            if entry.name in seen_names:
                continue
            if entry.marked_as_missing_since is None:
                await self.catalog.update(entry.id, marked_as_missing_since=now)
                report.marked_missing += 1
                report.changes.append(f"missing {entry.name}")
            elif entry.is_available and now - entry.marked_as_missing_since > self.grace_period:
                await self.catalog.update(entry.id, is_available=False)
                report.deactivated += 1
                report.changes.append(f"deactivated {entry.name}")
                logger.info("Model %s/%s deactivated after the grace period", provider, entry.name)

    def _capabilities(self, provider: str, info: ProviderModelInfo) -> ModelCapabilities:
        return infer_capabilities(provider, info.id, info.capabilities, info.input_modalities)

    async def _create(self, provider: str, info: ProviderModelInfo, now: datetime) -> ModelCatalogEntry:
        inferred = self._capabilities(provider, info)
        defaults = get_default_model_details(provider, info.id)
        capabilities = inferred
        if defaults:
            capabilities = inferred.merged_over(ModelCapabilities.from_dict(defaults["capabilities"]))
        default_config = info.default_config or (defaults or {}).get("default_config") or {}
        label = info.label or (defaults or {}).get("label") or info.id
        return await self.catalog.create(
            provider=provider,
            name=info.id,
            label=label,
            capabilities=capabilities,
            default_config=dict(default_config),
            is_available=True,
            last_seen_at=now,
            marked_as_missing_since=None,
        )

    async def _refresh(self, entry: ModelCatalogEntry, info: ProviderModelInfo, now: datetime, report: SyncReport) -> None:
        changes: Dict[str, Any] = {"last_seen_at": now, "marked_as_missing_since": None}
        content_changed = False
        if info.label and info.label != entry.label:
            changes["label"] = info.label
            content_changed = True
        capabilities = self._capabilities(entry.provider, info)
        defaults = get_default_model_details(entry.provider, entry.name)
        if defaults:
            capabilities = capabilities.merged_over(ModelCapabilities.from_dict(defaults["capabilities"]))
        if capabilities != entry.capabilities:
            changes["capabilities"] = capabilities
            content_changed = True
        if info.default_config and info.default_config != entry.default_config:
            changes["default_config"] = dict(info.default_config)
            content_changed = True
        if not entry.is_available:
            changes["is_available"] = True
            report.reactivated += 1
            report.changes.append(f"reactivated {entry.name}")
            logger.info("Model %s/%s is listed again; reactivated", entry.provider, entry.name)
        elif entry.marked_as_missing_since is not None:
            report.changes.append(f"returned {entry.name}")
        if content_changed:
            report.updated += 1
            report.changes.append(f"updated {entry.name}")
        await self.catalog.update(entry.id, **changes)
