from datetime import datetime, timedelta, timezone

import pytest

from gateway.catalog import ModelCatalog
from gateway.catalog_sync import CatalogSynchronizer
from gateway.providers import ProviderModelInfo
from tests.fakes import FakeProvider

T0 = datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)


def info(model_id: str, label: str | None = None, **kwargs) -> ProviderModelInfo:
    return ProviderModelInfo(id=model_id, label=label or model_id, **kwargs)


@pytest.fixture
async def catalog(tmp_path):
    cat = ModelCatalog(str(tmp_path / "catalog.db"))
    await cat.init()
    return cat


@pytest.mark.asyncio
async def test_new_models_are_added_with_inferred_capabilities(catalog):
    gemini = FakeProvider("gemini", models=[info("gemini-2.0-flash", "Gemini 2.0 Flash"), info("text-bison")])
    sync = CatalogSynchronizer(catalog, {"gemini": gemini})
    [report] = await sync.synchronize_all(now=T0)
    assert report.added == 2
    assert report.seen == 2
    entry = await catalog.find_by_name("gemini", "gemini-2.0-flash")
    assert entry.is_available is True
    assert entry.last_seen_at == T0
    assert entry.capabilities.web_search is True
    # Known default models contribute their config when the provider sends none.
    assert entry.default_config["maxOutputTokens"] == 8192
    plain = await catalog.find_by_name("gemini", "text-bison")
    assert plain.label == "text-bison"
    assert plain.default_config == {}


@pytest.mark.asyncio
async def test_missing_model_survives_grace_period_then_is_deactivated(catalog):
    provider = FakeProvider("openai", models=[info("gpt-4o"), info("gpt-4o-mini")])
    sync = CatalogSynchronizer(catalog, {"openai": provider}, grace_period_hours=72)
    await sync.synchronize_all(now=T0)

    provider.models = [info("gpt-4o")]
    missing_at = T0 + timedelta(hours=1)
    [report] = await sync.synchronize_all(now=missing_at)
    assert report.marked_missing == 1
    entry = await catalog.find_by_name("openai", "gpt-4o-mini")
    assert entry.is_available is True
    assert entry.marked_as_missing_since == missing_at

    [report] = await sync.synchronize_all(now=missing_at + timedelta(hours=71, minutes=59, seconds=59))
    assert report.deactivated == 0
    entry = await catalog.find_by_name("openai", "gpt-4o-mini")
    assert entry.is_available is True
    assert entry.marked_as_missing_since == missing_at

    [report] = await sync.synchronize_all(now=missing_at + timedelta(hours=72, seconds=1))
    assert report.deactivated == 1
    entry = await catalog.find_by_name("openai", "gpt-4o-mini")
    assert entry.is_available is False
    assert entry.marked_as_missing_since == missing_at


@pytest.mark.asyncio
async def test_exactly_at_grace_period_stays_available(catalog):
    provider = FakeProvider("openai", models=[info("gpt-4o"), info("gpt-4o-mini")])
    sync = CatalogSynchronizer(catalog, {"openai": provider}, grace_period_hours=72)
    await sync.synchronize_all(now=T0)
    provider.models = [info("gpt-4o")]
    await sync.synchronize_all(now=T0)
    await sync.synchronize_all(now=T0 + timedelta(hours=72))
    entry = await catalog.find_by_name("openai", "gpt-4o-mini")
    assert entry.is_available is True


@pytest.mark.asyncio
async def test_reappearing_model_is_reactivated(catalog):
    provider = FakeProvider("anthropic", models=[info("claude-a"), info("claude-b")])
    sync = CatalogSynchronizer(catalog, {"anthropic": provider}, grace_period_hours=1)
    await sync.synchronize_all(now=T0)
    provider.models = [info("claude-a")]
    await sync.synchronize_all(now=T0)
    await sync.synchronize_all(now=T0 + timedelta(hours=2))
    assert (await catalog.find_by_name("anthropic", "claude-b")).is_available is False

    provider.models = [info("claude-a"), info("claude-b")]
    later = T0 + timedelta(hours=3)
    [report] = await sync.synchronize_all(now=later)
    assert report.reactivated == 1
    entry = await catalog.find_by_name("anthropic", "claude-b")
    assert entry.is_available is True
    assert entry.marked_as_missing_since is None
    assert entry.last_seen_at == later


@pytest.mark.asyncio
async def test_second_identical_sync_changes_nothing(catalog):
    provider = FakeProvider("openai", models=[info("gpt-4o", "GPT-4o"), info("o3-mini")])
    sync = CatalogSynchronizer(catalog, {"openai": provider})
    await sync.synchronize_all(now=T0)
    before = [e.to_dict() for e in await catalog.list_all()]
    [report] = await sync.synchronize_all(now=T0)
    assert report.changed is False
    after = [e.to_dict() for e in await catalog.list_all()]
    assert before == after


@pytest.mark.asyncio
async def test_label_and_config_changes_are_applied(catalog):
    provider = FakeProvider("openai", models=[info("gpt-4o", "GPT-4o")])
    sync = CatalogSynchronizer(catalog, {"openai": provider})
    await sync.synchronize_all(now=T0)
    provider.models = [info("gpt-4o", "GPT-4o (new)", default_config={"temperature": 0.3})]
    [report] = await sync.synchronize_all(now=T0 + timedelta(minutes=5))
    assert report.updated == 1
    entry = await catalog.find_by_name("openai", "gpt-4o")
    assert entry.label == "GPT-4o (new)"
    assert entry.default_config == {"temperature": 0.3}


@pytest.mark.asyncio
async def test_failing_or_empty_provider_does_not_touch_catalog(catalog):
    await catalog.create(provider="openai", name="gpt-4o", last_seen_at=T0)
    await catalog.create(provider="anthropic", name="claude-a", last_seen_at=T0)
    adapters = {
        "gemini": FakeProvider("gemini", models=[info("gemini-2.0-flash")]),
        "openai": FakeProvider("openai", list_error=RuntimeError("listing exploded")),
        "anthropic": FakeProvider("anthropic", models=[]),
    }
    sync = CatalogSynchronizer(catalog, adapters)
    reports = {r.provider: r for r in await sync.synchronize_all(now=T0 + timedelta(days=10))}

    assert reports["gemini"].added == 1
    assert reports["openai"].skipped is True
    assert "listing exploded" in reports["openai"].error
    assert reports["anthropic"].skipped is True
    assert reports["anthropic"].error is None

    for provider, name in (("openai", "gpt-4o"), ("anthropic", "claude-a")):
        entry = await catalog.find_by_name(provider, name)
        assert entry.is_available is True
        assert entry.marked_as_missing_since is None


@pytest.mark.asyncio
async def test_seed_defaults_only_fills_empty_catalog(catalog):
    seeded = await catalog.seed_defaults()
    assert seeded > 0
    assert await catalog.seed_defaults() == 0
    entries = await catalog.list_all()
    assert len(entries) == seeded
    assert {e.provider for e in entries} == {"gemini", "openai", "anthropic"}
