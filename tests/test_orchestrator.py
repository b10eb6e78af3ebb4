import pytest

from gateway.active_model import ActiveModelRegistry, NoActiveModelError
from gateway.catalog import ModelCatalog
from gateway.db import Database
from gateway.orchestrator import ConversationNotFound, ResponseOrchestrator, format_search_results
from gateway.provider_router import ProviderRouter
from gateway.schemas import GroundedReply, GroundingMetadata, GroundingSource, error_reply
from tests.fakes import FakeProvider, FakeTavilyClient


class ExplodingProvider(FakeProvider):
    async def generate_response(self, *args, **kwargs):
        raise RuntimeError("adapter bug")


async def build(tmp_path, providers=None, tavily=None, active=("gemini", "gemini-2.0-flash"), default_config=None):
    db = Database(str(tmp_path / "app.db"))
    await db.init()
    catalog = ModelCatalog(str(tmp_path / "app.db"))
    await catalog.init()
    providers = providers or {
        "gemini": FakeProvider("gemini", native_grounding=True, streaming=True),
        "openai": FakeProvider("openai"),
    }
    registry = ActiveModelRegistry(catalog)
    if active:
        entry = await catalog.create(
            provider=active[0], name=active[1], default_config=default_config or {"temperature": 0.7}
        )
        await registry.set_active_model(entry.id)
    router = ProviderRouter({name: (lambda p=p: p) for name, p in providers.items()}, registry)
    tavily = tavily or FakeTavilyClient()
    orchestrator = ResponseOrchestrator(
        db, registry, router, search_client=tavily, default_system_prompt="Default prompt."
    )
    return orchestrator, db, providers, tavily


def test_format_search_results():
    text = format_search_results(
        [
            {"title": "First", "snippet": "one", "link": "https://a.test"},
            {"title": "", "snippet": "", "link": "https://b.test"},
        ]
    )
    assert text == "1. First\n   one\n   https://a.test\n2. https://b.test\n   https://b.test"


@pytest.mark.asyncio
async def test_send_message_persists_user_and_bot_messages(tmp_path):
    orchestrator, db, providers, _ = await build(tmp_path)
    convo = await db.create_conversation(title="Chat")
    messages = await orchestrator.send_message(convo["id"], "Hello?")
    assert [(m["role"], m["content"]) for m in messages] == [("user", "Hello?"), ("assistant", "reply from gemini")]
    call = providers["gemini"].calls[-1]
    assert call["model"] == "gemini-2.0-flash"
    assert call["system_prompt"] == "Default prompt."
    assert call["config"] == {"temperature": 0.7}
    assert [t.content for t in call["history"]] == ["Hello?"]
    assert call["conversation_id"] == convo["id"]


@pytest.mark.asyncio
async def test_unknown_conversation(tmp_path):
    orchestrator, _, _, _ = await build(tmp_path)
    with pytest.raises(ConversationNotFound):
        await orchestrator.send_message("nope", "hi")


@pytest.mark.asyncio
async def test_request_config_overrides_active_config(tmp_path):
    orchestrator, db, providers, _ = await build(tmp_path, default_config={"temperature": 0.7, "maxOutputTokens": 100})
    convo = await db.create_conversation(title="Chat")
    await orchestrator.send_message(convo["id"], "hi", request_config={"temperature": 0.1})
    assert providers["gemini"].calls[-1]["config"] == {"temperature": 0.1, "maxOutputTokens": 100}


@pytest.mark.asyncio
async def test_system_prompt_priority(tmp_path):
    orchestrator, db, _, _ = await build(tmp_path)
    folder = await db.create_folder("Work", system_prompt="Folder prompt.")
    persona = await db.create_conversation(
        title="P", folder_id=folder["id"], is_persona=True, system_prompt="Persona prompt."
    )
    in_folder = await db.create_conversation(title="F", folder_id=folder["id"], system_prompt="ignored")
    plain = await db.create_conversation(title="Plain")

    assert await orchestrator.resolve_system_prompt(await db.find_one(persona["id"])) == "Persona prompt."
    assert await orchestrator.resolve_system_prompt(await db.find_one(in_folder["id"])) == "Folder prompt."
    assert await orchestrator.resolve_system_prompt(await db.find_one(plain["id"])) == "Default prompt."
    await db.set_system_prompt("Global prompt.")
    assert await orchestrator.resolve_system_prompt(await db.find_one(plain["id"])) == "Global prompt."


@pytest.mark.asyncio
async def test_web_search_fallback_for_providers_without_grounding(tmp_path):
    tavily = FakeTavilyClient(results=[{"title": "Result", "snippet": "text", "link": "https://r.test"}])
    orchestrator, db, providers, _ = await build(tmp_path, tavily=tavily, active=("openai", "gpt-4o"))
    convo = await db.create_conversation(title="Chat")
    await orchestrator.send_message(convo["id"], "latest news", use_web_search=True)
    assert tavily.queries == ["latest news"]
    call = providers["openai"].calls[-1]
    assert call["external_search_text"] == "1. Result\n   text\n   https://r.test"
    assert call["use_web_search"] is True


@pytest.mark.asyncio
async def test_native_grounding_skips_search_and_keeps_metadata(tmp_path):
    metadata = GroundingMetadata(sources=[GroundingSource(title="Src", uri="https://s.test")])
    gemini = FakeProvider("gemini", native_grounding=True, reply=GroundedReply(text="Grounded.", metadata=metadata))
    tavily = FakeTavilyClient(results=[{"title": "x", "snippet": "y", "link": "https://x.test"}])
    orchestrator, db, _, _ = await build(tmp_path, providers={"gemini": gemini}, tavily=tavily)
    convo = await db.create_conversation(title="Chat")
    messages = await orchestrator.send_message(convo["id"], "who won?", use_web_search=True)
    assert tavily.queries == []
    assert gemini.calls[-1]["external_search_text"] is None
    bot = messages[-1]
    assert bot["content"] == "Grounded."
    assert bot["grounding_metadata"]["sources"] == [{"title": "Src", "uri": "https://s.test"}]


@pytest.mark.asyncio
async def test_search_failure_is_swallowed(tmp_path):
    tavily = FakeTavilyClient(fail=True)
    orchestrator, db, providers, _ = await build(tmp_path, tavily=tavily, active=("openai", "gpt-4o"))
    convo = await db.create_conversation(title="Chat")
    messages = await orchestrator.send_message(convo["id"], "news", use_web_search=True)
    assert providers["openai"].calls[-1]["external_search_text"] is None
    assert messages[-1]["content"] == "reply from openai"


@pytest.mark.asyncio
async def test_error_reply_is_stored_but_not_sent_back(tmp_path):
    gemini = FakeProvider("gemini", reply=error_reply("Error communicating with Gemini (HTTP 500)"))
    orchestrator, db, _, _ = await build(tmp_path, providers={"gemini": gemini})
    convo = await db.create_conversation(title="Chat")
    messages = await orchestrator.send_message(convo["id"], "first")
    assert messages[-1]["is_error"] is True
    assert messages[-1]["content"].startswith("Error communicating")

    await orchestrator.send_message(convo["id"], "second")
    assert [t.content for t in gemini.calls[-1]["history"]] == ["first", "second"]


@pytest.mark.asyncio
async def test_unexpected_adapter_failure_becomes_error_message(tmp_path):
    orchestrator, db, _, _ = await build(tmp_path, providers={"gemini": ExplodingProvider("gemini")})
    convo = await db.create_conversation(title="Chat")
    messages = await orchestrator.send_message(convo["id"], "hi")
    assert messages[-1]["is_error"] is True
    assert messages[-1]["content"] == "Error generating response: adapter bug"


@pytest.mark.asyncio
async def test_no_active_model(tmp_path):
    orchestrator, db, _, _ = await build(tmp_path, active=None)
    convo = await db.create_conversation(title="Chat")
    with pytest.raises(NoActiveModelError):
        await orchestrator.generate_reply(convo["id"])


@pytest.mark.asyncio
async def test_title_is_generated_for_default_titled_conversations(tmp_path):
    orchestrator, db, providers, _ = await build(tmp_path)
    convo = await db.create_conversation()
    await orchestrator.send_message(convo["id"], "plan a trip to Lisbon")
    await orchestrator.drain()
    assert (await db.get_conversation(convo["id"]))["title"] == "Fake Title"
    assert providers["gemini"].title_calls == ["plan a trip to Lisbon"]

    renamed = await db.create_conversation(title="My trip")
    await orchestrator.send_message(renamed["id"], "hello")
    await orchestrator.drain()
    assert (await db.get_conversation(renamed["id"]))["title"] == "My trip"
    assert len(providers["gemini"].title_calls) == 1


@pytest.mark.asyncio
async def test_fallback_title_leaves_conversation_untouched(tmp_path):
    gemini = FakeProvider("gemini", title="New Conversation")
    orchestrator, db, _, _ = await build(tmp_path, providers={"gemini": gemini})
    convo = await db.create_conversation()
    assert await orchestrator.generate_title(convo["id"], "hi") is None
    assert (await db.get_conversation(convo["id"]))["title"] == "New Conversation"


@pytest.mark.asyncio
async def test_open_stream_persists_streamed_reply(tmp_path):
    gemini = FakeProvider("gemini", streaming=True, chunks=["Str", "eamed"])
    orchestrator, db, _, _ = await build(tmp_path, providers={"gemini": gemini})
    convo = await db.create_conversation(title="Chat")
    channel = await orchestrator.open_stream(convo["id"], "stream please")
    events = [e async for e in channel.events()]
    assert events[-1].kind == "complete"
    assert events[-1].data == "Streamed"
    messages = await db.list_messages(convo["id"])
    assert [(m["role"], m["content"]) for m in messages] == [("user", "stream please"), ("assistant", "Streamed")]
