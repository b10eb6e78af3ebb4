import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient


@pytest.mark.asyncio
async def test_conversation_crud(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/conversations", json={"title": "Test chat"})
            assert res.status_code == 200
            convo_id = res.json()["conversation"]["id"]

            res = await client.get("/api/conversations")
            assert res.status_code == 200
            convo_ids = {c["id"] for c in res.json()["conversations"]}
            assert convo_id in convo_ids

            res = await client.patch(
                f"/api/conversations/{convo_id}",
                json={"title": "Renamed", "isPersona": True, "systemPrompt": "Talk like a pirate."},
            )
            assert res.status_code == 200
            convo = res.json()["conversation"]
            assert convo["title"] == "Renamed"
            assert convo["is_persona"] is True
            assert convo["system_prompt"] == "Talk like a pirate."

            res = await client.delete(f"/api/conversations/{convo_id}")
            assert res.status_code == 200

            res = await client.get("/api/conversations")
            convo_ids = {c["id"] for c in res.json()["conversations"]}
            assert convo_id not in convo_ids

            res = await client.get(f"/api/conversations/{convo_id}")
            assert res.status_code == 404


@pytest.mark.asyncio
async def test_messages_listing_for_conversation(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        db = app.state.db
        convo = await db.create_conversation(title="Chat")
        await db.add_user_message(convo["id"], "hello")

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.get(f"/api/conversations/{convo['id']}/messages")
            assert res.status_code == 200
            messages = res.json()["messages"]
            assert any(m["content"] == "hello" and m["is_user"] for m in messages)

            res = await client.get("/api/conversations/missing/messages")
            assert res.status_code == 404


@pytest.mark.asyncio
async def test_send_message_returns_reply_and_names_conversation(app_factory):
    app, _, providers, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            convo_id = (await client.post("/api/conversations", json={})).json()["conversation"]["id"]
            res = await client.post(
                f"/api/conversations/{convo_id}/messages",
                json={"content": "Tell me a joke", "modelConfig": {"temperature": 0.2}},
            )
            assert res.status_code == 200
            messages = res.json()["messages"]
            assert [m["role"] for m in messages] == ["user", "assistant"]
            assert messages[-1]["content"] == "reply from gemini"
            assert providers["gemini"].calls[-1]["config"]["temperature"] == 0.2

            await app.state.orchestrator.drain()
            res = await client.get(f"/api/conversations/{convo_id}")
            assert res.json()["conversation"]["title"] == "Fake Title"
            assert len(res.json()["conversation"]["messages"]) == 2


@pytest.mark.asyncio
async def test_send_message_validation(client):
    convo_id = (await client.post("/api/conversations", json={"title": "Chat"})).json()["conversation"]["id"]
    res = await client.post(f"/api/conversations/{convo_id}/messages", json={"content": "   "})
    assert res.status_code == 400
    res = await client.post("/api/conversations/unknown/messages", json={"content": "hi"})
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_send_message_without_available_model(client):
    catalog = client.app.state.catalog
    for entry in await catalog.list_all():
        await catalog.update(entry.id, is_available=False)
    convo_id = (await client.post("/api/conversations", json={"title": "Chat"})).json()["conversation"]["id"]
    res = await client.post(f"/api/conversations/{convo_id}/messages", json={"content": "hi"})
    assert res.status_code == 503


@pytest.mark.asyncio
async def test_folders_supply_system_prompt(client):
    res = await client.post("/api/folders", json={"name": "Work", "systemPrompt": "Be formal."})
    assert res.status_code == 200
    folder_id = res.json()["folder"]["id"]

    res = await client.post("/api/conversations", json={"title": "Memo", "folderId": folder_id})
    convo_id = res.json()["conversation"]["id"]
    await client.post(f"/api/conversations/{convo_id}/messages", json={"content": "draft a memo"})
    assert client.providers["gemini"].calls[-1]["system_prompt"] == "Be formal."

    res = await client.get("/api/conversations", params={"folder_id": folder_id})
    assert [c["id"] for c in res.json()["conversations"]] == [convo_id]

    res = await client.delete(f"/api/folders/{folder_id}")
    assert res.status_code == 200
    res = await client.get(f"/api/conversations/{convo_id}")
    assert res.json()["conversation"]["folder_id"] is None

    res = await client.post("/api/conversations", json={"folderId": "missing"})
    assert res.status_code == 404
    res = await client.post("/api/folders", json={"name": " "})
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_system_prompt_routes(client):
    res = await client.get("/api/system-prompt")
    assert res.json() == {"systemPrompt": "Global prompt.", "isDefault": True}

    res = await client.put("/api/system-prompt", json={"systemPrompt": "  Custom.  "})
    assert res.status_code == 200
    res = await client.get("/api/system-prompt")
    assert res.json() == {"systemPrompt": "Custom.", "isDefault": False}

    res = await client.put("/api/system-prompt", json={"systemPrompt": ""})
    assert res.status_code == 400

    res = await client.delete("/api/system-prompt")
    assert res.json()["isDefault"] is True
    res = await client.get("/api/system-prompt")
    assert res.json()["systemPrompt"] == "Global prompt."


@pytest.mark.asyncio
async def test_main_agent_and_calendar_routes(client):
    convo_id = (await client.post("/api/conversations", json={"title": "Agent"})).json()["conversation"]["id"]
    res = await client.put("/api/agents/main", json={"conversationId": convo_id})
    assert res.status_code == 200
    res = await client.get("/api/agents/main")
    assert res.json()["conversationId"] == convo_id
    res = await client.put("/api/agents/main", json={"conversationId": "missing"})
    assert res.status_code == 404

    res = await client.post(
        "/api/calendar/events",
        json={
            "title": "Review",
            "startTime": "2025-06-05T14:00:00+00:00",
            "endTime": "2025-06-05T15:00:00+00:00",
            "conversationId": convo_id,
        },
    )
    assert res.status_code == 200
    res = await client.post(
        "/api/calendar/events",
        json={"title": "Bad", "startTime": "2025-06-05T15:00:00+00:00", "endTime": "2025-06-05T14:00:00+00:00"},
    )
    assert res.status_code == 400

    res = await client.get("/api/calendar/events", params={"startDate": "2025-06-05", "endDate": "2025-06-05"})
    assert [e["title"] for e in res.json()["events"]] == ["Review"]
    res = await client.get("/api/calendar/events", params={"startDate": "2025-06-06"})
    assert res.json()["events"] == []
