import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from .active_model import ActiveModelRegistry, NoActiveModelError
from .db import DEFAULT_CONVERSATION_TITLE, Database
from .provider_router import ProviderRouter
from .providers import FALLBACK_TITLE, ProviderAdapter
from .schemas import ChatTurn, GroundedReply, Reply, error_reply
from .streaming import StreamingChannel
from .tavily import TavilyClient

logger = logging.getLogger("uvicorn.error")


class ConversationNotFound(Exception):
    def __init__(self, conversation_id: str):
        super().__init__(f"conversation {conversation_id} not found")
        self.conversation_id = conversation_id


def format_search_results(results: List[Dict[str, str]]) -> str:
    lines: List[str] = []
    for idx, item in enumerate(results, start=1):
        lines.append(f"{idx}. {item.get('title') or item.get('link')}")
        if item.get("snippet"):
            lines.append(f"   {item['snippet']}")
        lines.append(f"   {item.get('link') or ''}")
    return "\n".join(lines)


def messages_to_history(messages: List[dict]) -> List[ChatTurn]:
    """Stored messages as provider turns; persisted error replies are not sent back to the model."""
    return [
        ChatTurn(
            role="user" if m["is_user"] else "assistant",
            content=m.get("content") or "",
            image_url=m.get("image_url"),
            file_url=m.get("file_url"),
            created_at=m.get("created_at"),
        )
        for m in messages
        if m["is_user"] or not m.get("is_error")
    ]


class ResponseOrchestrator:
    def __init__(
        self,
        db: Database,
        registry: ActiveModelRegistry,
        router: ProviderRouter,
        search_client: Optional[TavilyClient] = None,
        default_system_prompt: str = "",
        stream_timeout_s: float = 60.0,
    ):
        self.db = db
        self.registry = registry
        self.router = router
        self.search_client = search_client
        self.default_system_prompt = default_system_prompt
        self.stream_timeout_s = stream_timeout_s
        self.background_tasks: Set[asyncio.Task] = set()

    async def _conversation(self, conversation_id: str) -> dict:
        convo = await self.db.find_one(conversation_id)
        if not convo:
            raise ConversationNotFound(conversation_id)
        return convo

    async def resolve_system_prompt(self, conversation: dict) -> str:
        if conversation.get("is_persona") and conversation.get("system_prompt"):
            return conversation["system_prompt"]
        folder = conversation.get("folder")
        if folder and folder.get("system_prompt"):
            return folder["system_prompt"]
        return await self.db.get_system_prompt() or self.default_system_prompt

    async def build_search_context(self, history: List[ChatTurn]) -> Optional[str]:
        query = next((turn.content for turn in reversed(history) if turn.is_user and turn.content.strip()), None)
        if not query or self.search_client is None:
            return None
        try:
            results = await self.search_client.search(query)
        except Exception as exc:
            logger.warning("Web search fallback failed for %r: %s", query[:80], exc)
            return None
        if not results:
            return None
        return format_search_results(results)

    async def generate_reply(
        self,
        conversation_id: str,
        use_web_search: bool = False,
        request_config: Optional[Dict[str, Any]] = None,
    ) -> Reply:
        convo = await self._conversation(conversation_id)
        entry, active_config = await self.registry.get_active_model()
        adapter = await self.router.resolve(entry)
        config = {**active_config, **(request_config or {})}
        system_prompt = await self.resolve_system_prompt(convo)
        history = messages_to_history(await self.db.list_messages(conversation_id))
        external_search_text = None
        if use_web_search and not adapter.has_native_grounding():
            external_search_text = await self.build_search_context(history)
        model = entry.name if entry.provider == adapter.name else None
        try:
            return await adapter.generate_response(
                history,
                system_prompt,
                use_web_search=use_web_search,
                model=model,
                config=config,
                external_search_text=external_search_text,
                conversation_id=conversation_id,
            )
        except Exception as exc:
            logger.exception("Unexpected failure generating a reply for %s", conversation_id)
            return error_reply(f"Error generating response: {exc}")

    async def generate_and_save_bot_response(
        self,
        conversation_id: str,
        use_web_search: bool = False,
        request_config: Optional[Dict[str, Any]] = None,
    ) -> dict:
        reply = await self.generate_reply(conversation_id, use_web_search, request_config)
        metadata = reply.metadata.to_wire() if isinstance(reply, GroundedReply) else None
        return await self.db.add_bot_message(
            conversation_id,
            reply.text,
            grounding_metadata=metadata,
            is_error=reply.is_error,
        )

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        image_url: Optional[str] = None,
        file_url: Optional[str] = None,
        use_web_search: bool = False,
        request_config: Optional[Dict[str, Any]] = None,
    ) -> List[dict]:
        convo = await self._conversation(conversation_id)
        await self.db.add_user_message(conversation_id, content, image_url=image_url, file_url=file_url)
        self._schedule_title(convo, content)
        await self.generate_and_save_bot_response(conversation_id, use_web_search, request_config)
        return await self.db.list_messages(conversation_id)

    def _schedule_title(self, convo: dict, content: str) -> None:
        if (convo.get("title") or DEFAULT_CONVERSATION_TITLE) != DEFAULT_CONVERSATION_TITLE or not content.strip():
            return
        task = asyncio.create_task(self.generate_title(convo["id"], content))
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)

    async def generate_title(self, conversation_id: str, first_message: str) -> Optional[str]:
        try:
            adapter = await self.router.resolve()
            title = await adapter.generate_conversation_title(first_message)
            if not title or title == FALLBACK_TITLE:
                return None
            if await self.db.ensure_conversation_title(conversation_id, title):
                return title
        except Exception as exc:
            logger.warning("Title generation failed for %s: %s", conversation_id, exc)
        return None

    async def open_stream(self, conversation_id: str, content: str, image_url: Optional[str] = None) -> StreamingChannel:
        convo = await self._conversation(conversation_id)
        try:
            entry, config = await self.registry.get_active_model()
        except NoActiveModelError:
            entry, config = None, {}
        adapter: ProviderAdapter = self.router.streaming_adapter(entry.provider if entry else None)
        model = entry.name if entry is not None and entry.provider == adapter.name else None
        await self.db.add_user_message(conversation_id, content, image_url=image_url)
        self._schedule_title(convo, content)
        system_prompt = await self.resolve_system_prompt(convo)
        history = messages_to_history(await self.db.list_messages(conversation_id))

        def token_stream(cancel_event: asyncio.Event):
            return adapter.stream_response(history, system_prompt, model=model, config=config, cancel_event=cancel_event)

        async def persist(text: str) -> None:
            await self.db.add_bot_message(conversation_id, text)

        return StreamingChannel(
            conversation_id,
            token_stream,
            persist,
            timeout_s=self.stream_timeout_s,
            provider_label=adapter.label,
        )

    async def drain(self) -> None:
        if self.background_tasks:
            await asyncio.gather(*list(self.background_tasks), return_exceptions=True)
