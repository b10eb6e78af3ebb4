"""Shared contract for LLM provider adapters.

Every backend turns the same inputs (conversation history, system prompt,
generation config, optional search context) into its own wire format and
returns a `PlainReply` or `GroundedReply`. Generation failures come back as
error replies instead of exceptions so a conversation stays usable; model
listing degrades to an empty list after the shared retry policy gives up.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from .attachments import AttachmentStore
from .retry import RetryPolicy
from .schemas import ChatTurn, PlainReply, Reply, error_reply

logger = logging.getLogger("uvicorn.error")

FALLBACK_TITLE = "New Conversation"
TITLE_PROMPT = (
    "Create a short, descriptive title (at most 3 words) for a conversation that starts with this message: "
    '"{message}". Reply with the title only: no quotes, no extra punctuation and no prefix such as '
    "'Here are some options:' or 'Title:'."
)
DEFAULT_GENERATION_CONFIG: Dict[str, Any] = {"temperature": 0.7, "maxOutputTokens": 2048}

_TIMESTAMP_PREFIXES = (
    re.compile(r"^\s*\[\d{1,2}:\d{2}(:\d{2})?\]\s*"),
    re.compile(r"^\s*\(\d{1,2}:\d{2}(:\d{2})?\)\s*"),
    re.compile(r"^\s*\d{2}/\d{2}/\d{4}\s+\d{1,2}:\d{2}(:\d{2})?\s*"),
    re.compile(r"^\s*\d{1,2}:\d{2}(:\d{2})?\s+"),
)
_ROLE_PREFIX = re.compile(r"^\s*(Assistant|Assistente)(\s*\[\d{1,2}:\d{2}(:\d{2})?\])?\s*:\s*", re.IGNORECASE)
_TITLE_PREFIXES = (
    re.compile(r"^here are some options:?\s*", re.IGNORECASE),
    re.compile(r"^some suggestions:?\s*", re.IGNORECASE),
    re.compile(r"^suggestions?:\s*", re.IGNORECASE),
    re.compile(r"^options:\s*", re.IGNORECASE),
    re.compile(r"^(suggested )?title:\s*", re.IGNORECASE),
    re.compile(r"^aqui estão algumas opções:?\s*", re.IGNORECASE),
    re.compile(r"^sugestões:\s*", re.IGNORECASE),
    re.compile(r"^(sugestão de )?título:\s*", re.IGNORECASE),
)


class ProviderAPIError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, detail: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


@dataclass
class ProviderModelInfo:
    id: str
    label: str
    description: Optional[str] = None
    capabilities: Any = None
    input_modalities: List[str] = field(default_factory=list)
    context_length: Optional[int] = None
    default_config: Optional[Dict[str, Any]] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def strip_reply_prefixes(text: str) -> str:
    """Drop timestamps and role labels the model echoes back from the transcript format."""
    cleaned = text or ""
    for regex in _TIMESTAMP_PREFIXES:
        if regex.match(cleaned):
            cleaned = regex.sub("", cleaned, count=1)
            break
    cleaned = _ROLE_PREFIX.sub("", cleaned, count=1)
    return cleaned.lstrip()


def clean_title(raw: Optional[str]) -> str:
    title = (raw or "").strip()
    for regex in _TITLE_PREFIXES:
        title = regex.sub("", title)
    title = title.strip()
    title = title.splitlines()[0].strip() if title else ""
    title = re.sub(r"^[\"'“”]+|[\"'“”]+$", "", title).strip()
    if not title:
        return FALLBACK_TITLE
    return title[0].upper() + title[1:]


def format_now(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime("%A, %d %B %Y, %H:%M")


def merged_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    merged = dict(DEFAULT_GENERATION_CONFIG)
    merged.update({k: v for k, v in (config or {}).items() if v is not None})
    return merged


def describe_http_error(provider_label: str, exc: Exception) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        detail = ""
        try:
            body = exc.response.json()
            error = body.get("error") if isinstance(body, dict) else None
            if isinstance(error, dict):
                detail = str(error.get("message") or "")
            elif error:
                detail = str(error)
        except ValueError:
            detail = exc.response.text[:200]
        suffix = f": {detail}" if detail else ""
        return f"Error communicating with {provider_label} (HTTP {exc.response.status_code}){suffix}"
    if isinstance(exc, httpx.TimeoutException):
        return f"Error communicating with {provider_label}: the request timed out."
    if isinstance(exc, httpx.RequestError):
        return f"Error communicating with {provider_label}: {exc}"
    return f"Error processing the {provider_label} response: {exc}"


class ProviderAdapter(ABC):
    name: str = ""
    label: str = ""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        *,
        default_model: str,
        title_model: str,
        attachments: Optional[AttachmentStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
        client: Optional[httpx.AsyncClient] = None,
        request_timeout_s: float = 60.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.title_model = title_model
        self.attachments = attachments
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=3,
            delay_s=5.0,
            retry_on=(httpx.HTTPError, ProviderAPIError, ValueError),
        )
        self.client = client or httpx.AsyncClient(
            timeout=request_timeout_s,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )
        if not api_key:
            logger.warning("%s API key is not configured; the %s adapter will return errors", self.label, self.name)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def not_configured_reply(self) -> PlainReply:
        return error_reply(f"{self.label} is not configured: missing API key.")

    def has_native_grounding(self) -> bool:
        return False

    def supports_streaming(self) -> bool:
        return False

    def stream_response(
        self,
        history: List[ChatTurn],
        system_prompt: str,
        model: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[Any] = None,
    ) -> AsyncIterator[str]:
        raise NotImplementedError(f"{self.label} does not support streaming")

    async def generate_response(
        self,
        history: List[ChatTurn],
        system_prompt: str,
        use_web_search: bool = False,
        model: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        external_search_text: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> Reply:
        if not self.configured:
            return self.not_configured_reply()
        try:
            return await self._generate(
                history,
                system_prompt,
                use_web_search=use_web_search,
                model=model or self.default_model,
                config=merged_config(config),
                external_search_text=external_search_text,
                conversation_id=conversation_id,
            )
        except (httpx.HTTPError, ProviderAPIError, KeyError, IndexError, TypeError, ValueError) as exc:
            message = describe_http_error(self.label, exc)
            logger.error("%s generation failed: %s", self.label, message)
            return error_reply(message)

    @abstractmethod
    async def _generate(
        self,
        history: List[ChatTurn],
        system_prompt: str,
        *,
        use_web_search: bool,
        model: str,
        config: Dict[str, Any],
        external_search_text: Optional[str],
        conversation_id: Optional[str],
    ) -> Reply:
        raise NotImplementedError

    async def generate_conversation_title(self, first_message: str) -> str:
        if not self.configured:
            return FALLBACK_TITLE
        try:
            raw = await self._generate_title(TITLE_PROMPT.format(message=first_message[:500]))
        except Exception as exc:
            logger.warning("%s title generation failed: %s", self.label, exc)
            return FALLBACK_TITLE
        return clean_title(raw)

    @abstractmethod
    async def _generate_title(self, prompt: str) -> str:
        raise NotImplementedError

    async def list_models(self) -> List[ProviderModelInfo]:
        if not self.configured:
            return []
        try:
            return await self.retry_policy.run(self._fetch_models, label=f"{self.label} list_models")
        except Exception:
            return []

    @abstractmethod
    async def _fetch_models(self) -> List[ProviderModelInfo]:
        raise NotImplementedError

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()

    def enhanced_system_prompt(self, system_prompt: str, external_search_text: Optional[str] = None) -> str:
        prompt = f"{system_prompt.strip()}\n\nCurrent date and time: {format_now()}"
        if external_search_text:
            prompt += f"\n\nAdditional web search context:\n{external_search_text}"
        return prompt

    async def image_data(self, turn: ChatTurn) -> Optional[Tuple[str, str]]:
        if not turn.image_url or not turn.is_user or self.attachments is None:
            return None
        data = await self.attachments.try_read_base64(turn.image_url)
        if data is None:
            logger.warning("%s: could not read attachment %s; sending text only", self.label, turn.image_url)
        return data
