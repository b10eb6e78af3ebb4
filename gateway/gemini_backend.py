import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from .providers import ProviderAdapter, ProviderAPIError, ProviderModelInfo, merged_config, strip_reply_prefixes
from .schemas import ChatTurn, GroundedReply, GroundingCitation, GroundingMetadata, GroundingSource, PlainReply, Reply

logger = logging.getLogger("uvicorn.error")

GENERATION_KEYS = ("temperature", "topP", "topK", "maxOutputTokens")


def generation_config(config: Dict[str, Any]) -> Dict[str, Any]:
    return {key: config[key] for key in GENERATION_KEYS if config.get(key) is not None}


def candidate_text(data: Dict[str, Any]) -> str:
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts if isinstance(part, dict))


def grounding_from_candidate(candidate: Dict[str, Any]) -> Optional[GroundingMetadata]:
    raw = candidate.get("groundingMetadata")
    if not isinstance(raw, dict):
        return None
    sources = [
        GroundingSource(title=(chunk.get("web") or {}).get("title") or "", uri=(chunk.get("web") or {}).get("uri") or "")
        for chunk in raw.get("groundingChunks") or []
        if chunk.get("web")
    ]
    citations = []
    for support in raw.get("groundingSupports") or []:
        segment = support.get("segment") or {}
        citations.append(
            GroundingCitation(
                text=segment.get("text") or "",
                start_index=segment.get("startIndex"),
                end_index=segment.get("endIndex"),
                sources=list(support.get("groundingChunkIndices") or []),
                confidence=list(support.get("confidenceScores") or []),
            )
        )
    metadata = GroundingMetadata(
        search_entry_point=raw.get("searchEntryPoint"),
        search_suggestions=list(raw.get("webSearchQueries") or []),
        sources=sources,
        citations=citations,
    )
    return None if metadata.is_empty() else metadata


class GeminiBackend(ProviderAdapter):
    name = "gemini"
    label = "Gemini"

    def has_native_grounding(self) -> bool:
        return True

    def supports_streaming(self) -> bool:
        return True

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path}"

    def _headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.api_key or ""}

    async def build_parts(self, history: List[ChatTurn], system_prompt: str) -> List[Dict[str, Any]]:
        """Flatten the conversation into one user turn: system prompt, labelled lines, inline images."""
        parts: List[Dict[str, Any]] = [{"text": f"{system_prompt}\n\n"}]
        for turn in history:
            role = "User" if turn.is_user else "Assistant"
            parts.append({"text": f"{role}: {turn.content}\n"})
            image = await self.image_data(turn)
            if image:
                mime_type, data = image
                parts.append({"inline_data": {"mime_type": mime_type, "data": data}})
        parts.append({"text": "Assistant: "})
        return parts

    async def build_request(
        self,
        history: List[ChatTurn],
        system_prompt: str,
        config: Dict[str, Any],
        use_web_search: bool = False,
        external_search_text: Optional[str] = None,
    ) -> Dict[str, Any]:
        prompt = self.enhanced_system_prompt(system_prompt, external_search_text)
        body: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": await self.build_parts(history, prompt)}],
            "generationConfig": generation_config(config),
        }
        if use_web_search:
            body["tools"] = [{"googleSearch": {}}]
        return body

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self.client.post(self._url(path), json=body, headers=self._headers())
        resp.raise_for_status()
        return resp.json()

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
        body = await self.build_request(history, system_prompt, config, use_web_search, external_search_text)
        data = await self._post(f"models/{model}:generateContent", body)
        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason")
            raise ProviderAPIError(f"no candidates returned{f' (blocked: {reason})' if reason else ''}")
        text = strip_reply_prefixes(candidate_text(data)).strip()
        metadata = grounding_from_candidate(candidates[0]) if use_web_search else None
        if metadata is not None:
            return GroundedReply(text=text, metadata=metadata)
        return PlainReply(text=text)

    async def stream_response(
        self,
        history: List[ChatTurn],
        system_prompt: str,
        model: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[str]:
        if not self.configured:
            raise ProviderAPIError(self.not_configured_reply().text)
        body = await self.build_request(history, system_prompt, merged_config(config))
        url = self._url(f"models/{model or self.default_model}:streamGenerateContent")
        async with self.client.stream(
            "POST", url, params={"alt": "sse"}, json=body, headers=self._headers()
        ) as resp:
            if resp.status_code >= 400:
                await resp.aread()
                resp.raise_for_status()
            first = True
            async for line in resp.aiter_lines():
                if cancel_event is not None and cancel_event.is_set():
                    break
                if not line.startswith("data:"):
                    continue
                payload = line[len("data:"):].strip()
                if not payload:
                    continue
                try:
                    chunk = json.loads(payload)
                except ValueError:
                    logger.warning("Gemini stream sent a malformed event: %s", payload[:200])
                    continue
                text = candidate_text(chunk)
                if first and text:
                    text = strip_reply_prefixes(text)
                    first = False
                if text:
                    yield text

    async def _generate_title(self, prompt: str) -> str:
        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0.2, "maxOutputTokens": 30},
        }
        data = await self._post(f"models/{self.title_model}:generateContent", body)
        return candidate_text(data)

    async def _fetch_models(self) -> List[ProviderModelInfo]:
        resp = await self.client.get(
            self._url("models"), params={"pageSize": "1000"}, headers=self._headers()
        )
        resp.raise_for_status()
        models: List[ProviderModelInfo] = []
        for item in resp.json().get("models") or []:
            methods = item.get("supportedGenerationMethods") or []
            if "generateContent" not in methods:
                continue
            model_id = str(item.get("name") or "").split("/", 1)[-1]
            if not model_id:
                continue
            models.append(
                ProviderModelInfo(
                    id=model_id,
                    label=item.get("displayName") or model_id,
                    description=item.get("description"),
                    capabilities={"grounding": True} if "embedding" not in model_id else None,
                    input_modalities=["text", "image"] if "gemini" in model_id else ["text"],
                    context_length=item.get("inputTokenLimit"),
                    default_config={
                        "temperature": item.get("temperature", 0.7),
                        "maxOutputTokens": item.get("outputTokenLimit") or 8192,
                    },
                    raw=item,
                )
            )
        return models
