import logging
from typing import Any, Dict, List, Optional

from .providers import ProviderAdapter, ProviderAPIError, ProviderModelInfo, strip_reply_prefixes
from .schemas import ChatTurn, PlainReply, Reply

logger = logging.getLogger("uvicorn.error")

DEFAULT_MAX_TOKENS = 4096


def _response_text(data: Dict[str, Any]) -> str:
    if data.get("type") == "error":
        error = data.get("error") or {}
        raise ProviderAPIError(error.get("message") or "Anthropic returned an error", detail=error)
    blocks = data.get("content") or []
    return "".join(block.get("text", "") for block in blocks if block.get("type") == "text")


class AnthropicBackend(ProviderAdapter):
    name = "anthropic"
    label = "Anthropic"

    def __init__(self, *args: Any, api_version: str = "2023-06-01", **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.api_version = api_version

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key or "",
            "anthropic-version": self.api_version,
            "content-type": "application/json",
        }

    async def _messages(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self.client.post(f"{self.base_url}/messages", json=payload, headers=self._headers())
        resp.raise_for_status()
        return resp.json()

    async def build_messages(self, history: List[ChatTurn]) -> List[Dict[str, Any]]:
        """Anthropic wants strictly alternating turns that start with the user."""
        messages: List[Dict[str, Any]] = []
        for turn in history:
            role = "user" if turn.is_user else "assistant"
            blocks: List[Dict[str, Any]] = []
            image = await self.image_data(turn)
            if image and not image[0].startswith("image/"):
                logger.warning("Anthropic: %s is not an image; sending text only", turn.image_url)
                image = None
            if image:
                mime_type, data = image
                blocks.append({"type": "image", "source": {"type": "base64", "media_type": mime_type, "data": data}})
            if turn.content:
                blocks.append({"type": "text", "text": turn.content})
            if not blocks:
                continue
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"].extend(blocks)
            else:
                messages.append({"role": role, "content": blocks})
        while messages and messages[0]["role"] != "user":
            messages.pop(0)
        return messages

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
        payload: Dict[str, Any] = {
            "model": model,
            "system": self.enhanced_system_prompt(system_prompt, external_search_text),
            "messages": await self.build_messages(history),
            "max_tokens": config.get("maxOutputTokens") or DEFAULT_MAX_TOKENS,
        }
        if config.get("temperature") is not None:
            payload["temperature"] = config["temperature"]
        if config.get("topP") is not None:
            payload["top_p"] = config["topP"]
        if config.get("topK") is not None:
            payload["top_k"] = config["topK"]
        data = await self._messages(payload)
        return PlainReply(text=strip_reply_prefixes(_response_text(data)).strip())

    async def _generate_title(self, prompt: str) -> str:
        data = await self._messages(
            {
                "model": self.title_model,
                "max_tokens": 30,
                "temperature": 0.2,
                "messages": [{"role": "user", "content": prompt}],
            }
        )
        return _response_text(data)

    async def _fetch_models(self) -> List[ProviderModelInfo]:
        resp = await self.client.get(f"{self.base_url}/models", params={"limit": 100}, headers=self._headers())
        resp.raise_for_status()
        models: List[ProviderModelInfo] = []
        for item in resp.json().get("data") or []:
            model_id = str(item.get("id") or "")
            if not model_id:
                continue
            models.append(
                ProviderModelInfo(
                    id=model_id,
                    label=item.get("display_name") or model_id,
                    capabilities={"vision": True, "tool_use": "haiku" not in model_id},
                    input_modalities=["text", "image"],
                    raw=item,
                )
            )
        return models
