import json
import logging
from typing import Any, Dict, List, Optional

from .providers import ProviderAdapter, ProviderAPIError, ProviderModelInfo, strip_reply_prefixes
from .schemas import ChatTurn, PlainReply, Reply
from .tools import ToolExecutor

logger = logging.getLogger("uvicorn.error")

CHAT_MODEL_PREFIXES = ("gpt-", "o1", "o3", "o4", "chatgpt-")
EXCLUDED_MODEL_MARKERS = ("embedding", "tts", "whisper", "dall-e", "moderation", "transcribe", "realtime", "audio")


def _message_content(message: Dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(part.get("text", "") for part in content if isinstance(part, dict))
    return ""


class OpenAIBackend(ProviderAdapter):
    name = "openai"
    label = "OpenAI"

    def __init__(self, *args: Any, tools: Optional[ToolExecutor] = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.tools = tools

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    async def _chat(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self.client.post(f"{self.base_url}/chat/completions", json=payload, headers=self._headers())
        resp.raise_for_status()
        data = resp.json()
        if not data.get("choices"):
            raise ProviderAPIError("response contained no choices", detail=data)
        return data

    async def build_messages(
        self,
        history: List[ChatTurn],
        system_prompt: str,
        external_search_text: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": self.enhanced_system_prompt(system_prompt, external_search_text)}
        ]
        for turn in history:
            if not turn.is_user:
                messages.append({"role": "assistant", "content": turn.content})
                continue
            content: List[Dict[str, Any]] = [{"type": "text", "text": turn.content}]
            image = await self.image_data(turn)
            if image:
                mime_type, data = image
                content.append({"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{data}"}})
            messages.append({"role": "user", "content": content})
        return messages

    def _payload(self, model: str, messages: List[Dict[str, Any]], config: Dict[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": model, "messages": messages}
        if config.get("temperature") is not None:
            payload["temperature"] = config["temperature"]
        if config.get("topP") is not None:
            payload["top_p"] = config["topP"]
        if config.get("maxOutputTokens") is not None:
            payload["max_tokens"] = config["maxOutputTokens"]
        return payload

    async def _run_tool_calls(
        self,
        tool_calls: List[Dict[str, Any]],
        conversation_id: Optional[str],
    ) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        for call in tool_calls:
            function = call.get("function") or {}
            name = function.get("name") or ""
            try:
                arguments = json.loads(function.get("arguments") or "{}")
            except ValueError:
                arguments = None
            if not isinstance(arguments, dict):
                result: Dict[str, Any] = {"error": "invalid_arguments", "tool": name}
            elif self.tools is None:
                result = {"error": "tool_not_found", "tool": name}
            else:
                result = await self.tools.execute(name, arguments, conversation_id)
            logger.info("OpenAI tool call %s (%s) -> %s", name, call.get("id"), "error" if "error" in result else "ok")
            results.append(
                {
                    "role": "tool",
                    "tool_call_id": call.get("id"),
                    "content": json.dumps(result, ensure_ascii=False),
                }
            )
        return results

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
        messages = await self.build_messages(history, system_prompt, external_search_text)
        payload = self._payload(model, messages, config)
        if self.tools is not None:
            payload["tools"] = self.tools.definitions
            payload["tool_choice"] = "auto"
        data = await self._chat(payload)
        message = data["choices"][0].get("message") or {}
        tool_calls = message.get("tool_calls") or []
        if not tool_calls:
            return PlainReply(text=strip_reply_prefixes(_message_content(message)).strip())

        transcript = list(messages)
        transcript.append({"role": "assistant", "content": message.get("content"), "tool_calls": tool_calls})
        transcript.extend(await self._run_tool_calls(tool_calls, conversation_id))
        follow_up = self._payload(model, transcript, config)
        # The transcript references tool calls, so the schemas go along; "none" forces a text answer.
        follow_up["tools"] = payload["tools"]
        follow_up["tool_choice"] = "none"
        data = await self._chat(follow_up)
        final = data["choices"][0].get("message") or {}
        return PlainReply(text=strip_reply_prefixes(_message_content(final)).strip())

    async def _generate_title(self, prompt: str) -> str:
        data = await self._chat(
            {
                "model": self.title_model,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": 0.2,
                "max_tokens": 30,
            }
        )
        return _message_content(data["choices"][0].get("message") or {})

    async def _fetch_models(self) -> List[ProviderModelInfo]:
        resp = await self.client.get(f"{self.base_url}/models", headers=self._headers())
        resp.raise_for_status()
        models: List[ProviderModelInfo] = []
        for item in resp.json().get("data") or []:
            model_id = str(item.get("id") or "")
            lowered = model_id.lower()
            if not lowered.startswith(CHAT_MODEL_PREFIXES):
                continue
            if any(marker in lowered for marker in EXCLUDED_MODEL_MARKERS):
                continue
            models.append(
                ProviderModelInfo(
                    id=model_id,
                    label=model_id,
                    description=f"Owned by {item.get('owned_by')}" if item.get("owned_by") else None,
                    capabilities={"tools": True},
                    input_modalities=["text", "image"] if "4o" in lowered or "4.1" in lowered else ["text"],
                    raw=item,
                )
            )
        return models
