from typing import Any, Dict, List, Optional


def _caps(image: bool = True, web: bool = False, tools: bool = False) -> Dict[str, bool]:
    return {"textInput": True, "imageInput": image, "fileInput": False, "webSearch": web, "tool_use": tools}


def _cfg(max_tokens: int) -> Dict[str, Any]:
    return {"temperature": 0.7, "maxOutputTokens": max_tokens}


# Seed data for an empty catalog and label/capability hints for newly synced models.
DEFAULT_MODELS: List[Dict[str, Any]] = [
    {
        "provider": "gemini",
        "name": "gemini-2.5-pro-preview-05-06",
        "label": "Gemini 2.5 Pro (05-06)",
        "capabilities": _caps(web=True),
        "default_config": _cfg(8192),
    },
    {
        "provider": "gemini",
        "name": "gemini-2.5-flash-preview-04-17",
        "label": "Gemini 2.5 Flash Preview (04-17)",
        "capabilities": _caps(web=True),
        "default_config": _cfg(8192),
    },
    {
        "provider": "gemini",
        "name": "gemini-2.0-flash",
        "label": "Gemini 2.0 Flash",
        "capabilities": _caps(web=True),
        "default_config": _cfg(8192),
    },
    {
        "provider": "gemini",
        "name": "gemini-2.0-flash-lite",
        "label": "Gemini 2.0 Flash Lite",
        "capabilities": _caps(image=False, web=True),
        "default_config": _cfg(4096),
    },
    {
        "provider": "openai",
        "name": "gpt-4o",
        "label": "GPT-4o",
        "capabilities": _caps(tools=True),
        "default_config": _cfg(4096),
    },
    {
        "provider": "openai",
        "name": "gpt-4o-mini",
        "label": "GPT-4o Mini",
        "capabilities": _caps(tools=True),
        "default_config": _cfg(4096),
    },
    {
        "provider": "anthropic",
        "name": "claude-3-opus-20240229",
        "label": "Claude 3 Opus (2024-02-29)",
        "capabilities": _caps(tools=True),
        "default_config": _cfg(4096),
    },
    {
        "provider": "anthropic",
        "name": "claude-3-haiku-20240307",
        "label": "Claude 3 Haiku (2024-03-07)",
        "capabilities": _caps(),
        "default_config": _cfg(4096),
    },
    {
        "provider": "anthropic",
        "name": "claude-3-5-sonnet-20241022",
        "label": "Claude 3.5 Sonnet (2024-10-22)",
        "capabilities": _caps(tools=True),
        "default_config": _cfg(4096),
    },
    {
        "provider": "anthropic",
        "name": "claude-3-7-sonnet-20250219",
        "label": "Claude 3.7 Sonnet (2025-02-19)",
        "capabilities": _caps(tools=True),
        "default_config": _cfg(4096),
    },
]


def get_default_model_details(provider: str, name: str) -> Optional[Dict[str, Any]]:
    for item in DEFAULT_MODELS:
        if item["provider"] == provider and item["name"] == name:
            return item
    return None
