"""Capability inference for provider model listings.

Providers describe their models loosely: some send explicit capability maps,
some send lists of modality strings and some send nothing but an identifier.
Everything is folded into one fixed `ModelCapabilities` struct here, driven
by the rule tables below so new heuristics are a one-line change.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple


@dataclass(frozen=True)
class ModelCapabilities:
    text_input: bool = True
    image_input: bool = False
    file_input: bool = False
    web_search: bool = False
    tool_use: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return {
            "textInput": self.text_input,
            "imageInput": self.image_input,
            "fileInput": self.file_input,
            "webSearch": self.web_search,
            "tool_use": self.tool_use,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ModelCapabilities":
        data = data or {}
        return cls(
            text_input=bool(data.get("textInput", data.get("text_input", True))),
            image_input=bool(data.get("imageInput", data.get("image_input", False))),
            file_input=bool(data.get("fileInput", data.get("file_input", False))),
            web_search=bool(data.get("webSearch", data.get("web_search", False))),
            tool_use=bool(data.get("tool_use", data.get("toolUse", False))),
        )

    def merged_over(self, base: "ModelCapabilities") -> "ModelCapabilities":
        """Flags inferred here win; anything only the base knows about is kept."""
        mine = asdict(self)
        theirs = asdict(base)
        return ModelCapabilities(**{k: mine[k] or theirs[k] for k in mine})


# Input modality strings -> capability flag.
MODALITY_RULES: Dict[str, str] = {
    "text": "text_input",
    "image": "image_input",
    "vision": "image_input",
    "file": "file_input",
    "pdf": "file_input",
}

# Raw capability keys (dict keys with truthy values, or list members) -> flags.
RAW_CAPABILITY_RULES: Dict[str, Tuple[str, ...]] = {
    "vision": ("image_input",),
    "multimodal": ("image_input",),
    "tool_use": ("tool_use",),
    "tools": ("tool_use",),
    "function_calling": ("tool_use",),
    "grounding": ("web_search",),
    "webSearch": ("web_search",),
    "web_search": ("web_search",),
}

# (provider or "*", substrings that must all be in the id, flag)
NAME_RULES: List[Tuple[str, Tuple[str, ...], str]] = [
    ("*", ("vision",), "image_input"),
    ("openai", ("gpt-4",), "image_input"),
    ("openai", ("gpt-4",), "tool_use"),
    ("gemini", ("flash",), "web_search"),
    ("gemini", ("pro",), "web_search"),
    ("anthropic", ("claude-3",), "image_input"),
]


def _raw_flags(raw_capabilities: Any) -> Iterable[str]:
    if isinstance(raw_capabilities, dict):
        keys = [k for k, v in raw_capabilities.items() if v]
    elif isinstance(raw_capabilities, (list, tuple, set)):
        keys = [str(k) for k in raw_capabilities]
    else:
        return []
    flags: List[str] = []
    for key in keys:
        flags.extend(RAW_CAPABILITY_RULES.get(key, ()))
    return flags


def infer_capabilities(
    provider: str,
    model_id: str,
    raw_capabilities: Any = None,
    input_modalities: Optional[Iterable[str]] = None,
) -> ModelCapabilities:
    flags = {"text_input": True, "image_input": False, "file_input": False, "web_search": False, "tool_use": False}
    for modality in input_modalities or ():
        flag = MODALITY_RULES.get(str(modality).lower())
        if flag:
            flags[flag] = True
    for flag in _raw_flags(raw_capabilities):
        flags[flag] = True
    lowered = (model_id or "").lower()
    for rule_provider, needles, flag in NAME_RULES:
        if rule_provider not in ("*", provider):
            continue
        if all(needle in lowered for needle in needles):
            flags[flag] = True
    return ModelCapabilities(**flags)
