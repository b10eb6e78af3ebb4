import json
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


Role = Literal["user", "assistant"]
StreamEventKind = Literal["chunk", "error", "complete", "timeout"]
TERMINAL_STREAM_EVENTS = ("error", "complete", "timeout")


class ChatTurn(BaseModel):
    """One message of a conversation as handed to a provider adapter."""

    role: Role
    content: str = ""
    image_url: Optional[str] = None
    file_url: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_user(self) -> bool:
        return self.role == "user"


class GroundingSource(BaseModel):
    title: str = ""
    uri: str = ""


class GroundingCitation(BaseModel):
    text: str = ""
    start_index: Optional[int] = Field(default=None, alias="startIndex")
    end_index: Optional[int] = Field(default=None, alias="endIndex")
    sources: List[int] = Field(default_factory=list)
    confidence: List[float] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class GroundingMetadata(BaseModel):
    search_entry_point: Optional[Dict[str, Any]] = Field(default=None, alias="searchEntryPoint")
    search_suggestions: List[str] = Field(default_factory=list, alias="searchSuggestions")
    sources: List[GroundingSource] = Field(default_factory=list)
    citations: List[GroundingCitation] = Field(default_factory=list)

    model_config = {"populate_by_name": True}

    def is_empty(self) -> bool:
        return not (self.search_entry_point or self.search_suggestions or self.sources or self.citations)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class PlainReply(BaseModel):
    kind: Literal["plain"] = "plain"
    text: str
    is_error: bool = False


class GroundedReply(BaseModel):
    kind: Literal["grounded"] = "grounded"
    text: str
    metadata: GroundingMetadata
    is_error: bool = False


Reply = Union[PlainReply, GroundedReply]


def error_reply(message: str) -> PlainReply:
    return PlainReply(text=message, is_error=True)


def parse_envelope(raw: str) -> Reply:
    """Unwrap a `{text, groundingMetadata}` envelope; anything else is plain text."""
    stripped = (raw or "").strip()
    if not stripped.startswith("{"):
        return PlainReply(text=raw or "")
    try:
        data = json.loads(stripped)
    except ValueError:
        return PlainReply(text=raw)
    if not isinstance(data, dict) or not isinstance(data.get("text"), str):
        return PlainReply(text=raw)
    metadata = data.get("groundingMetadata")
    if not isinstance(metadata, dict):
        return PlainReply(text=data["text"])
    return GroundedReply(text=data["text"], metadata=GroundingMetadata.model_validate(metadata))


class StreamEvent(BaseModel):
    kind: StreamEventKind
    data: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_STREAM_EVENTS

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind, "data": self.data}


class ModelConfig(BaseModel):
    """Generation parameters; keys follow the provider-neutral camelCase naming."""

    temperature: Optional[float] = None
    top_p: Optional[float] = Field(default=None, alias="topP")
    top_k: Optional[int] = Field(default=None, alias="topK")
    max_output_tokens: Optional[int] = Field(default=None, alias="maxOutputTokens")

    model_config = {"populate_by_name": True, "protected_namespaces": ()}

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class SendMessageRequest(BaseModel):
    content: str = ""
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    file_url: Optional[str] = Field(default=None, alias="fileUrl")
    use_web_search: bool = Field(default=False, alias="useWebSearch")
    model_config_override: Optional[ModelConfig] = Field(default=None, alias="modelConfig")

    model_config = {"populate_by_name": True, "protected_namespaces": ()}


class SetActiveModelRequest(BaseModel):
    model_id: int = Field(alias="modelId")
    config: Optional[ModelConfig] = None

    model_config = {"populate_by_name": True, "protected_namespaces": ()}


class CreateConversationRequest(BaseModel):
    title: Optional[str] = None
    folder_id: Optional[str] = Field(default=None, alias="folderId")
    is_persona: bool = Field(default=False, alias="isPersona")
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")

    model_config = {"populate_by_name": True}


class CreateEventRequest(BaseModel):
    title: str
    start_time: str = Field(alias="startTime")
    end_time: str = Field(alias="endTime")
    description: Optional[str] = None
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")

    model_config = {"populate_by_name": True}
