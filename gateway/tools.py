import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .db import Database

logger = logging.getLogger("uvicorn.error")

PT_BR_MONTHS = (
    "janeiro",
    "fevereiro",
    "março",
    "abril",
    "maio",
    "junho",
    "julho",
    "agosto",
    "setembro",
    "outubro",
    "novembro",
    "dezembro",
)

CURRENT_DATETIME_TOOL = "obterDataHoraAtual"
CREATE_EVENT_TOOL = "criar_evento_calendario"
LIST_EVENTS_TOOL = "listar_eventos_calendario"

TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": CURRENT_DATETIME_TOOL,
            "description": "Returns the current date and time, formatted.",
            "parameters": {"type": "object", "properties": {}, "required": []},
        },
    },
    {
        "type": "function",
        "function": {
            "name": CREATE_EVENT_TOOL,
            "description": (
                "Creates a calendar event. Requires a title, a start date-time and an end date-time. "
                "The description is optional."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "title": {"type": "string", "description": "Event title."},
                    "startTime": {
                        "type": "string",
                        "description": "Start in ISO 8601, e.g. '2025-06-01T15:00:00.000Z'.",
                    },
                    "endTime": {
                        "type": "string",
                        "description": "End in ISO 8601, e.g. '2025-06-01T16:00:00.000Z'.",
                    },
                    "description": {"type": "string", "description": "Longer description of the event."},
                },
                "required": ["title", "startTime", "endTime"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": LIST_EVENTS_TOOL,
            "description": "Lists calendar events, optionally limited to a date range.",
            "parameters": {
                "type": "object",
                "properties": {
                    "startDate": {"type": "string", "description": "First day, ISO 8601 date, e.g. '2025-06-01'."},
                    "endDate": {"type": "string", "description": "Last day, ISO 8601 date, e.g. '2025-06-02'."},
                },
                "required": [],
            },
        },
    },
]


def format_pt_br_datetime(value: datetime) -> str:
    """e.g. `31 de maio de 2025, 15:10:30`."""
    month = PT_BR_MONTHS[value.month - 1]
    return f"{value.day:02d} de {month} de {value.year}, {value:%H:%M:%S}"


def _parse_iso(value: Any) -> datetime:
    text = str(value or "").strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


class ToolExecutor:
    """Runs server-side tools requested by a model and returns JSON-serializable payloads."""

    def __init__(self, db: Database, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.clock = clock or datetime.now
        self._handlers = {
            CURRENT_DATETIME_TOOL: self._current_datetime,
            CREATE_EVENT_TOOL: self._create_event,
            LIST_EVENTS_TOOL: self._list_events,
        }

    @property
    def definitions(self) -> List[Dict[str, Any]]:
        return TOOL_DEFINITIONS

    async def execute(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        conversation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        handler = self._handlers.get(name)
        if handler is None:
            logger.warning("Model requested unknown tool %s", name)
            return {"error": "tool_not_found", "tool": name}
        try:
            return await handler(arguments or {}, conversation_id)
        except Exception as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            return {"error": "tool_failed", "tool": name, "message": str(exc)}

    async def _scoped_conversation(self, conversation_id: Optional[str]) -> Optional[str]:
        # Only the designated main-agent conversation gets calendar attribution.
        if not conversation_id:
            return None
        main_id = await self.db.get_main_agent_conversation_id()
        return conversation_id if main_id and main_id == conversation_id else None

    async def _current_datetime(self, arguments: Dict[str, Any], conversation_id: Optional[str]) -> Dict[str, Any]:
        return {"result": format_pt_br_datetime(self.clock())}

    async def _create_event(self, arguments: Dict[str, Any], conversation_id: Optional[str]) -> Dict[str, Any]:
        missing = [key for key in ("title", "startTime", "endTime") if not arguments.get(key)]
        if missing:
            return {"error": "invalid_arguments", "missing": missing}
        start = _parse_iso(arguments["startTime"])
        end = _parse_iso(arguments["endTime"])
        if end < start:
            return {"error": "invalid_arguments", "message": "endTime is before startTime"}
        event = await self.db.create_event(
            title=str(arguments["title"]),
            start_time=start.isoformat(),
            end_time=end.isoformat(),
            description=arguments.get("description"),
            conversation_id=await self._scoped_conversation(conversation_id),
        )
        return {"success": True, "event": event}

    async def _list_events(self, arguments: Dict[str, Any], conversation_id: Optional[str]) -> Dict[str, Any]:
        events = await self.db.find_events_by_criteria(
            start_date=arguments.get("startDate"),
            end_date=arguments.get("endDate"),
            conversation_id=await self._scoped_conversation(conversation_id),
        )
        return {"events": events, "count": len(events)}
