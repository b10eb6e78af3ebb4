import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from .schemas import GroundedReply, parse_envelope


DEFAULT_CONVERSATION_TITLE = "New Conversation"


def utc_now() -> str:
    return datetime.utcnow().isoformat() + "Z"


def _message_row(row: aiosqlite.Row) -> dict:
    content = row["content"]
    grounding = json.loads(row["grounding_metadata_json"]) if row["grounding_metadata_json"] else None
    if row["role"] != "user" and grounding is None:
        # Older rows kept grounded replies as a `{text, groundingMetadata}` JSON string in content.
        reply = parse_envelope(content or "")
        if isinstance(reply, GroundedReply):
            content, grounding = reply.text, reply.metadata.to_wire()
    return {
        "id": row["id"],
        "conversation_id": row["conversation_id"],
        "role": row["role"],
        "is_user": row["role"] == "user",
        "content": content,
        "image_url": row["image_url"],
        "file_url": row["file_url"],
        "grounding_metadata": grounding,
        "is_error": bool(row["is_error"]),
        "created_at": row["created_at"],
    }


def _conversation_row(row: aiosqlite.Row) -> dict:
    return {
        "id": row["id"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "title": row["title"],
        "folder_id": row["folder_id"],
        "is_persona": bool(row["is_persona"]),
        "system_prompt": row["system_prompt"],
    }


def _event_row(row: aiosqlite.Row) -> dict:
    return {
        "id": row["id"],
        "title": row["title"],
        "description": row["description"],
        "start_time": row["start_time"],
        "end_time": row["end_time"],
        "conversation_id": row["conversation_id"],
        "created_at": row["created_at"],
    }


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS folders(
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    system_prompt TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS conversations(
                    id TEXT PRIMARY KEY,
                    created_at TEXT,
                    updated_at TEXT,
                    title TEXT,
                    folder_id TEXT,
                    is_persona INTEGER DEFAULT 0,
                    system_prompt TEXT
                );
                CREATE TABLE IF NOT EXISTS messages(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id TEXT,
                    role TEXT,
                    content TEXT,
                    image_url TEXT,
                    file_url TEXT,
                    grounding_metadata_json TEXT,
                    is_error INTEGER DEFAULT 0,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    description TEXT,
                    start_time TEXT NOT NULL,
                    end_time TEXT NOT NULL,
                    conversation_id TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS agents(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT,
                    conversation_id TEXT,
                    is_main INTEGER DEFAULT 0,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS app_config(
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    system_prompt TEXT,
                    updated_at TEXT
                );
                """
            )

            async def column_exists(table: str, column: str) -> bool:
                cursor = await db.execute(f"PRAGMA table_info({table})")
                rows = await cursor.fetchall()
                await cursor.close()
                return any(r[1] == column for r in rows)

            async def ensure_column(table: str, column: str, decl: str) -> None:
                if not await column_exists(table, column):
                    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")

            await ensure_column("messages", "grounding_metadata_json", "TEXT")
            await ensure_column("messages", "is_error", "INTEGER DEFAULT 0")
            await ensure_column("conversations", "folder_id", "TEXT")
            await db.execute("INSERT OR IGNORE INTO app_config(id, system_prompt, updated_at) VALUES (1, NULL, NULL)")
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def insert(self, query: str, params: Tuple[Any, ...] = ()) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.lastrowid

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    # Conversations

    async def touch_conversation(self, conversation_id: Optional[str], updated_at: Optional[str] = None) -> Optional[str]:
        if not conversation_id:
            return None
        stamp = updated_at or utc_now()
        await self.execute("UPDATE conversations SET updated_at=? WHERE id=?", (stamp, conversation_id))
        return stamp

    async def create_conversation(
        self,
        title: Optional[str] = None,
        folder_id: Optional[str] = None,
        is_persona: bool = False,
        system_prompt: Optional[str] = None,
    ) -> dict:
        convo_id = uuid.uuid4().hex
        created_at = utc_now()
        await self.execute(
            "INSERT INTO conversations(id, created_at, updated_at, title, folder_id, is_persona, system_prompt) "
            "VALUES (?,?,?,?,?,?,?)",
            (
                convo_id,
                created_at,
                created_at,
                title or DEFAULT_CONVERSATION_TITLE,
                folder_id,
                1 if is_persona else 0,
                system_prompt,
            ),
        )
        convo = await self.get_conversation(convo_id)
        assert convo is not None
        return convo

    async def get_conversation(self, conversation_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, created_at, updated_at, title, folder_id, is_persona, system_prompt "
            "FROM conversations WHERE id=?",
            (conversation_id,),
        )
        return _conversation_row(row) if row else None

    async def find_one(self, conversation_id: str) -> Optional[dict]:
        """Conversation with its folder resolved, as needed to pick a system prompt."""
        convo = await self.get_conversation(conversation_id)
        if not convo:
            return None
        convo["folder"] = await self.get_folder(convo["folder_id"]) if convo["folder_id"] else None
        return convo

    async def list_conversations(self, folder_id: Optional[str] = None, limit: int = 200) -> List[dict]:
        if folder_id:
            rows = await self.fetchall(
                "SELECT id, created_at, updated_at, title, folder_id, is_persona, system_prompt FROM conversations "
                "WHERE folder_id=? ORDER BY updated_at DESC, created_at DESC LIMIT ?",
                (folder_id, limit),
            )
        else:
            rows = await self.fetchall(
                "SELECT id, created_at, updated_at, title, folder_id, is_persona, system_prompt FROM conversations "
                "ORDER BY updated_at DESC, created_at DESC LIMIT ?",
                (limit,),
            )
        return [_conversation_row(r) for r in rows]

    async def update_conversation(self, conversation_id: str, **changes: Any) -> Optional[dict]:
        convo = await self.get_conversation(conversation_id)
        if not convo:
            return None
        allowed = ("title", "folder_id", "is_persona", "system_prompt")
        merged = {key: changes[key] if key in changes else convo[key] for key in allowed}
        await self.execute(
            "UPDATE conversations SET title=?, folder_id=?, is_persona=?, system_prompt=?, updated_at=? WHERE id=?",
            (
                merged["title"],
                merged["folder_id"],
                1 if merged["is_persona"] else 0,
                merged["system_prompt"],
                utc_now(),
                conversation_id,
            ),
        )
        return await self.get_conversation(conversation_id)

    async def ensure_conversation_title(self, conversation_id: str, title: str) -> bool:
        """Set a generated title unless the user already renamed the conversation."""
        row = await self.fetchone("SELECT title FROM conversations WHERE id=?", (conversation_id,))
        if not row:
            return False
        current = (row["title"] or "").strip()
        if current and current != DEFAULT_CONVERSATION_TITLE:
            return False
        await self.execute(
            "UPDATE conversations SET title=?, updated_at=? WHERE id=?",
            (title, utc_now(), conversation_id),
        )
        return True

    async def delete_conversation(self, conversation_id: str) -> None:
        await self.execute("DELETE FROM messages WHERE conversation_id=?", (conversation_id,))
        await self.execute("UPDATE agents SET conversation_id=NULL WHERE conversation_id=?", (conversation_id,))
        await self.execute("DELETE FROM conversations WHERE id=?", (conversation_id,))

    # Messages

    async def _add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        image_url: Optional[str] = None,
        file_url: Optional[str] = None,
        grounding_metadata: Optional[Dict[str, Any]] = None,
        is_error: bool = False,
    ) -> dict:
        created_at = utc_now()
        message_id = await self.insert(
            "INSERT INTO messages(conversation_id, role, content, image_url, file_url, grounding_metadata_json, "
            "is_error, created_at) VALUES (?,?,?,?,?,?,?,?)",
            (
                conversation_id,
                role,
                content,
                image_url,
                file_url,
                json.dumps(grounding_metadata) if grounding_metadata else None,
                1 if is_error else 0,
                created_at,
            ),
        )
        await self.touch_conversation(conversation_id, updated_at=created_at)
        row = await self.fetchone("SELECT * FROM messages WHERE id=?", (message_id,))
        return _message_row(row)

    async def add_user_message(
        self,
        conversation_id: str,
        content: str,
        image_url: Optional[str] = None,
        file_url: Optional[str] = None,
    ) -> dict:
        return await self._add_message(conversation_id, "user", content, image_url=image_url, file_url=file_url)

    async def add_bot_message(
        self,
        conversation_id: str,
        content: str,
        grounding_metadata: Optional[Dict[str, Any]] = None,
        is_error: bool = False,
    ) -> dict:
        return await self._add_message(
            conversation_id, "assistant", content, grounding_metadata=grounding_metadata, is_error=is_error
        )

    async def list_messages(self, conversation_id: str, limit: int = 500) -> List[dict]:
        rows = await self.fetchall(
            "SELECT * FROM (SELECT * FROM messages WHERE conversation_id=? ORDER BY id DESC LIMIT ?) ORDER BY id ASC",
            (conversation_id, limit),
        )
        return [_message_row(r) for r in rows]

    # Folders

    async def create_folder(self, name: str, system_prompt: Optional[str] = None) -> dict:
        folder_id = uuid.uuid4().hex
        now = utc_now()
        await self.execute(
            "INSERT INTO folders(id, name, system_prompt, created_at, updated_at) VALUES (?,?,?,?,?)",
            (folder_id, name, system_prompt, now, now),
        )
        folder = await self.get_folder(folder_id)
        assert folder is not None
        return folder

    async def get_folder(self, folder_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, name, system_prompt, created_at, updated_at FROM folders WHERE id=?",
            (folder_id,),
        )
        if not row:
            return None
        return dict(row)

    async def list_folders(self) -> List[dict]:
        rows = await self.fetchall("SELECT id, name, system_prompt, created_at, updated_at FROM folders ORDER BY name")
        return [dict(r) for r in rows]

    async def update_folder(
        self, folder_id: str, name: Optional[str] = None, system_prompt: Optional[str] = None
    ) -> Optional[dict]:
        folder = await self.get_folder(folder_id)
        if not folder:
            return None
        await self.execute(
            "UPDATE folders SET name=?, system_prompt=?, updated_at=? WHERE id=?",
            (
                name if name is not None else folder["name"],
                system_prompt if system_prompt is not None else folder["system_prompt"],
                utc_now(),
                folder_id,
            ),
        )
        return await self.get_folder(folder_id)

    async def delete_folder(self, folder_id: str) -> None:
        await self.execute("UPDATE conversations SET folder_id=NULL WHERE folder_id=?", (folder_id,))
        await self.execute("DELETE FROM folders WHERE id=?", (folder_id,))

    # Calendar

    async def create_event(
        self,
        title: str,
        start_time: str,
        end_time: str,
        description: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> dict:
        event_id = await self.insert(
            "INSERT INTO events(title, description, start_time, end_time, conversation_id, created_at) "
            "VALUES (?,?,?,?,?,?)",
            (title, description, start_time, end_time, conversation_id, utc_now()),
        )
        row = await self.fetchone("SELECT * FROM events WHERE id=?", (event_id,))
        return _event_row(row)

    async def find_events_by_criteria(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> List[dict]:
        clauses: List[str] = []
        params: List[Any] = []
        if start_date:
            clauses.append("start_time >= ?")
            params.append(start_date)
        if end_date:
            # Date-only bounds include the whole day.
            clauses.append("start_time <= ?")
            params.append(end_date + "T23:59:59" if len(end_date) == 10 else end_date)
        if conversation_id:
            clauses.append("conversation_id = ?")
            params.append(conversation_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self.fetchall(f"SELECT * FROM events {where} ORDER BY start_time ASC", tuple(params))
        return [_event_row(r) for r in rows]

    # Agents

    async def set_main_agent(self, conversation_id: str, name: str = "main") -> dict:
        await self.execute("UPDATE agents SET is_main=0")
        agent_id = await self.insert(
            "INSERT INTO agents(name, conversation_id, is_main, created_at) VALUES (?,?,1,?)",
            (name, conversation_id, utc_now()),
        )
        row = await self.fetchone("SELECT * FROM agents WHERE id=?", (agent_id,))
        return {"id": row["id"], "name": row["name"], "conversation_id": row["conversation_id"], "is_main": True}

    async def get_main_agent_conversation_id(self) -> Optional[str]:
        row = await self.fetchone(
            "SELECT conversation_id FROM agents WHERE is_main=1 ORDER BY id DESC LIMIT 1"
        )
        if row and row["conversation_id"]:
            return row["conversation_id"]
        return None

    # Global configuration

    async def get_system_prompt(self) -> Optional[str]:
        row = await self.fetchone("SELECT system_prompt FROM app_config WHERE id=1")
        if row and row["system_prompt"]:
            return row["system_prompt"]
        return None

    async def set_system_prompt(self, prompt: Optional[str]) -> str:
        updated_at = utc_now()
        await self.execute(
            "UPDATE app_config SET system_prompt=?, updated_at=? WHERE id=1",
            (prompt, updated_at),
        )
        return updated_at
