import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiosqlite

from .capabilities import ModelCapabilities
from .catalog_defaults import DEFAULT_MODELS


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _str_to_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class ModelCatalogEntry:
    id: int
    provider: str
    name: str
    label: str
    capabilities: ModelCapabilities = field(default_factory=ModelCapabilities)
    default_config: Dict[str, Any] = field(default_factory=dict)
    is_available: bool = True
    last_seen_at: Optional[datetime] = None
    marked_as_missing_since: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider,
            "name": self.name,
            "label": self.label,
            "capabilities": self.capabilities.to_dict(),
            "defaultConfig": dict(self.default_config),
            "isAvailable": self.is_available,
            "lastSeenAt": _dt_to_str(self.last_seen_at),
            "markedAsMissingSince": _dt_to_str(self.marked_as_missing_since),
        }


_COLUMNS = (
    "id, provider, name, label, capabilities_json, default_config_json, "
    "is_available, last_seen_at, marked_as_missing_since"
)


def _row_to_entry(row: aiosqlite.Row) -> ModelCatalogEntry:
    return ModelCatalogEntry(
        id=row["id"],
        provider=row["provider"],
        name=row["name"],
        label=row["label"] or row["name"],
        capabilities=ModelCapabilities.from_dict(json.loads(row["capabilities_json"] or "{}")),
        default_config=json.loads(row["default_config_json"] or "{}"),
        is_available=bool(row["is_available"]),
        last_seen_at=_str_to_dt(row["last_seen_at"]),
        marked_as_missing_since=_str_to_dt(row["marked_as_missing_since"]),
    )


class ModelCatalog:
    """Catalog of provider models. Entries are soft-deleted through `is_available`, never removed."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    async def init(self) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(
                """
                CREATE TABLE IF NOT EXISTS models(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    provider TEXT NOT NULL,
                    name TEXT NOT NULL,
                    label TEXT,
                    capabilities_json TEXT,
                    default_config_json TEXT,
                    is_available INTEGER DEFAULT 1,
                    last_seen_at TEXT,
                    marked_as_missing_since TEXT,
                    UNIQUE(provider, name)
                );
                """
            )
            await db.commit()

    async def seed_defaults(self) -> int:
        """Insert the static default models when the catalog is empty."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("SELECT COUNT(*) FROM models")
            row = await cursor.fetchone()
            await cursor.close()
        if row and row[0]:
            return 0
        for item in DEFAULT_MODELS:
            await self.create(
                provider=item["provider"],
                name=item["name"],
                label=item["label"],
                capabilities=ModelCapabilities.from_dict(item["capabilities"]),
                default_config=item["default_config"],
                last_seen_at=None,
            )
        return len(DEFAULT_MODELS)

    async def _fetch(self, where: str = "", params: tuple = ()) -> List[ModelCatalogEntry]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(f"SELECT {_COLUMNS} FROM models {where}", params)
            rows = await cursor.fetchall()
            await cursor.close()
        return [_row_to_entry(row) for row in rows]

    async def list_all(self, available_only: bool = False) -> List[ModelCatalogEntry]:
        where = "WHERE is_available=1 ORDER BY id" if available_only else "ORDER BY id"
        return await self._fetch(where)

    async def find_by_provider(self, provider: str) -> List[ModelCatalogEntry]:
        return await self._fetch("WHERE provider=? ORDER BY id", (provider,))

    async def get(self, model_id: int) -> Optional[ModelCatalogEntry]:
        rows = await self._fetch("WHERE id=?", (model_id,))
        return rows[0] if rows else None

    async def find_by_name(self, provider: str, name: str) -> Optional[ModelCatalogEntry]:
        rows = await self._fetch("WHERE provider=? AND name=?", (provider, name))
        return rows[0] if rows else None

    async def first_available(self, provider: Optional[str] = None) -> Optional[ModelCatalogEntry]:
        if provider:
            rows = await self._fetch("WHERE is_available=1 AND provider=? ORDER BY id LIMIT 1", (provider,))
        else:
            rows = await self._fetch("WHERE is_available=1 ORDER BY id LIMIT 1")
        return rows[0] if rows else None

    async def create(
        self,
        provider: str,
        name: str,
        label: Optional[str] = None,
        capabilities: Optional[ModelCapabilities] = None,
        default_config: Optional[Dict[str, Any]] = None,
        is_available: bool = True,
        last_seen_at: Optional[datetime] = None,
        marked_as_missing_since: Optional[datetime] = None,
    ) -> ModelCatalogEntry:
        caps = capabilities or ModelCapabilities()
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "INSERT INTO models(provider, name, label, capabilities_json, default_config_json, "
                "is_available, last_seen_at, marked_as_missing_since) VALUES (?,?,?,?,?,?,?,?)",
                (
                    provider,
                    name,
                    label or name,
                    json.dumps(caps.to_dict()),
                    json.dumps(default_config or {}),
                    1 if is_available else 0,
                    _dt_to_str(last_seen_at),
                    _dt_to_str(marked_as_missing_since),
                ),
            )
            await db.commit()
            new_id = cursor.lastrowid
        entry = await self.get(new_id)
        assert entry is not None
        return entry

    async def update(self, model_id: int, **changes: Any) -> Optional[ModelCatalogEntry]:
        """Apply field changes; accepted keys mirror the `ModelCatalogEntry` attributes."""
        columns: Dict[str, Any] = {}
        if "label" in changes:
            columns["label"] = changes["label"]
        if "capabilities" in changes:
            columns["capabilities_json"] = json.dumps(changes["capabilities"].to_dict())
        if "default_config" in changes:
            columns["default_config_json"] = json.dumps(changes["default_config"] or {})
        if "is_available" in changes:
            columns["is_available"] = 1 if changes["is_available"] else 0
        if "last_seen_at" in changes:
            columns["last_seen_at"] = _dt_to_str(changes["last_seen_at"])
        if "marked_as_missing_since" in changes:
            columns["marked_as_missing_since"] = _dt_to_str(changes["marked_as_missing_since"])
        if columns:
            assignments = ", ".join(f"{col}=?" for col in columns)
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    f"UPDATE models SET {assignments} WHERE id=?",
                    (*columns.values(), model_id),
                )
                await db.commit()
        return await self.get(model_id)
