import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from .errors import NotFoundError, OwnershipError


DEFAULT_TITLE = "Untitled Conversation"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _json_dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=True)


def _json_loads(value: Optional[str]) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except ValueError:
        return None


def _as_plain(items: Optional[List[Any]]) -> Optional[List[Dict[str, Any]]]:
    if items is None:
        return None
    plain = []
    for item in items:
        if hasattr(item, "model_dump"):
            plain.append(item.model_dump())
        else:
            plain.append(dict(item))
    return plain


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS users(
                    clerk_id TEXT PRIMARY KEY,
                    name TEXT,
                    email TEXT,
                    image_url TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS conversations(
                    id TEXT PRIMARY KEY,
                    clerk_id TEXT NOT NULL,
                    title TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_conversations_owner ON conversations(clerk_id);
                CREATE INDEX IF NOT EXISTS idx_conversations_updated ON conversations(updated_at);
                CREATE TABLE IF NOT EXISTS messages(
                    id TEXT PRIMARY KEY,
                    clerk_id TEXT NOT NULL,
                    conversation_id TEXT NOT NULL,
                    sender TEXT,
                    type TEXT,
                    status TEXT,
                    text TEXT,
                    image_url TEXT,
                    resources_json TEXT,
                    images_json TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id);
                CREATE TABLE IF NOT EXISTS jobs(
                    job_id TEXT PRIMARY KEY,
                    event_name TEXT,
                    function_id TEXT,
                    payload_json TEXT,
                    status TEXT,
                    attempts INTEGER DEFAULT 0,
                    last_error TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS job_steps(
                    job_id TEXT,
                    step_name TEXT,
                    status TEXT,
                    output_json TEXT,
                    error_text TEXT,
                    attempts INTEGER DEFAULT 0,
                    updated_at TEXT,
                    PRIMARY KEY (job_id, step_name)
                );
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

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

    # Users

    async def get_or_create_user(
        self,
        clerk_id: str,
        name: str = "",
        email: str = "",
        image_url: str = "",
    ) -> dict:
        row = await self.fetchone(
            "SELECT clerk_id, name, email, image_url, created_at FROM users WHERE clerk_id=?", (clerk_id,)
        )
        if row:
            return dict(row)
        created_at = utc_now()
        await self.execute(
            "INSERT OR IGNORE INTO users(clerk_id, name, email, image_url, created_at) VALUES (?,?,?,?,?)",
            (clerk_id, name, email, image_url, created_at),
        )
        return {"clerk_id": clerk_id, "name": name, "email": email, "image_url": image_url, "created_at": created_at}

    # Conversations

    @staticmethod
    def _conversation_dict(row: aiosqlite.Row) -> dict:
        return {
            "id": row["id"],
            "clerk_id": row["clerk_id"],
            "title": row["title"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    async def touch_conversation(self, conversation_id: Optional[str], updated_at: Optional[str] = None) -> Optional[str]:
        if not conversation_id:
            return None
        stamp = updated_at or utc_now()
        await self.execute("UPDATE conversations SET updated_at=? WHERE id=?", (stamp, conversation_id))
        return stamp

    async def create_conversation(self, clerk_id: str, title: Optional[str] = None) -> dict:
        convo_id = uuid.uuid4().hex
        created_at = utc_now()
        await self.execute(
            "INSERT INTO conversations(id, clerk_id, title, created_at, updated_at) VALUES (?,?,?,?,?)",
            (convo_id, clerk_id, title or DEFAULT_TITLE, created_at, created_at),
        )
        return {
            "id": convo_id,
            "clerk_id": clerk_id,
            "title": title or DEFAULT_TITLE,
            "created_at": created_at,
            "updated_at": created_at,
        }

    async def get_conversation(self, conversation_id: str, clerk_id: str) -> dict:
        row = await self.fetchone(
            "SELECT id, clerk_id, title, created_at, updated_at FROM conversations WHERE id=?",
            (conversation_id,),
        )
        if not row:
            raise NotFoundError("Conversation not found", {"conversation_id": conversation_id})
        if row["clerk_id"] != clerk_id:
            raise OwnershipError("Unauthorized to access this conversation", {"conversation_id": conversation_id})
        return self._conversation_dict(row)

    async def list_conversations(self, clerk_id: str) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, clerk_id, title, created_at, updated_at FROM conversations "
            "WHERE clerk_id=? ORDER BY updated_at DESC, created_at DESC",
            (clerk_id,),
        )
        return [self._conversation_dict(r) for r in rows]

    async def update_conversation_title(self, conversation_id: str, clerk_id: str, title: str) -> dict:
        await self.get_conversation(conversation_id, clerk_id)
        await self.execute(
            "UPDATE conversations SET title=?, updated_at=? WHERE id=?",
            (title, utc_now(), conversation_id),
        )
        return await self.get_conversation(conversation_id, clerk_id)

    async def delete_conversation(self, conversation_id: str, clerk_id: str) -> None:
        await self.get_conversation(conversation_id, clerk_id)
        async with aiosqlite.connect(self.path) as db:
            # Messages go first so no message outlives its conversation.
            await db.execute("DELETE FROM messages WHERE conversation_id=?", (conversation_id,))
            await db.execute("DELETE FROM conversations WHERE id=?", (conversation_id,))
            await db.commit()

    async def search_conversations(self, clerk_id: str, term: str) -> List[dict]:
        needle = (term or "").lower()
        conversations = await self.list_conversations(clerk_id)
        by_title = [c for c in conversations if needle in (c["title"] or "").lower()]
        rows = await self.fetchall(
            "SELECT conversation_id, text FROM messages WHERE clerk_id=?",
            (clerk_id,),
        )
        matching_ids = {r["conversation_id"] for r in rows if r["text"] and needle in r["text"].lower()}
        by_message = [c for c in conversations if c["id"] in matching_ids]
        unique: Dict[str, dict] = {}
        for convo in by_title + by_message:
            unique[convo["id"]] = convo
        return sorted(unique.values(), key=lambda c: c["updated_at"] or "", reverse=True)

    # Messages

    @staticmethod
    def _message_dict(row: aiosqlite.Row) -> dict:
        return {
            "id": row["id"],
            "clerk_id": row["clerk_id"],
            "conversation_id": row["conversation_id"],
            "sender": row["sender"],
            "type": row["type"],
            "status": row["status"],
            "text": row["text"],
            "image_url": row["image_url"],
            "resources": _json_loads(row["resources_json"]),
            "images": _json_loads(row["images_json"]),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    _MESSAGE_COLUMNS = (
        "id, clerk_id, conversation_id, sender, type, status, text, image_url, "
        "resources_json, images_json, created_at, updated_at"
    )

    async def create_message(
        self,
        clerk_id: str,
        conversation_id: str,
        sender: str,
        type: str,
        status: str,
        text: str = "",
        image_url: Optional[str] = None,
        resources: Optional[List[Any]] = None,
        images: Optional[List[Any]] = None,
    ) -> dict:
        message_id = uuid.uuid4().hex
        created_at = utc_now()
        await self.touch_conversation(conversation_id, updated_at=created_at)
        await self.execute(
            f"INSERT INTO messages({self._MESSAGE_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?,?,?,?)",
            (
                message_id,
                clerk_id,
                conversation_id,
                sender,
                type,
                status,
                text,
                image_url,
                _json_dumps(_as_plain(resources)),
                _json_dumps(_as_plain(images)),
                created_at,
                created_at,
            ),
        )
        return {
            "id": message_id,
            "clerk_id": clerk_id,
            "conversation_id": conversation_id,
            "sender": sender,
            "type": type,
            "status": status,
            "text": text,
            "image_url": image_url,
            "resources": _as_plain(resources),
            "images": _as_plain(images),
            "created_at": created_at,
            "updated_at": created_at,
        }

    async def get_message(self, message_id: str) -> Optional[dict]:
        row = await self.fetchone(f"SELECT {self._MESSAGE_COLUMNS} FROM messages WHERE id=?", (message_id,))
        return self._message_dict(row) if row else None

    async def get_owned_message(self, message_id: str, clerk_id: str) -> dict:
        message = await self.get_message(message_id)
        if not message:
            raise NotFoundError("Message not found", {"message_id": message_id})
        if message["clerk_id"] != clerk_id:
            raise OwnershipError("Unauthorized to access this message", {"message_id": message_id})
        return message

    async def update_message(
        self,
        message_id: str,
        status: Optional[str] = None,
        text: Optional[str] = None,
        type: Optional[str] = None,
        resources: Optional[List[Any]] = None,
        images: Optional[List[Any]] = None,
        image_url: Optional[str] = None,
    ) -> dict:
        """Replace the terminal fields of a message; omitted fields are cleared."""
        existing = await self.get_message(message_id)
        if not existing:
            raise NotFoundError("Message not found", {"message_id": message_id})
        updated_at = utc_now()
        await self.touch_conversation(existing["conversation_id"], updated_at=updated_at)
        await self.execute(
            "UPDATE messages SET status=?, text=?, type=?, resources_json=?, images_json=?, image_url=?, updated_at=? "
            "WHERE id=?",
            (
                status,
                text,
                type,
                _json_dumps(_as_plain(resources)),
                _json_dumps(_as_plain(images)),
                image_url,
                updated_at,
                message_id,
            ),
        )
        return {
            **existing,
            "status": status,
            "text": text,
            "type": type,
            "resources": _as_plain(resources),
            "images": _as_plain(images),
            "image_url": image_url,
            "updated_at": updated_at,
        }

    async def list_messages(self, conversation_id: str, clerk_id: str) -> List[dict]:
        await self.get_conversation(conversation_id, clerk_id)
        rows = await self.fetchall(
            f"SELECT {self._MESSAGE_COLUMNS} FROM messages WHERE conversation_id=? ORDER BY rowid ASC",
            (conversation_id,),
        )
        return [self._message_dict(r) for r in rows]

    async def get_previous_messages(self, conversation_id: str, clerk_id: str, limit: int = 5) -> List[dict]:
        # Storage insertion order; no recency ordering is applied.
        rows = await self.fetchall(
            f"SELECT {self._MESSAGE_COLUMNS} FROM messages WHERE conversation_id=? AND clerk_id=? "
            "ORDER BY rowid ASC LIMIT ?",
            (conversation_id, clerk_id, limit),
        )
        return [self._message_dict(r) for r in rows]

    async def list_generated_images(self, clerk_id: str) -> List[dict]:
        rows = await self.fetchall(
            f"SELECT {self._MESSAGE_COLUMNS} FROM messages WHERE clerk_id=? AND type='image' "
            "ORDER BY rowid ASC",
            (clerk_id,),
        )
        return [self._message_dict(r) for r in rows]

    async def count_messages(self, conversation_id: str) -> int:
        row = await self.fetchone(
            "SELECT COUNT(*) AS cnt FROM messages WHERE conversation_id=?", (conversation_id,)
        )
        return int(row["cnt"]) if row else 0
