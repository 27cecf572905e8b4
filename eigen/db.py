import json
import time
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiosqlite


def unix_ms() -> int:
    return int(time.time() * 1000)


def _decode_images(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except Exception:
        return []
    if not isinstance(value, list):
        return []
    return [str(item) for item in value]


def _message_row(row: aiosqlite.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "role": row["role"],
        "content": row["content"],
        "thinking": row["thinking"] or "",
        "images": _decode_images(row["images"]),
        "created_at": row["created_at"],
        "duration_ms": row["duration_ms"],
    }


class Database:
    """Chat history store (conversations and their messages)."""

    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS conversations(
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    summary TEXT NOT NULL DEFAULT '',
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                );
                CREATE TABLE IF NOT EXISTS messages(
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    FOREIGN KEY(conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
                );
                CREATE INDEX IF NOT EXISTS idx_messages_conv_created
                    ON messages(conversation_id, created_at);
                """
            )

            async def column_exists(table: str, column: str) -> bool:
                cursor = await db.execute(f"PRAGMA table_info({table})")
                rows = await cursor.fetchall()
                await cursor.close()
                return any(row[1] == column for row in rows)

            async def ensure_column(table: str, column: str, decl: str) -> None:
                if not await column_exists(table, column):
                    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")

            await ensure_column("messages", "thinking", "TEXT NOT NULL DEFAULT ''")
            await ensure_column("messages", "images", "TEXT NOT NULL DEFAULT '[]'")
            await ensure_column("messages", "duration_ms", "INTEGER")
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

    async def create_conversation(self, title: Optional[str] = None) -> dict:
        convo_id = str(uuid.uuid4())
        now = unix_ms()
        await self.execute(
            "INSERT INTO conversations(id, title, summary, created_at, updated_at) VALUES (?,?,?,?,?)",
            (convo_id, title or "New chat", "", now, now),
        )
        return {"id": convo_id, "title": title or "New chat", "created_at": now, "updated_at": now}

    async def get_conversation(self, conversation_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, title, summary, created_at, updated_at FROM conversations WHERE id=?",
            (conversation_id,),
        )
        return dict(row) if row else None

    async def list_conversations(self, limit: int = 100) -> List[dict]:
        rows = await self.fetchall(
            "SELECT c.id, c.title, c.updated_at, "
            "COALESCE((SELECT substr(m.content, 1, 120) FROM messages m WHERE m.conversation_id = c.id "
            "ORDER BY m.created_at DESC, m.rowid DESC LIMIT 1), '') AS preview "
            "FROM conversations c ORDER BY c.updated_at DESC LIMIT ?",
            (limit,),
        )
        return [dict(r) for r in rows]

    async def rename_conversation(self, conversation_id: str, title: str) -> None:
        await self.execute(
            "UPDATE conversations SET title=?, updated_at=? WHERE id=?",
            (title, unix_ms(), conversation_id),
        )

    async def delete_conversation(self, conversation_id: str) -> None:
        await self.execute("DELETE FROM messages WHERE conversation_id=?", (conversation_id,))
        await self.execute("DELETE FROM conversations WHERE id=?", (conversation_id,))

    async def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        thinking: str = "",
        images: Optional[Sequence[str]] = None,
        duration_ms: Optional[int] = None,
    ) -> dict:
        msg_id = str(uuid.uuid4())
        now = unix_ms()
        images_json = json.dumps(list(images or []))
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT INTO messages(id, conversation_id, role, content, thinking, images, created_at, duration_ms) "
                "VALUES (?,?,?,?,?,?,?,?)",
                (msg_id, conversation_id, role, content, thinking or "", images_json, now, duration_ms),
            )
            await db.execute("UPDATE conversations SET updated_at=? WHERE id=?", (now, conversation_id))
            await db.commit()
        return {
            "id": msg_id,
            "role": role,
            "content": content,
            "thinking": thinking or "",
            "images": list(images or []),
            "created_at": now,
            "duration_ms": duration_ms,
        }

    async def list_messages(self, conversation_id: str) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, role, content, thinking, images, created_at, duration_ms FROM messages "
            "WHERE conversation_id=? ORDER BY created_at ASC, rowid ASC",
            (conversation_id,),
        )
        return [_message_row(r) for r in rows]

    async def load_recent_messages(self, conversation_id: str, limit: int = 20) -> List[dict]:
        """Return the newest ``limit`` messages, oldest first."""
        rows = await self.fetchall(
            "SELECT * FROM (SELECT rowid AS seq, id, role, content, thinking, images, created_at, duration_ms "
            "FROM messages WHERE conversation_id=? ORDER BY created_at DESC, rowid DESC LIMIT ?) "
            "ORDER BY created_at ASC, seq ASC",
            (conversation_id, limit),
        )
        return [_message_row(r) for r in rows]

    async def first_user_message(self, conversation_id: str) -> Optional[str]:
        row = await self.fetchone(
            "SELECT content FROM messages WHERE conversation_id=? AND role='user' "
            "ORDER BY created_at ASC, rowid ASC LIMIT 1",
            (conversation_id,),
        )
        return row["content"] if row else None
