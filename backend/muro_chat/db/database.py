"""数据库连接和操作"""
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

import aiosqlite

from ..errors import NotFoundError, StorageError
from ..utils.structured_logger import get_logger
from .models import (
    DEFAULT_TITLE,
    Conversation,
    Message,
    MessageRole,
    MessageStatus,
)

logger = get_logger(__name__)


def _now() -> str:
    # 固定微秒精度，保证字符串排序与时间排序一致
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _row_to_conversation(row) -> Conversation:
    return Conversation(
        id=row["id"],
        title=row["title"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_message(row) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=MessageRole(row["role"]),
        content=row["content"],
        status=MessageStatus(row["status"]),
        error_message=row["error_message"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class ChatStore:
    """对话/消息存储（SQLite）

    作为依赖注入到 MessagePipeline 和路由中，测试时可以替换为子类或假实现。
    每个操作单独打开连接；原子单元只有两个：
    - create_exchange: user 消息 + assistant 占位 + 对话 updated_at
    - complete_message / fail_message: 单行占位消息的最终更新
    """

    def __init__(self, db_path):
        self.db_path = Path(db_path)

    @asynccontextmanager
    async def _connect(self):
        """获取数据库连接（开启外键，保证级联删除）"""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            yield db

    def _new_id(self) -> str:
        return str(uuid.uuid4())

    async def init_db(self):
        """初始化数据库（创建表）"""
        # 确保data目录存在
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with self._connect() as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL DEFAULT 'New Conversation',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL
                        REFERENCES conversations(id) ON DELETE CASCADE,
                    role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                    content TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL CHECK (status IN ('sending', 'sent', 'failed')),
                    error_message TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            # 创建索引以加速查询
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_conversations_updated_at
                ON conversations(updated_at DESC)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_messages_conversation
                ON messages(conversation_id, created_at)
            """)

            await db.commit()
        logger.info("数据库初始化完成", path=str(self.db_path))

    # ------------------------------------------------------------------
    # conversations
    # ------------------------------------------------------------------

    async def create_conversation(self, title: Optional[str] = None) -> Conversation:
        """创建空对话"""
        conversation_id = self._new_id()
        now = _now()
        title = title or DEFAULT_TITLE

        async with self._connect() as db:
            await db.execute("""
                INSERT INTO conversations (id, title, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (conversation_id, title, now, now))
            await db.commit()

        return Conversation(
            id=conversation_id,
            title=title,
            created_at=datetime.fromisoformat(now),
            updated_at=datetime.fromisoformat(now),
        )

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """获取单个对话"""
        async with self._connect() as db:
            cursor = await db.execute("""
                SELECT * FROM conversations WHERE id = ?
            """, (conversation_id,))
            row = await cursor.fetchone()

        if not row:
            return None
        return _row_to_conversation(row)

    async def list_conversations(self) -> List[Conversation]:
        """获取所有对话（最近更新的在前）"""
        async with self._connect() as db:
            cursor = await db.execute("""
                SELECT * FROM conversations
                ORDER BY updated_at DESC, rowid DESC
            """)
            rows = await cursor.fetchall()

        return [_row_to_conversation(row) for row in rows]

    async def update_conversation_title(self, conversation_id: str, title: str) -> bool:
        """更新对话标题，对话不存在时返回 False"""
        async with self._connect() as db:
            cursor = await db.execute("""
                UPDATE conversations
                SET title = ?, updated_at = ?
                WHERE id = ?
            """, (title, _now(), conversation_id))
            await db.commit()
            return cursor.rowcount > 0

    async def delete_conversation(self, conversation_id: str) -> bool:
        """删除对话及其全部消息"""
        async with self._connect() as db:
            # 外键已声明 ON DELETE CASCADE，这里显式删除保证同一事务内不留孤儿行
            await db.execute("""
                DELETE FROM messages WHERE conversation_id = ?
            """, (conversation_id,))
            cursor = await db.execute("""
                DELETE FROM conversations WHERE id = ?
            """, (conversation_id,))
            await db.commit()
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # messages
    # ------------------------------------------------------------------

    async def list_messages(self, conversation_id: str) -> List[Message]:
        """获取对话的全部消息（最早的在前，同一时刻按插入顺序）"""
        async with self._connect() as db:
            cursor = await db.execute("""
                SELECT * FROM messages
                WHERE conversation_id = ?
                ORDER BY created_at ASC, rowid ASC
            """, (conversation_id,))
            rows = await cursor.fetchall()

        return [_row_to_message(row) for row in rows]

    async def create_exchange(self, conversation_id: str, content: str) -> Tuple[Message, Message]:
        """单事务写入 user 消息 + assistant 占位消息，并更新对话 updated_at

        对话在事务开始时已不存在（例如刚被并发删除）则抛出 NotFoundError；
        其他写入失败整体回滚并抛出 StorageError，不会留下没有占位回复的 user 消息。
        """
        user_id = self._new_id()
        assistant_id = self._new_id()
        now = _now()

        try:
            async with self._connect() as db:
                try:
                    # 先更新对话：既刷新 updated_at，也在同一事务里确认对话仍然存在
                    cursor = await db.execute("""
                        UPDATE conversations SET updated_at = ? WHERE id = ?
                    """, (now, conversation_id))
                    if cursor.rowcount == 0:
                        raise NotFoundError(code="NOT_FOUND", message="Conversation not found")

                    await db.execute("""
                        INSERT INTO messages (id, conversation_id, role, content, status, created_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                    """, (user_id, conversation_id, MessageRole.USER.value, content,
                          MessageStatus.SENT.value, now))

                    await db.execute("""
                        INSERT INTO messages (id, conversation_id, role, content, status, created_at)
                        VALUES (?, ?, ?, '', ?, ?)
                    """, (assistant_id, conversation_id, MessageRole.ASSISTANT.value,
                          MessageStatus.SENDING.value, now))

                    await db.commit()
                except Exception:
                    await db.rollback()
                    raise
        except aiosqlite.Error as e:
            logger.error("写入消息事务失败", conversation_id=conversation_id, error=str(e))
            raise StorageError(code="STORAGE_ERROR", message="Failed to process message") from e

        created_at = datetime.fromisoformat(now)
        user_message = Message(
            id=user_id,
            conversation_id=conversation_id,
            role=MessageRole.USER,
            content=content,
            status=MessageStatus.SENT,
            created_at=created_at,
        )
        placeholder = Message(
            id=assistant_id,
            conversation_id=conversation_id,
            role=MessageRole.ASSISTANT,
            content="",
            status=MessageStatus.SENDING,
            created_at=created_at,
        )
        return user_message, placeholder

    async def complete_message(self, message_id: str, content: str) -> bool:
        """占位消息 sending → sent；已经终结的消息不会被再次修改"""
        async with self._connect() as db:
            cursor = await db.execute("""
                UPDATE messages
                SET content = ?, status = ?, error_message = NULL
                WHERE id = ? AND status = ?
            """, (content, MessageStatus.SENT.value, message_id, MessageStatus.SENDING.value))
            await db.commit()
            return cursor.rowcount > 0

    async def fail_message(self, message_id: str, error_message: str, content: str = "") -> bool:
        """占位消息 sending → failed（content 保留已生成的部分）"""
        async with self._connect() as db:
            cursor = await db.execute("""
                UPDATE messages
                SET content = ?, status = ?, error_message = ?
                WHERE id = ? AND status = ?
            """, (content, MessageStatus.FAILED.value, error_message, message_id,
                  MessageStatus.SENDING.value))
            await db.commit()
            return cursor.rowcount > 0
