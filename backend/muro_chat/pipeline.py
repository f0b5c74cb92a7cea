"""
Message Pipeline - 发送消息并流式返回回复

流程：
1. 校验输入（不访问存储）
2. 检查对话是否存在
3. 单事务写入 user 消息 + assistant 占位消息
4. 读取历史，调用生成服务
5. 逐个转发片段（chunk），最后恰好一个终止事件（done / error），并把结果写回占位消息
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from .config import config
from .db.database import ChatStore
from .db.models import HistoryTurn, Message
from .errors import GenerationFailure, NotFoundError, StorageError, ValidationError
from .llm import GenerationClient, GenerationStream
from .system_prompt import DEFAULT_INSTRUCTIONS
from .utils.structured_logger import get_logger

logger = get_logger(__name__)

CANCELLED_REASON = "Response cancelled"


@dataclass
class ReplyEvent:
    """推给客户端的事件：chunk / done / error"""
    event: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.event in ("done", "error")


@dataclass
class PendingReply:
    """setup 事务提交后的状态，streaming 阶段所需的一切"""
    conversation_id: str
    user_message: Message
    placeholder: Message
    history: List[HistoryTurn]

    @property
    def user_text(self) -> str:
        return self.user_message.content


class ReplyStream:
    """一次发送对应的回复流

    迭代产出 ReplyEvent；无论生成如何结束，占位消息都会被终结一次。
    消费方提前离开（客户端断开）时取消生成，并把占位消息标记为 failed。
    """

    def __init__(self, store: ChatStore, generation: GenerationStream, pending: PendingReply):
        self._store = store
        self._generation = generation
        self.pending = pending
        self._finished = False
        self._log = logger.bind(
            conversation_id=pending.conversation_id,
            message_id=pending.placeholder.id,
        )

    @property
    def message_id(self) -> str:
        return self.pending.placeholder.id

    @property
    def finished(self) -> bool:
        """是否已经产出终止事件"""
        return self._finished

    def cancel(self):
        """尽力取消：可以在任何时刻调用，多次调用无副作用"""
        self._generation.cancel()

    def __aiter__(self) -> AsyncIterator[ReplyEvent]:
        return self._events()

    async def _events(self) -> AsyncIterator[ReplyEvent]:
        chunk_count = 0
        try:
            async for event in self._generation:
                if not event.is_terminal:
                    chunk_count += 1
                    yield ReplyEvent("chunk", {"content": event.text})
                    continue

                self._finished = True
                if event.kind == "done":
                    await self._finalize_success(event.text)
                    self._log.info("回复生成完成", chunks=chunk_count, length=len(event.text))
                    yield ReplyEvent("done", {"messageId": self.message_id, "content": event.text})
                else:
                    await self._finalize_failure(event.text, self._generation.accumulated)
                    self._log.warning("回复生成失败", chunks=chunk_count,
                                      failure=event.failure.value if event.failure else None)
                    yield ReplyEvent("error", {"error": event.text})
                return
        finally:
            if not self._finished:
                requested = self._generation.cancelled
                self._generation.cancel()
                self._log.info("回复流在终止事件前被取消", chunks=chunk_count, cancel_requested=requested)
                # shield: 所在任务已被取消时，更新仍然执行完
                await asyncio.shield(self._finalize_cancelled())

    async def _finalize_success(self, content: str):
        try:
            updated = await self._store.complete_message(self.message_id, content)
            if not updated:
                self._log.warning("占位消息已被终结，忽略成功结果")
        except Exception:
            self._log.exception("写回成功结果失败，消息可能停留在 sending")

    async def _finalize_failure(self, error_message: str, partial: str):
        try:
            updated = await self._store.fail_message(self.message_id, error_message, partial)
            if not updated:
                self._log.warning("占位消息已被终结，忽略失败结果")
        except Exception:
            self._log.exception("写回失败结果失败，消息可能停留在 sending")

    async def _finalize_cancelled(self):
        try:
            await self._store.fail_message(self.message_id, CANCELLED_REASON)
        except Exception:
            self._log.exception("写回取消结果失败，消息可能停留在 sending")


class MessagePipeline:
    """发送消息 → 流式回复"""

    def __init__(
        self,
        store: ChatStore,
        generation_client: GenerationClient,
        instructions: str = DEFAULT_INSTRUCTIONS,
        max_length: Optional[int] = None,
    ):
        self.store = store
        self.generation_client = generation_client
        self.instructions = instructions
        self.max_length = max_length or config.MAX_MESSAGE_LENGTH

    def validate_content(self, content) -> str:
        """校验并返回去掉首尾空白的消息文本"""
        if content is None or not isinstance(content, str):
            raise ValidationError(code="CONTENT_REQUIRED", message="Message content is required")

        trimmed = content.strip()
        if not trimmed:
            raise ValidationError(code="CONTENT_EMPTY", message="Message content cannot be empty")
        if len(trimmed) > self.max_length:
            raise ValidationError(
                code="CONTENT_TOO_LONG",
                message=f"Message too long (max {self.max_length} characters)",
            )
        return trimmed

    async def prepare(self, conversation_id: str, content) -> PendingReply:
        """
        推流之前的全部同步步骤：校验、存在性检查、setup 事务、读取历史

        Raises:
            ValidationError: 输入不合法（无任何副作用）
            NotFoundError: 对话不存在或在写入前被删除（无任何副作用）
            StorageError: setup 事务失败（已整体回滚）
        """
        text = self.validate_content(content)

        conversation = await self.store.get_conversation(conversation_id)
        if not conversation:
            raise NotFoundError(code="NOT_FOUND", message="Conversation not found")

        user_message, placeholder = await self.store.create_exchange(conversation_id, text)
        logger.info("消息已写入", conversation_id=conversation_id,
                    user_message_id=user_message.id, message_id=placeholder.id)

        try:
            rows = await self.store.list_messages(conversation_id)
        except Exception as e:
            logger.exception("读取历史失败", conversation_id=conversation_id)
            # 占位消息不能停留在 sending
            try:
                await self.store.fail_message(placeholder.id, GenerationFailure.UNAVAILABLE.user_message)
            except Exception:
                logger.exception("标记占位消息失败时出错", message_id=placeholder.id)
            raise StorageError(code="STORAGE_ERROR", message="Failed to process message") from e

        # 新的 user 消息作为 prompt 的最后一条单独传入，避免重复
        history = [
            HistoryTurn(role=m.role, content=m.content)
            for m in rows
            if m.id not in (placeholder.id, user_message.id)
        ]
        return PendingReply(
            conversation_id=conversation_id,
            user_message=user_message,
            placeholder=placeholder,
            history=history,
        )

    def stream_reply(self, pending: PendingReply) -> ReplyStream:
        """开始生成并返回回复流"""
        generation = self.generation_client.stream(self.instructions, pending.history, pending.user_text)
        return ReplyStream(self.store, generation, pending)

    async def send_message(self, conversation_id: str, content) -> ReplyStream:
        """prepare + stream_reply"""
        pending = await self.prepare(conversation_id, content)
        return self.stream_reply(pending)
