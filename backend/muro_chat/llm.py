"""LLM 初始化与流式生成客户端"""
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional, Sequence

import openai
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .config import config
from .db.models import HistoryTurn, MessageRole
from .errors import GenerationFailure
from .utils.structured_logger import get_logger

logger = get_logger(__name__)


class EmptyResponseError(Exception):
    """生成服务正常结束但没有返回任何文本"""


def get_llm():
    """
    获取 LLM 实例（流式）

    每次生成时才创建：缺少 OPENAI_API_KEY 时在这里抛出，
    由 GenerationStream 转换为 "configuration error"，而不是在启动时失败。
    """
    return ChatOpenAI(
        model=config.OPENAI_MODEL,
        temperature=config.OPENAI_TEMPERATURE,
        max_tokens=config.OPENAI_MAX_TOKENS,
        api_key=config.OPENAI_API_KEY,
        base_url=config.OPENAI_BASE_URL,
        streaming=True,
    )


def classify_failure(error: BaseException) -> GenerationFailure:
    """
    把网络/厂商错误归类为少量用户可读的类别

    匹配顺序从最具体到最宽泛：额度不足的错误同时也是 429 限流错误，所以先判断额度。
    """
    text = str(error).lower()
    if getattr(error, "code", None) == "insufficient_quota" or "insufficient_quota" in text:
        return GenerationFailure.QUOTA
    if isinstance(error, openai.AuthenticationError) or "api key" in text or "api_key" in text:
        return GenerationFailure.AUTH
    if isinstance(error, openai.RateLimitError) or "rate limit" in text:
        return GenerationFailure.RATE_LIMIT
    return GenerationFailure.UNAVAILABLE


def build_prompt(instructions: str, history: Sequence[HistoryTurn], user_text: str) -> List[BaseMessage]:
    """构造完整 prompt：system 指令 → 历史（原顺序）→ 新的用户消息"""
    messages: List[BaseMessage] = [SystemMessage(content=instructions)]
    for turn in history:
        if turn.role == MessageRole.USER:
            messages.append(HumanMessage(content=turn.content))
        else:
            messages.append(AIMessage(content=turn.content))
    messages.append(HumanMessage(content=user_text))
    return messages


@dataclass
class GenerationEvent:
    """生成事件：chunk（片段）、done（完整文本）、error（已翻译的错误）"""
    kind: str
    text: str = ""
    failure: Optional[GenerationFailure] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in ("done", "error")


class GenerationStream:
    """一次生成调用：可取消的异步事件序列

    - 每个片段到达即产出一个 chunk 事件，不合并、不重排
    - 未取消时恰好产出一个 done 或 error 事件，且是最后一个
    - cancel() 幂等，调用后不再产出任何事件（已发出的网络请求可能仍会完成，但结果被丢弃）
    """

    def __init__(self, llm_factory: Callable, messages: List[BaseMessage]):
        self._llm_factory = llm_factory
        self._messages = messages
        self._cancelled = False
        self.accumulated = ""

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self):
        self._cancelled = True

    def __aiter__(self) -> AsyncIterator[GenerationEvent]:
        return self._events()

    async def _events(self) -> AsyncIterator[GenerationEvent]:
        try:
            llm = self._llm_factory()
            async for chunk in llm.astream(self._messages):
                if self._cancelled:
                    break
                fragment = chunk.content if isinstance(chunk.content, str) else ""
                if not fragment:
                    continue
                self.accumulated += fragment
                yield GenerationEvent(kind="chunk", text=fragment)

            if self._cancelled:
                return
            if not self.accumulated:
                raise EmptyResponseError("No response from AI")
        except Exception as e:
            if self._cancelled:
                return
            failure = classify_failure(e)
            logger.error("生成服务调用失败", error=str(e), error_type=type(e).__name__,
                         failure=failure.value)
            yield GenerationEvent(kind="error", text=failure.user_message, failure=failure)
            return

        yield GenerationEvent(kind="done", text=self.accumulated)


class GenerationClient:
    """流式生成客户端"""

    def __init__(self, llm_factory: Callable = get_llm):
        """
        Args:
            llm_factory: 返回支持 astream(messages) 的 chat model，测试时可替换
        """
        self._llm_factory = llm_factory

    def stream(self, instructions: str, history: Sequence[HistoryTurn], user_text: str) -> GenerationStream:
        """开始一次生成，返回可迭代、可取消的 GenerationStream"""
        messages = build_prompt(instructions, history, user_text)
        logger.debug("构造 prompt", message_count=len(messages))
        return GenerationStream(self._llm_factory, messages)
