"""Chat API 接口 - 发送消息并以 SSE 流式返回回复"""
import uuid

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from ..db.models import MessageSend
from ..pipeline import MessagePipeline
from ..utils.structured_logger import LogContext, get_logger
from .sse import SSE_HEADERS, format_sse

router = APIRouter()
logger = get_logger(__name__)


@router.post("/chats/{conversation_id}/messages")
async def api_send_message(conversation_id: str, body: MessageSend, request: Request):
    """
    发送用户消息并通过 SSE 流式返回 AI 回复

    校验、存在性检查和写入事务都在推流之前完成，失败时返回普通 JSON 错误（400/404/500）；
    之后的每个事件都是 chunk / done / error 之一，终止事件之后连接立即关闭。
    """
    pipeline: MessagePipeline = request.app.state.pipeline
    request_id = uuid.uuid4().hex

    with LogContext(request_id=request_id, conversation_id=conversation_id):
        logger.info("收到新消息")
        pending = await pipeline.prepare(conversation_id, body.content)

    reply = pipeline.stream_reply(pending)

    async def event_generator():
        """生成 SSE 事件"""
        # 推流在另一个上下文里迭代，重新绑定同一个 request_id
        with LogContext(request_id=request_id, conversation_id=conversation_id,
                        message_id=pending.placeholder.id):
            try:
                async for event in reply:
                    yield format_sse(event)
                    if event.is_terminal:
                        logger.info("SSE 推送结束", terminal=event.event)
            finally:
                # 客户端断开时 Starlette 会取消本任务，这里把取消传递给生成服务
                reply.cancel()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
