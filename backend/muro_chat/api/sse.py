"""SSE 事件帧格式"""
import json

from ..pipeline import ReplyEvent

# 持久、不缓存、keep-alive 的文本流；X-Accel-Buffering 关闭 nginx 缓冲
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse(event: ReplyEvent) -> str:
    """event: <name>\\ndata: <json>\\n\\n"""
    return f"event: {event.event}\ndata: {json.dumps(event.data, ensure_ascii=False)}\n\n"
