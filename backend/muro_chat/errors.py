"""统一业务异常模型

发送消息流程在开始推流之前抛出的错误都继承自 ChatError，
由 main.py 中的异常处理器统一转换为 JSON 错误响应：{"error": message}
"""
from enum import Enum
from typing import Optional


class ChatError(Exception):
    """业务异常基类

    Attributes:
        code: 机器可读错误码（如 "NOT_FOUND"）
        message: 用户可读错误信息
        http_status: 映射到 HTTP 时的状态码
    """

    http_status = 400

    def __init__(self, code: str, message: str, http_status: Optional[int] = None):
        self.code = code
        self.message = message
        if http_status is not None:
            self.http_status = http_status
        super().__init__(message)


class ValidationError(ChatError):
    """输入校验失败（空消息、超长等），用户可修正"""

    http_status = 400


class NotFoundError(ChatError):
    """对话不存在"""

    http_status = 404


class StorageError(ChatError):
    """事务写入失败，不自动重试"""

    http_status = 500


class GenerationFailure(str, Enum):
    """生成失败的分类，只会以 SSE error 事件的形式出现，不会变成 HTTP 状态码"""

    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    QUOTA = "quota"
    UNAVAILABLE = "unavailable"

    @property
    def user_message(self) -> str:
        return FAILURE_MESSAGES[self]


FAILURE_MESSAGES = {
    GenerationFailure.AUTH: "AI service configuration error. Please contact support.",
    GenerationFailure.RATE_LIMIT: "AI service is busy. Please try again in a moment.",
    GenerationFailure.QUOTA: "AI service quota exceeded. Please contact support.",
    GenerationFailure.UNAVAILABLE: "AI service temporarily unavailable. Please try again.",
}
