"""数据模型定义"""
from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

DEFAULT_TITLE = "New Conversation"


class MessageRole(str, Enum):
    """消息角色（持久化消息只允许 user / assistant）"""
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    """消息状态：assistant 占位消息 sending → sent | failed，且只转换一次"""
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class Conversation(BaseModel):
    """对话模型"""
    id: str = Field(..., description="对话ID")
    title: str = Field(default=DEFAULT_TITLE, description="对话标题")
    created_at: datetime = Field(..., description="创建时间")
    updated_at: datetime = Field(..., description="更新时间")


class Message(BaseModel):
    """消息模型"""
    id: str = Field(..., description="消息ID")
    conversation_id: str = Field(..., description="所属对话ID")
    role: MessageRole = Field(..., description="消息角色")
    content: str = Field(default="", description="消息内容")
    status: MessageStatus = Field(..., description="消息状态")
    error_message: Optional[str] = Field(default=None, description="失败原因（仅 failed 时存在）")
    created_at: datetime = Field(..., description="创建时间（会话内唯一排序依据）")


class ConversationCreate(BaseModel):
    """创建对话请求"""
    title: Optional[str] = Field(default=None, description="对话标题（可选）")


class ConversationUpdate(BaseModel):
    """更新对话请求"""
    title: str = Field(..., description="对话标题")


class MessageSend(BaseModel):
    """发送消息请求（content 的空值/长度校验在 pipeline 中完成）"""
    content: Optional[str] = Field(default=None, description="消息文本")


class HistoryTurn(BaseModel):
    """传给生成服务的历史轮次"""
    role: MessageRole
    content: str
