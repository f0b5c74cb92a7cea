"""数据库模块 - 管理对话与消息"""
from .database import ChatStore
from .models import Conversation, Message, MessageRole, MessageStatus

__all__ = ['ChatStore', 'Conversation', 'Message', 'MessageRole', 'MessageStatus']
