"""对话管理 API"""
from fastapi import APIRouter, Request
from typing import Dict, List, Optional

from ..db.database import ChatStore
from ..db.models import Conversation, ConversationCreate, ConversationUpdate, Message
from ..errors import NotFoundError, ValidationError
from ..utils.structured_logger import get_logger

router = APIRouter()
logger = get_logger(__name__)


def _store(request: Request) -> ChatStore:
    return request.app.state.store


def _not_found() -> NotFoundError:
    return NotFoundError(code="NOT_FOUND", message="Not found")


@router.get("/chats", response_model=List[Conversation])
async def api_list_conversations(request: Request):
    """获取所有对话（最近更新的在前）"""
    logger.info("列出全部对话")
    return await _store(request).list_conversations()


@router.post("/chats")
async def api_create_conversation(request: Request, conv: Optional[ConversationCreate] = None) -> Dict[str, str]:
    """创建新对话"""
    title = conv.title.strip() if conv and conv.title else None
    conversation = await _store(request).create_conversation(title)
    logger.info("创建对话", conversation_id=conversation.id)
    return {"id": conversation.id}


@router.get("/chats/{conversation_id}", response_model=Conversation)
async def api_get_conversation(conversation_id: str, request: Request):
    """获取单个对话详情"""
    conversation = await _store(request).get_conversation(conversation_id)
    if not conversation:
        raise _not_found()
    return conversation


@router.patch("/chats/{conversation_id}")
async def api_update_conversation(conversation_id: str, update: ConversationUpdate, request: Request) -> Dict[str, str]:
    """更新对话标题"""
    title = update.title.strip()
    if not title:
        raise ValidationError(code="TITLE_EMPTY", message="Title cannot be empty")

    if not await _store(request).update_conversation_title(conversation_id, title):
        raise _not_found()
    logger.info("更新对话标题", conversation_id=conversation_id)
    return {"id": conversation_id}


@router.delete("/chats/{conversation_id}")
async def api_delete_conversation(conversation_id: str, request: Request) -> Dict[str, str]:
    """删除对话（级联删除全部消息）"""
    if not await _store(request).delete_conversation(conversation_id):
        raise _not_found()
    logger.info("删除对话", conversation_id=conversation_id)
    return {"id": conversation_id}


@router.get("/chats/{conversation_id}/messages", response_model=List[Message])
async def api_get_conversation_messages(conversation_id: str, request: Request):
    """获取对话的完整历史消息（最早的在前）"""
    store = _store(request)
    if not await store.get_conversation(conversation_id):
        raise _not_found()
    return await store.list_messages(conversation_id)
