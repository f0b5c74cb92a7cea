"""Shared fixtures.

The generation service is replaced by :class:`FakeChatModel`, which mimics
the ``astream`` interface of a LangChain chat model.  Each test gets its own
SQLite database under ``tmp_path``.
"""

import asyncio
import json
import sqlite3
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import pytest
import structlog
from langchain_core.messages import AIMessageChunk
from structlog.testing import LogCapture

from muro_chat.db.database import ChatStore
from muro_chat.llm import GenerationClient
from muro_chat.utils.structured_logger import add_context_info


class FakeChatModel:
    """Streams ``fragments`` then optionally raises ``error``.

    ``error_after`` is the number of fragments yielded before the error is
    raised; by default the error comes after all fragments.
    """

    def __init__(self, fragments: Sequence[str] = (), error: Optional[BaseException] = None,
                 error_after: Optional[int] = None):
        self.fragments = list(fragments)
        self.error = error
        self.error_after = len(self.fragments) if error_after is None else error_after
        self.calls: List[list] = []

    async def astream(self, messages):
        self.calls.append(list(messages))
        for index, fragment in enumerate(self.fragments):
            if self.error is not None and index == self.error_after:
                raise self.error
            await asyncio.sleep(0)
            yield AIMessageChunk(content=fragment)
        if self.error is not None:
            raise self.error


class StallingChatModel(FakeChatModel):
    """Streams ``fragments`` then hangs until the consumer cancels it."""

    async def astream(self, messages):
        self.calls.append(list(messages))
        for fragment in self.fragments:
            await asyncio.sleep(0)
            yield AIMessageChunk(content=fragment)
        await asyncio.Event().wait()


class RacingStore(ChatStore):
    """Store whose chat disappears right after the existence check passes."""

    async def get_conversation(self, conversation_id):
        conversation = await super().get_conversation(conversation_id)
        if conversation is not None:
            await self.delete_conversation(conversation_id)
        return conversation


def fake_client(model: FakeChatModel) -> GenerationClient:
    return GenerationClient(llm_factory=lambda: model)


def parse_sse(body: str) -> List[tuple]:
    """Split an SSE body into ``(event, data)`` tuples."""
    events = []
    for block in body.split("\n\n"):
        if not block.strip():
            continue
        name, data = None, None
        for line in block.split("\n"):
            if line.startswith("event: "):
                name = line[len("event: "):]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: "):])
        events.append((name, data))
    return events


def count_rows(db_path: Path, sql: str, params=()) -> int:
    with sqlite3.connect(db_path) as conn:
        return conn.execute(sql, params).fetchone()[0]


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "chats.db"


@pytest.fixture
def store(db_path: Path) -> ChatStore:
    """An initialised store backed by a temporary database."""
    chat_store = ChatStore(db_path)
    asyncio.run(chat_store.init_db())
    return chat_store


@pytest.fixture
def run() -> Callable:
    """Run a coroutine to completion; keeps the tests free of async plugins."""
    return asyncio.run


@pytest.fixture
def captured_logs() -> List[dict]:
    """Collect log entries, with the request context merged in."""
    capture = LogCapture()
    structlog.configure(processors=[add_context_info, capture])
    yield capture.entries
    structlog.reset_defaults()
