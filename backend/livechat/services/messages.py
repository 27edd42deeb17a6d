"""Read side of the message log. Appends happen in ``SessionStore`` transactions."""

from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..errors import EMPTY_MESSAGE, MESSAGE_TOO_LONG, SESSION_NOT_FOUND, InputError, NotFoundError
from ..models import ChatMessage, ChatSession, MessageType, Sender, SenderType

MAX_CONTENT_LENGTH = 10_000


@dataclass
class MessagePage:
    messages: List[ChatMessage]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.messages) < self.total


def normalize_content(content: Optional[str]) -> str:
    text = (content or "").strip()
    if not text:
        raise InputError("Message content is required", code=EMPTY_MESSAGE)
    if len(text) > MAX_CONTENT_LENGTH:
        raise InputError(
            f"Message content must be at most {MAX_CONTENT_LENGTH} characters",
            code=MESSAGE_TOO_LONG,
        )
    return text


def build_message(session_id: str, sender: Sender, content: str, message_type: MessageType) -> ChatMessage:
    return ChatMessage(
        session_id=session_id,
        sender_id=sender.id,
        sender_type=sender.type,
        content=content,
        message_type=message_type,
        is_read=False,
    )


def system_message(session_id: str, content: str) -> ChatMessage:
    return build_message(session_id, Sender.system(), content, MessageType.SYSTEM)


class MessageLog:
    def __init__(self, sessionmaker: async_sessionmaker):
        self._db = sessionmaker

    async def history(
        self,
        session_id: str,
        limit: int = 50,
        offset: int = 0,
        order: str = "asc",
        include_read: bool = True,
        message_type: Optional[MessageType] = None,
    ) -> MessagePage:
        """Page through a session's messages, oldest first unless ``order="desc"``."""
        conditions = [ChatMessage.session_id == session_id]
        if not include_read:
            conditions.append(ChatMessage.is_read.is_(False))
        if message_type is not None:
            conditions.append(ChatMessage.message_type == message_type)

        if order == "desc":
            ordering = (ChatMessage.created_at.desc(), ChatMessage.id.desc())
        else:
            ordering = (ChatMessage.created_at.asc(), ChatMessage.id.asc())

        async with self._db() as db:
            if await db.get(ChatSession, session_id) is None:
                raise NotFoundError("Chat session does not exist", code=SESSION_NOT_FOUND)
            result = await db.scalars(
                select(ChatMessage).where(*conditions).order_by(*ordering).limit(limit).offset(offset)
            )
            messages = list(result)
            total = await db.scalar(select(func.count()).select_from(ChatMessage).where(*conditions))

        return MessagePage(messages=messages, total=total or 0, limit=limit, offset=offset)

    async def mark_read(self, session_id: str) -> int:
        async with self._db() as db, db.begin():
            if await db.get(ChatSession, session_id) is None:
                raise NotFoundError("Chat session does not exist", code=SESSION_NOT_FOUND)
            result = await db.execute(
                update(ChatMessage)
                .where(ChatMessage.session_id == session_id, ChatMessage.is_read.is_(False))
                .values(is_read=True)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount

    async def unread_count(self, session_id: str, sender_type: Optional[SenderType] = None) -> int:
        conditions = [ChatMessage.session_id == session_id, ChatMessage.is_read.is_(False)]
        if sender_type is not None:
            conditions.append(ChatMessage.sender_type == sender_type)
        async with self._db() as db:
            if await db.get(ChatSession, session_id) is None:
                raise NotFoundError("Chat session does not exist", code=SESSION_NOT_FOUND)
            count = await db.scalar(select(func.count()).select_from(ChatMessage).where(*conditions))
        return count or 0
