import enum
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Enum, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import validates

from .database import Base


def utcnow() -> datetime:
    # naive UTC, the way every backend we target stores DateTime columns
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class SessionStatus(str, enum.Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    CLOSED = "closed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


OPEN_STATUSES = (SessionStatus.WAITING, SessionStatus.ACTIVE)
TERMINAL_STATUSES = (
    SessionStatus.COMPLETED,
    SessionStatus.CLOSED,
    SessionStatus.TIMEOUT,
    SessionStatus.CANCELLED,
)


class OperatorStatus(str, enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    BUSY = "busy"


class SenderType(str, enum.Enum):
    USER = "user"
    OPERATOR = "operator"
    SYSTEM = "system"


class MessageType(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    SYSTEM = "system"


def _enum(cls):
    return Enum(cls, native_enum=False, length=16, values_callable=lambda members: [m.value for m in members])


@dataclass(frozen=True)
class Sender:
    """Who wrote a message. System messages carry no sender id."""

    type: SenderType
    id: Optional[str] = None

    def __post_init__(self):
        if self.type == SenderType.SYSTEM and self.id is not None:
            raise ValueError("system sender has no id")
        if self.type != SenderType.SYSTEM and not self.id:
            raise ValueError(f"{self.type.value} sender requires an id")

    @classmethod
    def user(cls, user_id: str) -> "Sender":
        return cls(SenderType.USER, user_id)

    @classmethod
    def operator(cls, operator_id: str) -> "Sender":
        return cls(SenderType.OPERATOR, operator_id)

    @classmethod
    def system(cls) -> "Sender":
        return cls(SenderType.SYSTEM)


class Operator(Base):
    __tablename__ = "operators"
    id = Column(String(64), primary_key=True, default=new_id)
    name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    status = Column(_enum(OperatorStatus), nullable=False, default=OperatorStatus.OFFLINE, index=True)
    last_active_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @validates("email")
    def _normalize_email(self, key, value):
        return value.strip().lower() if value else value

    @validates("name")
    def _normalize_name(self, key, value):
        return value.strip() if value else value

    @property
    def is_available(self) -> bool:
        return self.status == OperatorStatus.ONLINE


class ChatSession(Base):
    __tablename__ = "chat_sessions"
    __table_args__ = (
        # at most one waiting/active conversation per user
        Index(
            "uq_chat_sessions_open_user",
            "user_id",
            unique=True,
            sqlite_where=text("status IN ('waiting', 'active')"),
            postgresql_where=text("status IN ('waiting', 'active')"),
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(255), nullable=False, index=True)
    user_name = Column(String(100), nullable=True)
    operator_id = Column(String(64), ForeignKey("operators.id"), nullable=True, index=True)
    status = Column(_enum(SessionStatus), nullable=False, default=SessionStatus.WAITING, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    closed_at = Column(DateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_waiting(self) -> bool:
        return self.status == SessionStatus.WAITING


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(36), ForeignKey("chat_sessions.id"), nullable=False, index=True)
    sender_id = Column(String(255), nullable=True)
    sender_type = Column(_enum(SenderType), nullable=False)
    message_type = Column(_enum(MessageType), nullable=False, default=MessageType.TEXT)
    content = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    @property
    def sender(self) -> Sender:
        return Sender(self.sender_type, self.sender_id)
