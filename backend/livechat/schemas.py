from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from .models import MessageType, OperatorStatus, SenderType, SessionStatus, utcnow


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True

    def dump(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# === inbound commands ===

class JoinAsUser(CamelModel):
    user_id: Optional[str] = None
    user_name: Optional[str] = Field(None, max_length=100)


class SendUserMessage(CamelModel):
    content: Optional[str] = None
    message_type: MessageType = MessageType.TEXT


class OperatorSessionCommand(CamelModel):
    operator_id: Optional[str] = None
    session_id: Optional[str] = None


class SendOperatorMessage(OperatorSessionCommand):
    content: Optional[str] = None
    message_type: MessageType = MessageType.TEXT


class ChangeOperatorStatus(CamelModel):
    operator_id: Optional[str] = None
    status: Optional[str] = None


class FetchHistory(CamelModel):
    session_id: Optional[str] = None
    limit: Optional[int] = Field(None, ge=1, le=200)
    offset: int = Field(0, ge=0)
    order: Literal["asc", "desc"] = "asc"


# === outbound events ===

class MessageOut(CamelModel):
    id: int
    session_id: str
    sender_id: Optional[str]
    sender_type: SenderType
    content: str
    message_type: MessageType
    is_read: bool = False
    created_at: datetime


class Pagination(CamelModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class HistoryOut(CamelModel):
    session_id: str
    messages: List[MessageOut]
    pagination: Pagination


class SessionCreated(CamelModel):
    session_id: str
    user_id: str
    status: SessionStatus
    is_new: bool
    timestamp: datetime = Field(default_factory=utcnow)


class OperatorJoined(CamelModel):
    session_id: str
    operator_id: str
    operator_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class OperatorJoinConfirmed(OperatorJoined):
    session_status: SessionStatus
    reconnected: bool = False


class SessionEnded(CamelModel):
    session_id: str
    operator_id: str
    reason: str
    timestamp: datetime = Field(default_factory=utcnow)


class ParticipantLeft(CamelModel):
    session_id: str
    participant_type: str
    participant_id: str
    timestamp: datetime = Field(default_factory=utcnow)


class NewSessionAlert(CamelModel):
    session_id: str
    user_id: str
    user_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class NewMessageAlert(CamelModel):
    session_id: str
    user_id: str
    content: str
    message_type: MessageType = MessageType.TEXT
    timestamp: datetime = Field(default_factory=utcnow)


class OperatorStatusChanged(CamelModel):
    operator_id: str
    operator_name: Optional[str] = None
    status: OperatorStatus
    timestamp: datetime = Field(default_factory=utcnow)


class TypingIndicator(CamelModel):
    session_id: str
    operator_id: str
    sender_type: SenderType = SenderType.OPERATOR
    timestamp: datetime = Field(default_factory=utcnow)


class CommandError(CamelModel):
    code: str
    message: str


# === REST ===

class ChatSessionOut(CamelModel):
    id: str
    user_id: str
    user_name: Optional[str] = None
    operator_id: Optional[str] = None
    status: SessionStatus
    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None


class ChatSessionDetail(ChatSessionOut):
    messages: List[MessageOut]
    pagination: Pagination


class SessionPage(CamelModel):
    sessions: List[ChatSessionOut]
    pagination: Pagination


class CloseResult(CamelModel):
    session: ChatSessionOut
    already_closed: bool


class OperatorOut(CamelModel):
    id: str
    name: str
    email: str
    status: OperatorStatus
    last_active_at: Optional[datetime] = None


class OperatorCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=255)
    id: Optional[str] = Field(None, max_length=64)


class OperatorStatusUpdate(CamelModel):
    status: str


class BatchStatusUpdate(CamelModel):
    operator_ids: List[str] = Field(..., min_length=1, max_length=100)
    status: str


class BatchStatusResult(CamelModel):
    updated_count: int
    operators: List[OperatorOut]


class OperatorPage(CamelModel):
    operators: List[OperatorOut]
    pagination: Pagination


class AvailableOperators(CamelModel):
    operators: List[OperatorOut]
    count: int


class OperatorStats(CamelModel):
    total: int
    online: int
    offline: int
    busy: int
    available: int
    utilization: float


class AssignRequest(CamelModel):
    strategy: Optional[str] = None
    exclude_operator_ids: List[str] = Field(default_factory=list)
    preferred_operator_id: Optional[str] = None
    session_id: Optional[str] = None


class AssignOut(CamelModel):
    operator: OperatorOut
    strategy: str
    session: Optional[ChatSessionOut] = None


class ReadResult(CamelModel):
    session_id: str
    updated: int


class UnreadCount(CamelModel):
    session_id: str
    count: int
