"""Chat sessions: waiting -> active -> terminal. Nothing leaves a terminal state."""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..errors import (
    ASSIGNMENT_CONFLICT,
    INVALID_STATUS,
    OPERATOR_NOT_AVAILABLE,
    OPERATOR_NOT_FOUND,
    SESSION_ALREADY_ASSIGNED,
    SESSION_CLOSED,
    SESSION_NOT_FOUND,
    ConflictError,
    InputError,
    NotFoundError,
)
from ..models import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    ChatMessage,
    ChatSession,
    MessageType,
    Operator,
    Sender,
    SenderType,
    SessionStatus,
    utcnow,
)
from ..telemetry import get_logger
from .messages import build_message, normalize_content, system_message

logger = get_logger(__name__)

CLOSING_MESSAGE = "Chat session has been closed"


@dataclass
class SessionJoin:
    session: ChatSession
    is_new: bool


@dataclass
class RecordedMessage:
    message: ChatMessage
    session: ChatSession
    activated: bool


@dataclass
class AssignedSession:
    session: ChatSession
    operator: Operator
    already_assigned: bool = False


@dataclass
class ClosedSession:
    session: ChatSession
    already_closed: bool


@dataclass
class SessionPage:
    sessions: List[ChatSession]
    total: int
    limit: Optional[int]
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.sessions) < self.total


class SessionStore:
    def __init__(self, sessionmaker: async_sessionmaker):
        self._db = sessionmaker

    async def get(self, session_id: str) -> ChatSession:
        async with self._db() as db:
            session = await db.get(ChatSession, session_id)
        if session is None:
            raise NotFoundError("Chat session does not exist", code=SESSION_NOT_FOUND)
        return session

    async def find_open(self, user_id: str) -> Optional[ChatSession]:
        async with self._db() as db:
            return await db.scalar(
                select(ChatSession)
                .where(ChatSession.user_id == user_id, ChatSession.status.in_(OPEN_STATUSES))
                .order_by(ChatSession.created_at.desc())
                .limit(1)
            )

    async def create_or_reuse(self, user_id: str, user_name: Optional[str] = None) -> SessionJoin:
        """Return the user's open session, or start a new one in ``waiting``."""
        existing = await self.find_open(user_id)
        if existing is not None:
            return SessionJoin(existing, is_new=False)

        session = ChatSession(user_id=user_id, user_name=user_name, status=SessionStatus.WAITING)
        try:
            async with self._db() as db, db.begin():
                db.add(session)
        except IntegrityError:
            # another connection of the same user created it first
            existing = await self.find_open(user_id)
            if existing is None:
                raise
            return SessionJoin(existing, is_new=False)

        logger.info("chat_session_created", session_id=session.id, user_id=user_id)
        return SessionJoin(session, is_new=True)

    async def record_message(
        self,
        session_id: str,
        sender: Sender,
        content: str,
        message_type: MessageType = MessageType.TEXT,
    ) -> RecordedMessage:
        """Append a message; a user's message activates a waiting session in the same commit."""
        text = normalize_content(content)

        async with self._db() as db, db.begin():
            session = await db.get(ChatSession, session_id, with_for_update=True)
            if session is None:
                raise NotFoundError("Chat session does not exist", code=SESSION_NOT_FOUND)
            if session.is_terminal:
                raise ConflictError("Cannot send message to closed session", code=SESSION_CLOSED)

            message = build_message(session_id, sender, text, message_type)
            db.add(message)

            activated = sender.type == SenderType.USER and session.is_waiting
            if activated:
                session.status = SessionStatus.ACTIVE
            session.updated_at = utcnow()

        if activated:
            logger.info("chat_session_activated", session_id=session_id)
        return RecordedMessage(message=message, session=session, activated=activated)

    async def assign_operator(self, session_id: str, operator_id: str) -> AssignedSession:
        async with self._db() as db, db.begin():
            session = await db.get(ChatSession, session_id, with_for_update=True)
            if session is None:
                raise NotFoundError("Chat session does not exist", code=SESSION_NOT_FOUND)
            if session.is_terminal:
                raise ConflictError("Cannot assign operator to closed session", code=SESSION_CLOSED)

            operator = await db.get(Operator, operator_id)
            if operator is None:
                raise NotFoundError("Operator does not exist", code=OPERATOR_NOT_FOUND)
            if not operator.is_available:
                raise ConflictError(
                    "Operator is not available for assignment",
                    code=OPERATOR_NOT_AVAILABLE,
                    details={"status": operator.status.value},
                )

            current_id = session.operator_id
            if current_id == operator.id and session.status == SessionStatus.ACTIVE:
                return AssignedSession(session=session, operator=operator, already_assigned=True)

            if current_id is not None and current_id != operator.id:
                current = await db.get(Operator, current_id)
                if current is not None and current.is_available:
                    raise ConflictError(
                        "Session is already handled by another operator",
                        code=SESSION_ALREADY_ASSIGNED,
                        details={"operatorId": current_id},
                    )

            # compare-and-set on what we just read
            owner = ChatSession.operator_id.is_(None) if current_id is None else ChatSession.operator_id == current_id
            result = await db.execute(
                update(ChatSession)
                .where(ChatSession.id == session_id, ChatSession.status.in_(OPEN_STATUSES), owner)
                .values(operator_id=operator.id, status=SessionStatus.ACTIVE, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError("Session changed while assigning operator", code=ASSIGNMENT_CONFLICT)

            db.add(system_message(session_id, f"Operator {operator.name} joined the session"))
            await db.flush()
            await db.refresh(session)

        logger.info("operator_assigned", session_id=session_id, operator_id=operator.id)
        return AssignedSession(session=session, operator=operator)

    async def close(
        self,
        session_id: str,
        closed_by: Optional[str] = None,
        status: SessionStatus = SessionStatus.CLOSED,
    ) -> ClosedSession:
        """Move a session to a terminal status. Closing twice is a no-op."""
        if status not in TERMINAL_STATUSES:
            raise InputError(f"{status} is not a terminal status", code=INVALID_STATUS)

        async with self._db() as db, db.begin():
            session = await db.get(ChatSession, session_id)
            if session is None:
                raise NotFoundError("Chat session does not exist", code=SESSION_NOT_FOUND)
            if session.is_terminal:
                return ClosedSession(session=session, already_closed=True)

            now = utcnow()
            result = await db.execute(
                update(ChatSession)
                .where(ChatSession.id == session_id, ChatSession.status.in_(OPEN_STATUSES))
                .values(status=status, closed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1 and closed_by:
                db.add(system_message(session_id, CLOSING_MESSAGE))
            await db.flush()
            await db.refresh(session)

        if result.rowcount != 1:
            return ClosedSession(session=session, already_closed=True)
        logger.info("chat_session_closed", session_id=session_id, status=status.value, closed_by=closed_by)
        return ClosedSession(session=session, already_closed=False)

    async def timeout_inactive(self, cutoff: datetime) -> int:
        now = utcnow()
        async with self._db() as db, db.begin():
            result = await db.execute(
                update(ChatSession)
                .where(ChatSession.status.in_(OPEN_STATUSES), ChatSession.updated_at < cutoff)
                .values(status=SessionStatus.TIMEOUT, closed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount

    async def list_sessions(
        self,
        user_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
        limit: Optional[int] = 10,
        offset: int = 0,
    ) -> SessionPage:
        conditions = []
        if user_id:
            conditions.append(ChatSession.user_id == user_id)
        if status is not None:
            conditions.append(ChatSession.status == status)

        stmt = select(ChatSession).where(*conditions).order_by(ChatSession.created_at.desc()).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._db() as db:
            sessions = list(await db.scalars(stmt))
            total = await db.scalar(select(func.count()).select_from(ChatSession).where(*conditions))
        return SessionPage(sessions=sessions, total=total or 0, limit=limit, offset=offset)

    async def waiting_sessions(self) -> List[ChatSession]:
        async with self._db() as db:
            result = await db.scalars(
                select(ChatSession)
                .where(ChatSession.status == SessionStatus.WAITING)
                .order_by(ChatSession.created_at.asc())
            )
            return list(result)

    async def operator_sessions(self, operator_id: str) -> List[ChatSession]:
        async with self._db() as db:
            result = await db.scalars(
                select(ChatSession)
                .where(ChatSession.operator_id == operator_id, ChatSession.status == SessionStatus.ACTIVE)
                .order_by(ChatSession.updated_at.desc())
            )
            return list(result)

    async def active_workloads(self, operator_ids: Iterable[str]) -> Dict[str, int]:
        """Number of ``active`` sessions per operator; operators without any map to 0."""
        ids = list(operator_ids)
        workloads = {operator_id: 0 for operator_id in ids}
        if not ids:
            return workloads
        async with self._db() as db:
            rows = await db.execute(
                select(ChatSession.operator_id, func.count())
                .where(ChatSession.operator_id.in_(ids), ChatSession.status == SessionStatus.ACTIVE)
                .group_by(ChatSession.operator_id)
            )
            for operator_id, count in rows:
                workloads[operator_id] = count
        return workloads
