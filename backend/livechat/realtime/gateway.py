"""Real-time command handling. Failures become ``command-error`` events for the caller."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from ..errors import (
    INTERNAL_ERROR,
    INVALID_MESSAGE_TYPE,
    INVALID_PAYLOAD,
    MISSING_REQUIRED_FIELDS,
    MISSING_SESSION_ID,
    MISSING_USER_ID,
    NOT_CONNECTED,
    SESSION_CLOSED,
    UNKNOWN_COMMAND,
    ChatError,
    ConflictError,
    InputError,
)
from ..models import MessageType, OperatorStatus, Sender
from ..schemas import (
    ChangeOperatorStatus,
    CommandError,
    FetchHistory,
    HistoryOut,
    JoinAsUser,
    MessageOut,
    NewMessageAlert,
    NewSessionAlert,
    OperatorJoinConfirmed,
    OperatorJoined,
    OperatorSessionCommand,
    OperatorStatusChanged,
    Pagination,
    ParticipantLeft,
    SendOperatorMessage,
    SendUserMessage,
    SessionCreated,
    SessionEnded,
    TypingIndicator,
)
from ..services.messages import normalize_content
from ..services.notifications import Notifier, new_chat_notification, new_message_notification
from ..telemetry import get_logger
from .registry import ConnectionRegistry, OperatorAliases, ParticipantType

logger = get_logger(__name__)

# outbound events
SESSION_CREATED = "session-created"
MESSAGE = "message"
HISTORY = "history"
OPERATOR_JOINED = "operator-joined"
OPERATOR_JOIN_CONFIRMED = "operator-join-confirmed"
SESSION_ENDED = "session-ended"
PARTICIPANT_LEFT = "participant-left"
NEW_SESSION_ALERT = "new-session-alert"
NEW_MESSAGE_ALERT = "new-message-alert"
OPERATOR_STATUS_CHANGED = "operator-status-changed"
TYPING_INDICATOR = "typing-indicator"
STOP_TYPING_INDICATOR = "stop-typing-indicator"
COMMAND_ERROR = "command-error"

M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True)
class Outbound:
    """One event and where it goes: listed handles, or everyone but ``skip``."""

    event: str
    data: Dict[str, Any]
    handles: Tuple[str, ...] = ()
    broadcast: bool = False
    skip: Optional[str] = None

    @classmethod
    def reply(cls, handle: str, event: str, data: Dict[str, Any]) -> "Outbound":
        return cls(event, data, handles=(handle,))

    @classmethod
    def to(cls, handles: Iterable[str], event: str, data: Dict[str, Any]) -> "Outbound":
        return cls(event, data, handles=tuple(handles))

    @classmethod
    def to_all(cls, event: str, data: Dict[str, Any], skip: Optional[str] = None) -> "Outbound":
        return cls(event, data, broadcast=True, skip=skip)


class Emitter(Protocol):
    async def send(self, handle: str, event: str, data: Dict[str, Any]) -> None: ...

    async def broadcast(self, event: str, data: Dict[str, Any], skip: Optional[str] = None) -> None: ...


Handler = Callable[[str, Any], Awaitable[List[Outbound]]]


def parse(model: Type[M], payload: Any) -> M:
    if not isinstance(payload, dict):
        raise InputError("Payload must be an object")
    return model.model_validate(payload)


def error_event(handle: str, code: str, message: str) -> Outbound:
    return Outbound.reply(handle, COMMAND_ERROR, CommandError(code=code, message=message).dump())


def _require_text(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


def _reject_system_type(message_type: MessageType) -> None:
    if message_type == MessageType.SYSTEM:
        raise InputError("System messages cannot be sent by participants", code=INVALID_MESSAGE_TYPE)


class Gateway:
    def __init__(
        self,
        sessions,
        messages,
        operators,
        notifier: Optional[Notifier] = None,
        registry: Optional[ConnectionRegistry] = None,
        aliases: Optional[OperatorAliases] = None,
        emitter: Optional[Emitter] = None,
        history_page_size: int = 50,
    ):
        self.sessions = sessions
        self.messages = messages
        self.operators = operators
        self.notifier = notifier or Notifier()
        self.registry = registry or ConnectionRegistry()
        self.aliases = aliases or OperatorAliases()
        self.emitter = emitter
        self.history_page_size = history_page_size
        self._locks: Dict[str, asyncio.Lock] = {}

        self.commands: Dict[str, Handler] = {
            "join-as-user": self.join_as_user,
            "send-user-message": self.send_user_message,
            "join-as-operator": self.join_as_operator,
            "send-operator-message": self.send_operator_message,
            "change-operator-status": self.change_operator_status,
            "typing": self.typing,
            "stop-typing": self.stop_typing,
            "fetch-history": self.fetch_history,
            "end-session": self.end_session,
            "reconnect-operator": self.reconnect_operator,
        }

    def _lock(self, handle: str) -> asyncio.Lock:
        lock = self._locks.get(handle)
        if lock is None:
            lock = self._locks[handle] = asyncio.Lock()
        return lock

    async def handle(self, handle: str, command: str, payload: Any = None) -> List[Outbound]:
        """Run one inbound command for ``handle`` and deliver what it produced."""
        handler = self.commands.get(command)
        async with self._lock(handle):
            if handler is None:
                outbound = [error_event(handle, UNKNOWN_COMMAND, f"Unknown command: {command}")]
            else:
                outbound = await self._run(handler, handle, command, payload)
            await self.deliver(outbound)
        return outbound

    async def _run(self, handler: Handler, handle: str, command: str, payload: Any) -> List[Outbound]:
        try:
            return await handler(handle, payload if payload is not None else {})
        except ChatError as exc:
            logger.info("command_rejected", command=command, handle=handle, code=exc.code)
            return [error_event(handle, exc.code, exc.message)]
        except ValidationError as exc:
            return [error_event(handle, INVALID_PAYLOAD, f"Invalid payload: {exc.error_count()} error(s)")]
        except Exception:
            logger.exception("command_failed", command=command, handle=handle)
            return [error_event(handle, INTERNAL_ERROR, "Internal server error")]

    async def deliver(self, outbound: Iterable[Outbound]) -> None:
        if self.emitter is None:
            return
        for item in outbound:
            try:
                if item.broadcast:
                    await self.emitter.broadcast(item.event, item.data, skip=item.skip)
                else:
                    for target in item.handles:
                        await self.emitter.send(target, item.event, item.data)
            except Exception:
                logger.exception("event_delivery_failed", event=item.event)

    # === helpers ===

    def _group(self, session_id: str, skip: Optional[str] = None) -> List[str]:
        return [c.handle for c in self.registry.in_session(session_id) if c.handle != skip]

    def _operator_handles(self) -> List[str]:
        return [c.handle for c in self.registry.operators()]

    async def _history(self, handle: str, session_id: str, limit: Optional[int] = None, offset: int = 0,
                       order: str = "asc") -> Outbound:
        page = await self.messages.history(session_id, limit=limit or self.history_page_size, offset=offset,
                                           order=order)
        body = HistoryOut(
            session_id=session_id,
            messages=[MessageOut.model_validate(m) for m in page.messages],
            pagination=Pagination(total=page.total, limit=page.limit, offset=page.offset, has_more=page.has_more),
        )
        return Outbound.reply(handle, HISTORY, body.dump())

    # === user commands ===

    async def join_as_user(self, handle: str, payload: Any) -> List[Outbound]:
        cmd = parse(JoinAsUser, payload)
        user_id = _require_text(cmd.user_id)
        if user_id is None:
            raise InputError("User ID is required", code=MISSING_USER_ID)

        join = await self.sessions.create_or_reuse(user_id, _require_text(cmd.user_name))
        session = join.session
        self.registry.register(handle, user_id, ParticipantType.USER, session.id)

        out = [
            Outbound.reply(
                handle,
                SESSION_CREATED,
                SessionCreated(session_id=session.id, user_id=user_id, status=session.status, is_new=join.is_new).dump(),
            )
        ]
        if join.is_new:
            self.notifier.notify(new_chat_notification(session.id, user_id, "New chat session started"))
            alert = NewSessionAlert(session_id=session.id, user_id=user_id, user_name=session.user_name)
            out.append(Outbound.to(self._operator_handles(), NEW_SESSION_ALERT, alert.dump()))
        out.append(await self._history(handle, session.id))
        logger.info("user_joined", user_id=user_id, session_id=session.id, is_new=join.is_new)
        return out

    async def send_user_message(self, handle: str, payload: Any) -> List[Outbound]:
        cmd = parse(SendUserMessage, payload)
        connection = self.registry.lookup(handle)
        if connection is None or connection.participant_type != ParticipantType.USER or not connection.session_id:
            raise InputError("User not connected to chat", code=NOT_CONNECTED)
        content = normalize_content(cmd.content)
        _reject_system_type(cmd.message_type)

        sender = Sender.user(connection.participant_id)
        recorded = await self.sessions.record_message(connection.session_id, sender, content, cmd.message_type)
        message = recorded.message
        session_id = connection.session_id

        alert = NewMessageAlert(
            session_id=session_id,
            user_id=connection.participant_id,
            content=message.content,
            message_type=message.message_type,
            timestamp=message.created_at,
        )
        self.notifier.notify(new_message_notification(session_id, sender, message.content, message.created_at))
        return [
            Outbound.to(self._group(session_id), MESSAGE, MessageOut.model_validate(message).dump()),
            Outbound.to(self._operator_handles(), NEW_MESSAGE_ALERT, alert.dump()),
        ]

    # === operator commands ===

    def _operator_session_ids(self, cmd: OperatorSessionCommand) -> Tuple[str, str]:
        operator_id = _require_text(cmd.operator_id)
        session_id = _require_text(cmd.session_id)
        if operator_id is None or session_id is None:
            raise InputError("Operator ID and Session ID are required", code=MISSING_REQUIRED_FIELDS)
        return self.aliases.resolve(operator_id), session_id

    async def join_as_operator(self, handle: str, payload: Any) -> List[Outbound]:
        operator_id, session_id = self._operator_session_ids(parse(OperatorSessionCommand, payload))

        assigned = await self.sessions.assign_operator(session_id, operator_id)
        operator = assigned.operator
        self.registry.register(handle, operator_id, ParticipantType.OPERATOR, session_id)

        confirmed = OperatorJoinConfirmed(
            session_id=session_id,
            operator_id=operator_id,
            operator_name=operator.name,
            session_status=assigned.session.status,
        )
        joined = OperatorJoined(session_id=session_id, operator_id=operator_id, operator_name=operator.name)
        logger.info("operator_joined", operator_id=operator_id, session_id=session_id)
        return [
            Outbound.reply(handle, OPERATOR_JOIN_CONFIRMED, confirmed.dump()),
            Outbound.to(self._group(session_id, skip=handle), OPERATOR_JOINED, joined.dump()),
            await self._history(handle, session_id),
        ]

    async def send_operator_message(self, handle: str, payload: Any) -> List[Outbound]:
        cmd = parse(SendOperatorMessage, payload)
        operator_id, session_id = self._operator_session_ids(cmd)
        content = normalize_content(cmd.content)
        _reject_system_type(cmd.message_type)

        await self.operators.get(operator_id)
        sender = Sender.operator(operator_id)
        recorded = await self.sessions.record_message(session_id, sender, content, cmd.message_type)
        message = recorded.message

        connection = self.registry.lookup(handle)
        if (
            connection is None
            or not connection.is_operator
            or connection.session_id != session_id
            or connection.participant_id != operator_id
        ):
            # a console that reconnected may still claim its old session
            self.registry.register(handle, operator_id, ParticipantType.OPERATOR, session_id)
        await self.operators.touch(operator_id)

        self.notifier.notify(new_message_notification(session_id, sender, message.content, message.created_at))
        return [Outbound.to(self._group(session_id), MESSAGE, MessageOut.model_validate(message).dump())]

    async def change_operator_status(self, handle: str, payload: Any) -> List[Outbound]:
        cmd = parse(ChangeOperatorStatus, payload)
        presented = _require_text(cmd.operator_id)
        if presented is None or not cmd.status:
            raise InputError("Operator ID and status are required", code=MISSING_REQUIRED_FIELDS)

        change = await self.operators.set_status(self.aliases.resolve(presented), cmd.status)
        operator_id = change.operator_id
        self.aliases.remember(presented, operator_id)
        operator = change.operator

        out = [
            Outbound.to_all(
                OPERATOR_STATUS_CHANGED,
                OperatorStatusChanged(operator_id=operator_id, operator_name=operator.name, status=operator.status).dump(),
            )
        ]
        if operator.status == OperatorStatus.ONLINE:
            connection = self.registry.lookup(handle)
            session_id = connection.session_id if connection is not None and connection.is_operator else None
            self.registry.register(handle, operator_id, ParticipantType.OPERATOR, session_id)

            for session in await self.sessions.waiting_sessions():
                alert = NewSessionAlert(
                    session_id=session.id,
                    user_id=session.user_id,
                    user_name=session.user_name,
                    timestamp=session.created_at,
                )
                out.append(Outbound.reply(handle, NEW_SESSION_ALERT, alert.dump()))
        return out

    async def _typing(self, handle: str, payload: Any, event: str) -> List[Outbound]:
        if not isinstance(payload, dict):
            return []
        session_id = payload.get("sessionId")
        operator_id = payload.get("operatorId")
        if not isinstance(session_id, str) or not isinstance(operator_id, str) or not session_id or not operator_id:
            return []
        indicator = TypingIndicator(session_id=session_id, operator_id=self.aliases.resolve(operator_id))
        return [Outbound.to(self._group(session_id, skip=handle), event, indicator.dump())]

    async def typing(self, handle: str, payload: Any) -> List[Outbound]:
        return await self._typing(handle, payload, TYPING_INDICATOR)

    async def stop_typing(self, handle: str, payload: Any) -> List[Outbound]:
        return await self._typing(handle, payload, STOP_TYPING_INDICATOR)

    async def fetch_history(self, handle: str, payload: Any) -> List[Outbound]:
        cmd = parse(FetchHistory, payload)
        session_id = _require_text(cmd.session_id)
        if session_id is None:
            raise InputError("Session ID is required", code=MISSING_SESSION_ID)
        return [await self._history(handle, session_id, cmd.limit, cmd.offset, cmd.order)]

    async def end_session(self, handle: str, payload: Any) -> List[Outbound]:
        operator_id, session_id = self._operator_session_ids(parse(OperatorSessionCommand, payload))

        closed = await self.sessions.close(session_id, closed_by=operator_id)
        if closed.already_closed:
            ended = SessionEnded(session_id=session_id, operator_id=operator_id, reason="already_closed")
            return [Outbound.reply(handle, SESSION_ENDED, ended.dump())]

        targets = self._group(session_id, skip=handle) + [handle]
        self.registry.update_session(handle, None)
        ended = SessionEnded(session_id=session_id, operator_id=operator_id, reason="operator_ended")
        logger.info("session_ended", operator_id=operator_id, session_id=session_id)
        return [Outbound.to(targets, SESSION_ENDED, ended.dump())]

    async def reconnect_operator(self, handle: str, payload: Any) -> List[Outbound]:
        operator_id, session_id = self._operator_session_ids(parse(OperatorSessionCommand, payload))

        session = await self.sessions.get(session_id)
        if session.is_terminal:
            raise ConflictError("Cannot reconnect to closed session", code=SESSION_CLOSED)
        operator = await self.operators.find(operator_id)
        self.registry.register(handle, operator_id, ParticipantType.OPERATOR, session_id)

        confirmed = OperatorJoinConfirmed(
            session_id=session_id,
            operator_id=operator_id,
            operator_name=operator.name if operator is not None else None,
            session_status=session.status,
            reconnected=True,
        )
        return [Outbound.reply(handle, OPERATOR_JOIN_CONFIRMED, confirmed.dump())]

    # === transport lifecycle ===

    async def disconnect(self, handle: str) -> List[Outbound]:
        """Forget ``handle``. Safe to call again for a handle that is already gone."""
        async with self._lock(handle):
            connection = self.registry.deregister(handle)
            if connection is None:
                self._locks.pop(handle, None)
                return []

            out = []
            if connection.session_id:
                left = ParticipantLeft(
                    session_id=connection.session_id,
                    participant_type=connection.participant_type.value,
                    participant_id=connection.participant_id,
                )
                out.append(Outbound.to(self._group(connection.session_id), PARTICIPANT_LEFT, left.dump()))

            still_connected = self.registry.for_participant(connection.participant_id, ParticipantType.OPERATOR)
            if connection.is_operator and not still_connected:
                try:
                    change = await self.operators.set_status(connection.participant_id, OperatorStatus.OFFLINE)
                except ChatError as exc:
                    logger.warning("operator_offline_failed", operator_id=connection.participant_id, code=exc.code)
                except Exception:
                    logger.exception("operator_offline_failed", operator_id=connection.participant_id)
                else:
                    status = OperatorStatusChanged(
                        operator_id=change.operator_id,
                        operator_name=change.operator.name,
                        status=change.operator.status,
                    )
                    out.append(Outbound.to_all(OPERATOR_STATUS_CHANGED, status.dump()))

            await self.deliver(out)
        self._locks.pop(handle, None)
        logger.info("connection_closed", handle=handle, participant_id=connection.participant_id)
        return out
