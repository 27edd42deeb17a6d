import enum
import threading
from dataclasses import dataclass, replace
from typing import Dict, List, Optional


class ParticipantType(str, enum.Enum):
    USER = "user"
    OPERATOR = "operator"


@dataclass(frozen=True)
class Connection:
    handle: str
    participant_id: str
    participant_type: ParticipantType
    session_id: Optional[str] = None

    @property
    def is_operator(self) -> bool:
        return self.participant_type == ParticipantType.OPERATOR


class ConnectionRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._connections: Dict[str, Connection] = {}

    def register(
        self,
        handle: str,
        participant_id: str,
        participant_type: ParticipantType,
        session_id: Optional[str] = None,
    ) -> Connection:
        """Bind ``handle`` to a participant, replacing any earlier binding of the same handle."""
        connection = Connection(handle, participant_id, ParticipantType(participant_type), session_id)
        with self._lock:
            self._connections[handle] = connection
        return connection

    def lookup(self, handle: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(handle)

    def update_session(self, handle: str, session_id: Optional[str]) -> Optional[Connection]:
        with self._lock:
            current = self._connections.get(handle)
            if current is None:
                return None
            updated = replace(current, session_id=session_id)
            self._connections[handle] = updated
            return updated

    def deregister(self, handle: str) -> Optional[Connection]:
        """Drop ``handle``; returns what it was bound to, or None if it was already gone."""
        with self._lock:
            return self._connections.pop(handle, None)

    def operators(self) -> List[Connection]:
        with self._lock:
            return [c for c in self._connections.values() if c.is_operator]

    def in_session(self, session_id: str) -> List[Connection]:
        with self._lock:
            return [c for c in self._connections.values() if c.session_id == session_id]

    def for_participant(self, participant_id: str, participant_type: ParticipantType) -> List[Connection]:
        with self._lock:
            return [
                c
                for c in self._connections.values()
                if c.participant_id == participant_id and c.participant_type == participant_type
            ]

    def clear(self) -> None:
        with self._lock:
            self._connections.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)


class OperatorAliases:
    """Operator tokens presented by clients mapped to durable operator ids.

    A console may keep presenting the token it started with after the server
    provisioned a record under a different id; resolving through here keeps
    its sessions attached to the same operator.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._aliases: Dict[str, str] = {}

    def remember(self, token: str, operator_id: str) -> None:
        if not token or token == operator_id:
            return
        with self._lock:
            self._aliases[token] = operator_id

    def resolve(self, token: Optional[str]) -> Optional[str]:
        if token is None:
            return None
        with self._lock:
            return self._aliases.get(token, token)

    def forget(self, token: str) -> None:
        with self._lock:
            self._aliases.pop(token, None)

    def clear(self) -> None:
        with self._lock:
            self._aliases.clear()
