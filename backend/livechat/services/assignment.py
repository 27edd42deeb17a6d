import enum
import itertools
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..errors import (
    INVALID_STRATEGY,
    MISSING_SESSION_ID,
    NO_AVAILABLE_OPERATORS,
    NO_SUITABLE_OPERATORS,
    ConflictError,
    InputError,
)
from ..models import ChatSession, Operator
from ..telemetry import get_logger

logger = get_logger(__name__)

CURSOR_KEY = "operator:assignment:cursor"


class Strategy(str, enum.Enum):
    PREFERRED = "preferred"
    ROUND_ROBIN = "round_robin"
    LEAST_BUSY = "least_busy"
    MOST_RECENT = "most_recent"


SELECTABLE = (Strategy.ROUND_ROBIN, Strategy.LEAST_BUSY, Strategy.MOST_RECENT)


def parse_strategy(value, default: Strategy = Strategy.ROUND_ROBIN) -> Strategy:
    if value is None or value == "":
        return default
    try:
        strategy = Strategy(value)
    except ValueError:
        strategy = None
    if strategy not in SELECTABLE:
        raise InputError(
            "Strategy must be one of: round_robin, least_busy, most_recent",
            code=INVALID_STRATEGY,
            details={"strategy": value},
        )
    return strategy


class LocalCursor:
    """Process-local round-robin position."""

    def __init__(self, start: int = 0):
        self._counter = itertools.count(start)

    async def next(self) -> int:
        # next() on itertools.count is atomic under the GIL
        return next(self._counter)


class RedisCursor:
    """Round-robin position shared by every process through Redis ``INCR``.

    The key never expires, so the rotation does not restart after an idle
    hour. When Redis is unreachable the local cursor keeps the rotation going.
    """

    def __init__(self, cache: Redis, key: str = CURSOR_KEY, fallback: Optional[LocalCursor] = None):
        self._cache = cache
        self._key = key
        self._fallback = fallback or LocalCursor()

    async def next(self) -> int:
        try:
            value = await self._cache.incr(self._key)
        except RedisError as exc:
            logger.warning("assignment_cursor_unavailable", error=str(exc))
            return await self._fallback.next()
        return int(value) - 1


@dataclass
class AssignmentResult:
    operator: Operator
    strategy: Strategy
    session: Optional[ChatSession] = None


def candidate_pool(online: Sequence[Operator], exclude: Iterable[str] = ()) -> List[Operator]:
    if not online:
        raise ConflictError("No operators are currently available", code=NO_AVAILABLE_OPERATORS)
    excluded = set(exclude)
    pool = [operator for operator in online if operator.id not in excluded]
    if not pool:
        raise ConflictError("No suitable operators available after filtering", code=NO_SUITABLE_OPERATORS)
    return pool


def pick_round_robin(pool: Sequence[Operator], position: int) -> Operator:
    return pool[position % len(pool)]


def pick_least_busy(pool: Sequence[Operator], workloads: Dict[str, int]) -> Operator:
    # min() keeps the first of equal candidates
    return min(pool, key=lambda operator: workloads.get(operator.id, 0))


def pick_most_recent(pool: Sequence[Operator]) -> Operator:
    return max(pool, key=lambda operator: operator.last_active_at or datetime.min)


def select_operator(
    online: Sequence[Operator],
    strategy: Strategy = Strategy.ROUND_ROBIN,
    exclude: Iterable[str] = (),
    preferred_id: Optional[str] = None,
    position: int = 0,
    workloads: Optional[Dict[str, int]] = None,
) -> AssignmentResult:
    """Choose an operator from ``online`` (already in pool order).

    A preferred operator who is online wins outright. Otherwise the pool is
    ``online`` minus ``exclude`` and ``strategy`` picks from it; ``position``
    feeds round-robin and ``workloads`` (active sessions per operator id)
    feeds least-busy.
    """
    if preferred_id:
        for operator in online:
            if operator.id == preferred_id:
                return AssignmentResult(operator=operator, strategy=Strategy.PREFERRED)

    pool = candidate_pool(online, exclude)
    if strategy == Strategy.LEAST_BUSY:
        chosen = pick_least_busy(pool, workloads or {})
    elif strategy == Strategy.MOST_RECENT:
        chosen = pick_most_recent(pool)
    else:
        strategy = Strategy.ROUND_ROBIN
        chosen = pick_round_robin(pool, position)
    return AssignmentResult(operator=chosen, strategy=strategy)


class AssignmentEngine:
    def __init__(self, operators, sessions, cursor=None, default_strategy: Strategy = Strategy.ROUND_ROBIN):
        self._operators = operators
        self._sessions = sessions
        self._cursor = cursor or LocalCursor()
        self.default_strategy = default_strategy

    async def choose(
        self,
        strategy=None,
        exclude: Iterable[str] = (),
        preferred_id: Optional[str] = None,
    ) -> AssignmentResult:
        strategy = parse_strategy(strategy, self.default_strategy)
        exclude = list(exclude or ())
        online = await self._operators.list_online()

        if preferred_id and any(operator.id == preferred_id for operator in online):
            return select_operator(online, strategy, exclude, preferred_id)

        pool = candidate_pool(online, exclude)
        position = 0
        workloads = None
        if strategy == Strategy.ROUND_ROBIN:
            # one cursor step per selection, taken only once the pool is known to be non-empty
            position = await self._cursor.next()
        elif strategy == Strategy.LEAST_BUSY:
            workloads = await self._sessions.active_workloads(operator.id for operator in pool)

        result = select_operator(online, strategy, exclude, position=position, workloads=workloads)
        logger.debug("operator_selected", operator_id=result.operator.id, strategy=result.strategy.value)
        return result

    async def assign_session(
        self,
        session_id: str,
        strategy=None,
        exclude: Iterable[str] = (),
        preferred_id: Optional[str] = None,
    ) -> AssignmentResult:
        if not session_id:
            raise InputError("Session id is required", code=MISSING_SESSION_ID)
        result = await self.choose(strategy, exclude, preferred_id)
        assigned = await self._sessions.assign_operator(session_id, result.operator.id)
        result.session = assigned.session
        return result
