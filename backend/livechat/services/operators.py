# Redis mirrors operator status: operator:<id>:status, operator:<id>:lastActive,
# operators:online (online + busy), operators:available (online). The database wins.

import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..errors import (
    DUPLICATE_EMAIL,
    INVALID_STATUS,
    MISSING_REQUIRED_FIELDS,
    OPERATOR_NOT_FOUND,
    ConflictError,
    InputError,
    NotFoundError,
)
from ..models import Operator, OperatorStatus, new_id, utcnow
from ..telemetry import get_logger

logger = get_logger(__name__)

STATUS_TTL = 3600
ONLINE_SET = "operators:online"
AVAILABLE_SET = "operators:available"


def status_key(operator_id: str) -> str:
    return f"operator:{operator_id}:status"


def last_active_key(operator_id: str) -> str:
    return f"operator:{operator_id}:lastActive"


def parse_status(value) -> OperatorStatus:
    try:
        return OperatorStatus(value)
    except ValueError:
        raise InputError(
            "Status must be one of: online, offline, busy",
            code=INVALID_STATUS,
            details={"status": value},
        ) from None


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except (TypeError, ValueError):
        return False
    return True


@dataclass
class StatusChange:
    operator: Operator
    # durable id actually written; differs from the presented one after provisioning
    operator_id: str


@dataclass
class OperatorPage:
    operators: List[Operator]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.operators) < self.total


class OperatorRegistry:
    def __init__(self, sessionmaker: async_sessionmaker, cache: Optional[Redis] = None, auto_provision: bool = False):
        self._db = sessionmaker
        self._cache = cache
        self.auto_provision = auto_provision

    async def create(
        self,
        name: str,
        email: str,
        operator_id: Optional[str] = None,
        status: OperatorStatus = OperatorStatus.OFFLINE,
    ) -> Operator:
        if not (name or "").strip() or not (email or "").strip():
            raise InputError("Operator name and email are required", code=MISSING_REQUIRED_FIELDS)

        operator = Operator(id=operator_id or new_id(), name=name, email=email, status=status)
        if status != OperatorStatus.OFFLINE:
            operator.last_active_at = utcnow()

        async with self._db() as db:
            taken = await db.scalar(select(Operator.id).where(Operator.email == operator.email))
            if taken is not None:
                raise ConflictError("Operator email already registered", code=DUPLICATE_EMAIL)
            db.add(operator)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise ConflictError("Operator email already registered", code=DUPLICATE_EMAIL) from None

        await self._cache_status(operator)
        logger.info("operator_created", operator_id=operator.id)
        return operator

    async def find(self, operator_id: str) -> Optional[Operator]:
        if not operator_id:
            return None
        async with self._db() as db:
            return await db.get(Operator, operator_id)

    async def get(self, operator_id: str) -> Operator:
        operator = await self.find(operator_id)
        if operator is None:
            raise NotFoundError("Operator does not exist", code=OPERATOR_NOT_FOUND)
        return operator

    async def set_status(self, operator_id: str, status) -> StatusChange:
        if not operator_id:
            raise InputError("Operator id is required", code=MISSING_REQUIRED_FIELDS)
        status = parse_status(status)

        async with self._db() as db, db.begin():
            operator = await db.get(Operator, operator_id)
            if operator is None:
                if not self.auto_provision:
                    raise NotFoundError("Operator does not exist", code=OPERATOR_NOT_FOUND)
                operator = self._provision(operator_id)
                db.add(operator)
            operator.status = status
            if status != OperatorStatus.OFFLINE:
                operator.last_active_at = utcnow()

        await self._cache_status(operator)
        logger.info(
            "operator_status_changed",
            operator_id=operator.id,
            presented_id=operator_id,
            status=status.value,
        )
        return StatusChange(operator=operator, operator_id=operator.id)

    async def set_status_many(self, operator_ids: Iterable[str], status) -> List[StatusChange]:
        """Set ``status`` on every known operator in ``operator_ids``; unknown ids are skipped."""
        ids = list(dict.fromkeys(i for i in operator_ids if i))
        if not ids:
            raise InputError("Operator ids are required", code=MISSING_REQUIRED_FIELDS)
        status = parse_status(status)

        async with self._db() as db, db.begin():
            operators = list(await db.scalars(select(Operator).where(Operator.id.in_(ids))))
            now = utcnow()
            for operator in operators:
                operator.status = status
                if status != OperatorStatus.OFFLINE:
                    operator.last_active_at = now

        for operator in operators:
            await self._cache_status(operator)
        logger.info(
            "operator_status_batch_changed",
            status=status.value,
            requested=len(ids),
            updated=len(operators),
        )
        return [StatusChange(operator=operator, operator_id=operator.id) for operator in operators]

    def _provision(self, presented_id: str) -> Operator:
        durable_id = presented_id if _is_uuid(presented_id) else new_id()
        logger.warning("operator_provisioned", operator_id=durable_id, presented_id=presented_id)
        return Operator(
            id=durable_id,
            name=f"Operator {durable_id[:8]}",
            email=f"{durable_id}@operators.livechat.local",
        )

    async def touch(self, operator_id: str) -> Operator:
        now = utcnow()
        async with self._db() as db, db.begin():
            operator = await db.get(Operator, operator_id)
            if operator is None:
                raise NotFoundError("Operator does not exist", code=OPERATOR_NOT_FOUND)
            operator.last_active_at = now

        if self._cache is not None:
            try:
                await self._cache.setex(last_active_key(operator_id), STATUS_TTL, now.isoformat())
            except RedisError as exc:
                logger.warning("operator_cache_write_failed", operator_id=operator_id, error=str(exc))
        return operator

    async def list_online(self) -> List[Operator]:
        """Online operators ordered by registration, the pool every strategy indexes into."""
        cached_ids = await self._cached_online_ids()

        stmt = (
            select(Operator)
            .where(Operator.status == OperatorStatus.ONLINE)
            .order_by(Operator.created_at.asc(), Operator.id.asc())
        )
        async with self._db() as db:
            if cached_ids:
                confirmed = list(await db.scalars(stmt.where(Operator.id.in_(cached_ids))))
                if confirmed:
                    return confirmed
            return list(await db.scalars(stmt))

    async def list_operators(
        self,
        status: Optional[OperatorStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> OperatorPage:
        conditions = [Operator.status == status] if status is not None else []
        stmt = (
            select(Operator)
            .where(*conditions)
            .order_by(Operator.last_active_at.desc().nulls_last(), Operator.id.asc())
            .limit(limit)
            .offset(offset)
        )
        async with self._db() as db:
            operators = list(await db.scalars(stmt))
            total = await db.scalar(select(func.count()).select_from(Operator).where(*conditions))
        return OperatorPage(operators=operators, total=total or 0, limit=limit, offset=offset)

    async def list_available(self) -> List[Operator]:
        """Online operators, most recently active first."""
        stmt = (
            select(Operator)
            .where(Operator.status == OperatorStatus.ONLINE)
            .order_by(Operator.last_active_at.desc().nulls_last(), Operator.id.asc())
        )
        async with self._db() as db:
            return list(await db.scalars(stmt))

    async def _cached_online_ids(self) -> List[str]:
        if self._cache is None:
            return []
        try:
            members = await self._cache.smembers(ONLINE_SET)
        except RedisError as exc:
            logger.warning("operator_cache_read_failed", error=str(exc))
            return []
        return sorted(members)

    async def stats(self) -> Dict[str, float]:
        async with self._db() as db:
            rows = await db.execute(select(Operator.status, func.count()).group_by(Operator.status))
            counts = {status: count for status, count in rows}

        online = counts.get(OperatorStatus.ONLINE, 0)
        busy = counts.get(OperatorStatus.BUSY, 0)
        offline = counts.get(OperatorStatus.OFFLINE, 0)
        total = online + busy + offline
        return {
            "total": total,
            "online": online,
            "offline": offline,
            "busy": busy,
            "available": online,
            "utilization": round((online + busy) / total * 100, 2) if total else 0.0,
        }

    async def cleanup_inactive(self, timeout_minutes: int = 30) -> List[str]:
        """Set operators idle for longer than ``timeout_minutes`` offline; returns their ids."""
        cutoff = utcnow() - timedelta(minutes=timeout_minutes)
        async with self._db() as db, db.begin():
            stale = list(
                await db.scalars(
                    select(Operator).where(
                        Operator.status.in_((OperatorStatus.ONLINE, OperatorStatus.BUSY)),
                        (Operator.last_active_at < cutoff) | Operator.last_active_at.is_(None),
                    )
                )
            )
            for operator in stale:
                operator.status = OperatorStatus.OFFLINE

        for operator in stale:
            await self._cache_status(operator)
        if stale:
            logger.info("inactive_operators_offline", count=len(stale))
        return [operator.id for operator in stale]

    async def _cache_status(self, operator: Operator) -> None:
        if self._cache is None:
            return
        operator_id = operator.id
        try:
            async with self._cache.pipeline(transaction=True) as pipe:
                pipe.setex(status_key(operator_id), STATUS_TTL, operator.status.value)
                if operator.status == OperatorStatus.OFFLINE:
                    pipe.srem(ONLINE_SET, operator_id)
                    pipe.srem(AVAILABLE_SET, operator_id)
                else:
                    pipe.setex(last_active_key(operator_id), STATUS_TTL, utcnow().isoformat())
                    pipe.sadd(ONLINE_SET, operator_id)
                    if operator.status == OperatorStatus.ONLINE:
                        pipe.sadd(AVAILABLE_SET, operator_id)
                    else:
                        pipe.srem(AVAILABLE_SET, operator_id)
                await pipe.execute()
        except RedisError as exc:
            logger.warning("operator_cache_write_failed", operator_id=operator_id, error=str(exc))
