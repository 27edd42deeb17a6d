"""At-least-once delivery of chat events, one FIFO queue and worker per sink."""

import asyncio
import contextlib
import time
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Deque, Dict, Iterable, List, Optional, Protocol

import httpx

from ..models import Sender, utcnow
from ..telemetry import get_logger

logger = get_logger(__name__)

NEW_CHAT = "new_chat"
NEW_MESSAGE = "new_message"


def _isoformat(timestamp: Optional[datetime]) -> str:
    return (timestamp or utcnow()).isoformat()


def new_chat_notification(
    session_id: str,
    user_id: str,
    message: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> Dict[str, Any]:
    return {
        "type": NEW_CHAT,
        "sessionId": session_id,
        "userId": user_id,
        "message": message,
        "timestamp": _isoformat(timestamp),
    }


def new_message_notification(
    session_id: str,
    sender: Sender,
    content: str,
    timestamp: Optional[datetime] = None,
) -> Dict[str, Any]:
    return {
        "type": NEW_MESSAGE,
        "sessionId": session_id,
        "senderId": sender.id,
        "senderType": sender.type.value,
        "content": content,
        "timestamp": _isoformat(timestamp),
    }


def notification_id() -> str:
    return f"notif_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class NotificationSender(Protocol):
    async def send(self, payload: Dict[str, Any]) -> bool: ...


class HttpNotificationSender:
    """POSTs each event as JSON; any 2xx response counts as delivered."""

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._client = client or httpx.AsyncClient(
            headers={"User-Agent": "livechat-notifier/0.1.0", "Content-Type": "application/json"},
            timeout=timeout,
        )

    async def send(self, payload: Dict[str, Any]) -> bool:
        try:
            resp = await self._client.post(self.url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("notification_request_failed", notification_id=payload.get("id"), error=str(exc))
            return False
        if 200 <= resp.status_code < 300:
            logger.debug("notification_sent", notification_id=payload.get("id"))
            return True
        logger.warning("notification_rejected", notification_id=payload.get("id"), status_code=resp.status_code)
        return False

    async def close(self) -> None:
        await self._client.aclose()


@dataclass
class Notification:
    id: str
    payload: Dict[str, Any]
    attempts: int = 0


class NotificationDispatcher:
    def __init__(
        self,
        sender: NotificationSender,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        name: str = "admin",
    ):
        self.sender = sender
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.name = name
        self.delivered = 0
        self.dropped = 0
        self._queue: Deque[Notification] = deque()
        self._worker: Optional[asyncio.Task] = None

    def enqueue(self, payload: Dict[str, Any]) -> str:
        """Queue ``payload`` for delivery and return its notification id. Never waits on I/O."""
        notification = Notification(id=notification_id(), payload=dict(payload))
        notification.payload["id"] = notification.id
        self._queue.append(notification)
        self._ensure_worker()
        return notification.id

    def _ensure_worker(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop yet; the next enqueue from async code starts the worker
            return
        self._worker = loop.create_task(self._drain(), name=f"notifications-{self.name}")

    async def _drain(self) -> None:
        while self._queue:
            notification = self._queue.popleft()
            notification.attempts += 1
            try:
                ok = await self.sender.send(notification.payload)
            except Exception:
                logger.exception("notification_send_error", sink=self.name, notification_id=notification.id)
                ok = False

            if ok:
                self.delivered += 1
                continue
            if notification.attempts >= self.max_attempts:
                self.dropped += 1
                logger.error(
                    "notification_dropped",
                    sink=self.name,
                    notification_id=notification.id,
                    attempts=notification.attempts,
                    type=notification.payload.get("type"),
                )
                continue

            self._queue.appendleft(notification)
            await asyncio.sleep(self.retry_delay * notification.attempts)

    async def join(self) -> None:
        """Wait until everything queued so far has been delivered or dropped."""
        while self._worker is not None and not self._worker.done():
            await self._worker

    def status(self) -> Dict[str, Any]:
        return {
            "sink": self.name,
            "queueLength": len(self._queue),
            "processing": self._worker is not None and not self._worker.done(),
            "delivered": self.delivered,
            "dropped": self.dropped,
            "maxAttempts": self.max_attempts,
            "retryDelay": self.retry_delay,
        }

    def clear(self) -> int:
        pending = len(self._queue)
        self._queue.clear()
        return pending

    async def close(self) -> None:
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
        self._worker = None
        if self._queue:
            logger.warning("notifications_discarded", sink=self.name, count=len(self._queue))
            self._queue.clear()
        close = getattr(self.sender, "close", None)
        if close is not None:
            await close()


class Notifier:
    """Fans one event out to every configured sink's dispatcher."""

    def __init__(self, dispatchers: Iterable[NotificationDispatcher] = ()):
        self.dispatchers: List[NotificationDispatcher] = list(dispatchers)

    def notify(self, payload: Dict[str, Any]) -> List[str]:
        return [dispatcher.enqueue(payload) for dispatcher in self.dispatchers]

    async def join(self) -> None:
        for dispatcher in self.dispatchers:
            await dispatcher.join()

    def status(self) -> List[Dict[str, Any]]:
        return [dispatcher.status() for dispatcher in self.dispatchers]

    async def close(self) -> None:
        for dispatcher in self.dispatchers:
            await dispatcher.close()
