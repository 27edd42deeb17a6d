"""Builds every long-lived component from ``Settings`` and tears them down again."""

from typing import Optional

import redis.asyncio as redis
import socketio
from aiogram import Bot
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from .bot.telegram_bot import TelegramNotificationSender, create_bot
from .config import Settings
from .database import create_engine, create_sessionmaker, init_models
from .realtime.gateway import Gateway
from .realtime.server import SocketIOEmitter, bind_gateway, create_socket_server
from .services.assignment import AssignmentEngine, LocalCursor, RedisCursor, parse_strategy
from .services.messages import MessageLog
from .services.notifications import HttpNotificationSender, NotificationDispatcher, Notifier
from .services.operators import OperatorRegistry
from .services.sessions import SessionStore
from .telemetry import get_logger

logger = get_logger(__name__)


class Services:
    def __init__(
        self,
        settings: Settings,
        engine: AsyncEngine,
        sessionmaker: async_sessionmaker,
        cache: Optional[redis.Redis] = None,
        notifier: Optional[Notifier] = None,
        bot: Optional[Bot] = None,
        sio: Optional[socketio.AsyncServer] = None,
    ):
        self.settings = settings
        self.engine = engine
        self.cache = cache
        self.bot = bot

        self.sessions = SessionStore(sessionmaker)
        self.messages = MessageLog(sessionmaker)
        self.operators = OperatorRegistry(sessionmaker, cache, auto_provision=settings.auto_provision_operators)
        cursor = RedisCursor(cache) if cache is not None else LocalCursor()
        self.assignment = AssignmentEngine(
            self.operators,
            self.sessions,
            cursor,
            default_strategy=parse_strategy(settings.assignment_strategy),
        )
        self.notifier = notifier or Notifier()

        self.sio = sio or create_socket_server(settings.cors_origins)
        self.gateway = Gateway(
            self.sessions,
            self.messages,
            self.operators,
            notifier=self.notifier,
            emitter=SocketIOEmitter(self.sio),
            history_page_size=settings.history_page_size,
        )
        bind_gateway(self.sio, self.gateway)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Services":
        engine = create_engine(settings.database_url)
        cache = redis.from_url(settings.redis_url, decode_responses=True) if settings.redis_url else None

        dispatchers = []
        if settings.admin_notification_url:
            sender = HttpNotificationSender(settings.admin_notification_url, timeout=settings.notification_timeout)
            dispatchers.append(cls._dispatcher(settings, sender, "admin"))
        else:
            logger.warning("admin_notifications_disabled", reason="ADMIN_NOTIFICATION_URL not configured")

        bot = None
        if settings.telegram_bot_token:
            bot = create_bot(settings.telegram_bot_token)
            if settings.operator_chat_ids:
                sender = TelegramNotificationSender(bot, settings.operator_chat_ids, settings.webhook_host)
                dispatchers.append(cls._dispatcher(settings, sender, "telegram"))

        return cls(settings, engine, create_sessionmaker(engine), cache, Notifier(dispatchers), bot)

    @staticmethod
    def _dispatcher(settings: Settings, sender, name: str) -> NotificationDispatcher:
        return NotificationDispatcher(
            sender,
            max_attempts=settings.notification_max_attempts,
            retry_delay=settings.notification_retry_delay,
            name=name,
        )

    async def start(self) -> None:
        await init_models(self.engine)
        logger.info("services_started", cache=self.cache is not None, sinks=len(self.notifier.dispatchers))

    async def close(self) -> None:
        await self.notifier.close()
        self.gateway.registry.clear()
        self.gateway.aliases.clear()
        if self.bot is not None:
            await self.bot.session.close()
        if self.cache is not None:
            await self.cache.aclose()
        await self.engine.dispose()
