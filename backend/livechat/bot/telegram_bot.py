import html
from typing import Any, Dict, Iterable

from aiogram import Bot, Dispatcher, types
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramAPIError
from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup, WebAppInfo

from ..services.notifications import NEW_CHAT
from ..telemetry import get_logger

logger = get_logger(__name__)


def create_bot(token: str) -> Bot:
    return Bot(token=token, default=DefaultBotProperties(parse_mode=ParseMode.HTML))


def build_dispatcher(sessions) -> Dispatcher:
    dp = Dispatcher()

    @dp.message()
    async def queue_status(message: types.Message):
        waiting = await sessions.waiting_sessions()
        await message.answer(f"✅ Support bot is running.\nWaiting chats: {len(waiting)}")

    return dp


async def run_polling(bot: Bot, dp: Dispatcher) -> None:
    # the application lifespan owns shutdown, not aiogram
    await dp.start_polling(bot, handle_signals=False, close_bot_session=False)


def format_alert(payload: Dict[str, Any]) -> str:
    session_id = html.escape(str(payload.get("sessionId")))
    if payload.get("type") == NEW_CHAT:
        user = html.escape(str(payload.get("userId")))
        return f"🆕 New chat from <b>{user}</b>\n\nChat ID: {session_id}"
    content = html.escape(payload.get("content") or "")
    return f"📩 New message:\n\n{content}\n\nChat ID: {session_id}"


class TelegramNotificationSender:
    """Alerts every operator chat with a button that opens the operator console."""

    def __init__(self, bot: Bot, chat_ids: Iterable[int], console_url: str):
        self.bot = bot
        self.chat_ids = list(chat_ids)
        self.console_url = console_url.rstrip("/")

    def keyboard(self, session_id: str) -> InlineKeyboardMarkup:
        web_app_url = f"{self.console_url}/operator?session_id={session_id}"
        return InlineKeyboardMarkup(inline_keyboard=[
            [InlineKeyboardButton(text="💬 Open chat", web_app=WebAppInfo(url=web_app_url))]
        ])

    async def send(self, payload: Dict[str, Any]) -> bool:
        text = format_alert(payload)
        keyboard = self.keyboard(payload.get("sessionId", ""))
        delivered = True
        for chat_id in self.chat_ids:
            try:
                await self.bot.send_message(chat_id, text, reply_markup=keyboard)
            except TelegramAPIError as exc:
                logger.warning("telegram_alert_failed", chat_id=chat_id, error=str(exc))
                delivered = False
        return delivered
