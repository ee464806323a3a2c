from __future__ import annotations
"""
Telegram notification sink.

Every send is best-effort: routes schedule these as background tasks and a
failed or unconfigured bot only produces a log line.
"""

import asyncio
import html
import logging
from datetime import datetime, timezone
from typing import Any, Coroutine, Dict, Iterable, List, Optional, Set

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

from filecdn.config import settings
from filecdn.files.utils import format_bytes

log = logging.getLogger(__name__)

MAX_LISTED_FILES = 3

_pending: Set[asyncio.Task] = set()


def _esc(value: Any) -> str:
    return html.escape(str(value), quote=False)


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


class Notifier:
    def __init__(
        self,
        bot: Optional[Bot] = None,
        channel_id: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> None:
        self.bot = bot
        self.channel_id = channel_id
        self.owner_id = owner_id

    @property
    def enabled(self) -> bool:
        return self.bot is not None

    async def _send(self, chat_id: Optional[str], text: str) -> bool:
        if self.bot is None or not chat_id:
            return False
        try:
            await self.bot.send_message(chat_id=chat_id, text=text, parse_mode=ParseMode.HTML)
            return True
        except TelegramError as e:
            log.error("Telegram send to %s failed: %s", chat_id, e)
            return False

    async def send_upload_summary(self, ip: str, items: List[Dict[str, Any]]) -> bool:
        """items: {filename, size, provider, ok}; only the first few are listed."""
        ok = sum(1 for it in items if it.get("ok"))
        lines = [
            "📤 <b>New File Upload</b>",
            "",
            f"<b>IP:</b> <code>{_esc(ip)}</code>",
            f"<b>Time:</b> {_now()}",
            f"<b>Result:</b> {ok}✅ {len(items) - ok}❌",
        ]
        if items:
            lines.append("")
            lines.append("<b>Files:</b>")
            for i, it in enumerate(items[:MAX_LISTED_FILES], start=1):
                mark = "✅" if it.get("ok") else "❌"
                lines.append(
                    f"{i}. {_esc(it.get('filename'))} ({format_bytes(int(it.get('size') or 0))})"
                    f" - {_esc(it.get('provider') or '-')} - {mark}"
                )
            if len(items) > MAX_LISTED_FILES:
                lines.append(f"... and {len(items) - MAX_LISTED_FILES} more")
        return await self._send(self.channel_id, "\n".join(lines))

    async def send_download(self, ip: str, file_id: str, filename: str, size: int) -> bool:
        text = (
            "📥 <b>File Downloaded</b>\n\n"
            f"<b>File:</b> {_esc(filename)}\n"
            f"<b>ID:</b> <code>{_esc(file_id)}</code>\n"
            f"<b>Size:</b> {format_bytes(size)}\n"
            f"<b>IP:</b> <code>{_esc(ip)}</code>\n"
            f"<b>Time:</b> {_now()}"
        )
        return await self._send(self.channel_id, text)

    async def send_error(self, endpoint: str, error: str) -> bool:
        short = error if len(error) <= 200 else error[:200] + "..."
        text = (
            "🚨 <b>System Error</b>\n\n"
            f"<b>Endpoint:</b> {_esc(endpoint)}\n"
            f"<b>Error:</b> {_esc(short)}\n"
            f"<b>Time:</b> {_now()}"
        )
        sent = await self._send(self.channel_id, text)
        await self.send_owner(f"🚨 Error in {_esc(endpoint)}: {_esc(error[:100])}")
        return sent

    async def send_security_alert(
        self,
        ip: str,
        endpoint: str,
        indicators: Iterable[str],
        severity: str = "MEDIUM",
    ) -> bool:
        text = (
            "⚠️ <b>Security Alert</b>\n\n"
            f"<b>Severity:</b> {_esc(severity)}\n"
            f"<b>IP:</b> <code>{_esc(ip)}</code>\n"
            f"<b>Endpoint:</b> {_esc(endpoint)}\n"
            f"<b>Indicators:</b> {_esc(', '.join(indicators))}\n"
            f"<b>Time:</b> {_now()}"
        )
        return await self._send(self.channel_id, text)

    async def send_owner(self, message: str) -> bool:
        return await self._send(self.owner_id, message)

    async def close(self) -> None:
        if self.bot is not None:
            try:
                await self.bot.shutdown()
            except TelegramError as e:
                log.warning("Telegram bot shutdown failed: %s", e)


_notifier: Optional[Notifier] = None


def build_notifier() -> Notifier:
    token = settings.telegram_bot_token
    if not token:
        log.info("Telegram notifications disabled (no TELEGRAM_BOT_TOKEN)")
        return Notifier()
    return Notifier(
        bot=Bot(token=token),
        channel_id=settings.telegram_channel_id,
        owner_id=settings.telegram_owner_id,
    )


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = build_notifier()
    return _notifier


async def close_notifier() -> None:
    global _notifier
    if _notifier is not None:
        await _notifier.close()
        _notifier = None


def fire_and_forget(coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
    """Schedule a send outside any response lifecycle (e.g. while an error is being raised)."""
    task = asyncio.get_running_loop().create_task(coro)
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task
