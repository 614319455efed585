from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.constants import ParseMode
from telegram.error import TelegramError
from telegram.helpers import escape_markdown

from .approvals import PendingReply
from .runtime import AgentRuntime

logger = logging.getLogger(__name__)

CALLBACK_PREFIX = "crisp"
MAX_PREVIEW_CHARS = 3000
MAX_NAME_CHARS = 64
TELEGRAM_MESSAGE_LIMIT = 4096


@dataclass(frozen=True, slots=True)
class NotificationResult:
    ok: bool
    message_id: str | None = None
    chat_id: str | None = None
    error: str | None = None


class ApprovalNotifier(Protocol):
    async def notify_pending(self, pending: PendingReply, chat_id: str, session_key: str) -> NotificationResult: ...


def truncate_text(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def truncate_escaped(text: str, max_length: int) -> str:
    """Escape for MarkdownV2, then cut to ``max_length`` without splitting an escape pair."""
    escaped = escape_markdown(text, version=2)
    if len(escaped) <= max_length:
        return escaped
    ellipsis = "\\.\\.\\."
    cut = escaped[: max(max_length - len(ellipsis), 0)]
    if (len(cut) - len(cut.rstrip("\\"))) % 2:
        cut = cut[:-1]
    return cut + ellipsis


def format_approval_prompt(pending: PendingReply) -> str:
    ticket = escape_markdown(pending.id, version=2)
    name = truncate_escaped(pending.visitor_name, MAX_NAME_CHARS)
    header = f"🆕 *New Crisp message* \\[{ticket}\\]\n\n👤 *{name}*\n💬 \""
    footer = '"\n\n_Reply to this message to answer the visitor, or ignore it\\._'
    budget = min(MAX_PREVIEW_CHARS, TELEGRAM_MESSAGE_LIMIT - len(header) - len(footer))
    return header + truncate_escaped(pending.visitor_message, budget) + footer


def approval_keyboard(ticket_id: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [
            [
                InlineKeyboardButton("✅ Reply", callback_data=f"{CALLBACK_PREFIX}:reply:{ticket_id}"),
                InlineKeyboardButton("❌ Ignore", callback_data=f"{CALLBACK_PREFIX}:ignore:{ticket_id}"),
            ]
        ]
    )


class TelegramNotifier:
    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def notify_pending(self, pending: PendingReply, chat_id: str, session_key: str) -> NotificationResult:
        try:
            sent = await self._bot.send_message(
                chat_id=chat_id,
                text=format_approval_prompt(pending),
                parse_mode=ParseMode.MARKDOWN_V2,
                reply_markup=approval_keyboard(pending.id),
            )
        except TelegramError as exc:
            logger.warning(
                "Telegram approval prompt failed: %s",
                exc,
                extra={"ticket_id": pending.id, "session_id": pending.session_id, "failure": "notify"},
            )
            return NotificationResult(ok=False, error=str(exc))

        return NotificationResult(ok=True, message_id=str(sent.message_id), chat_id=str(sent.chat_id))

    async def send_text(self, chat_id: str, text: str) -> None:
        await self._bot.send_message(chat_id=chat_id, text=text)


class SystemEventNotifier:
    """Surfaces a ticket through the assistant's own event loop when no bot is configured."""

    def __init__(self, runtime: AgentRuntime) -> None:
        self._runtime = runtime

    async def notify_pending(self, pending: PendingReply, chat_id: str, session_key: str) -> NotificationResult:
        name = truncate_text(pending.visitor_name, MAX_NAME_CHARS)
        text = (
            f"Crisp message awaiting approval [{pending.id}] from {name}: "
            f'"{truncate_text(pending.visitor_message, MAX_PREVIEW_CHARS)}". '
            f"Resolve ticket {pending.id} to answer the visitor, or let it expire."
        )
        try:
            await self._runtime.enqueue_system_event(text, session_key=session_key)
        except Exception as exc:
            logger.warning(
                "System event for pending reply failed: %s",
                exc,
                extra={"ticket_id": pending.id, "session_id": pending.session_id, "failure": "notify"},
            )
            return NotificationResult(ok=False, error=str(exc))
        return NotificationResult(ok=True)
