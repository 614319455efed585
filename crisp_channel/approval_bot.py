from __future__ import annotations

import logging

from telegram import Bot, ForceReply, Update
from telegram.error import TelegramError
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, ContextTypes, MessageHandler, filters

from .approvals import ApprovalDecision, ApprovalManager, PendingReply
from .crisp_api import CrispApiError
from .notify import CALLBACK_PREFIX, MAX_NAME_CHARS, MAX_PREVIEW_CHARS, truncate_text

logger = logging.getLogger(__name__)


def parse_callback_data(data: str) -> tuple[ApprovalDecision, str] | None:
    parts = data.split(":", 2)
    if len(parts) != 3 or parts[0] != CALLBACK_PREFIX or not parts[2]:
        return None
    decision_raw, ticket_id = parts[1], parts[2]
    if decision_raw == "reply":
        return "reply", ticket_id
    if decision_raw == "ignore":
        return "ignore", ticket_id
    return None


class ApprovalBot:
    """Telegram side of the approval workflow: operators answer or dismiss pending visitor messages."""

    def __init__(self, approvals: ApprovalManager, allowed_users: set[int]) -> None:
        self._approvals = approvals
        self._allowed_users = allowed_users

    def register(self, application: Application) -> None:
        application.add_handler(CommandHandler("pending", self._cmd_pending))
        application.add_handler(CommandHandler("reply", self._cmd_reply))
        application.add_handler(CallbackQueryHandler(self._approval_callback, pattern=rf"^{CALLBACK_PREFIX}:"))
        application.add_handler(MessageHandler(filters.TEXT & filters.REPLY & ~filters.COMMAND, self._on_reply))
        application.add_error_handler(self._on_error)

    async def _on_error(self, _: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        logger.error("Unhandled Telegram error", exc_info=context.error)

    async def _cmd_pending(self, update: Update, _: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._authorize_update(update):
            return
        message = update.effective_message
        if message is None:
            return

        live = sorted(self._approvals.store.list_live(), key=lambda pending: pending.created_at)
        if not live:
            await message.reply_text("No pending Crisp messages.")
            return
        lines = [f"[{pending.id}] {pending.visitor_name}: {pending.visitor_message[:80]}" for pending in live]
        await message.reply_text("\n".join(lines))

    async def _cmd_reply(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._authorize_update(update):
            return
        message = update.effective_message
        if message is None:
            return

        # Text after the ticket id goes to the visitor verbatim.
        parts = (message.text or "").split(maxsplit=2)
        if len(parts) < 3:
            await message.reply_text("Usage: /reply <ticket> <text>")
            return
        ticket_id, text = parts[1], parts[2]
        await message.reply_text(await self._send_reply(context.bot, ticket_id, text))

    async def _on_reply(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        if message is None or message.reply_to_message is None or not message.text:
            return

        pending = self._approvals.store.find_by_notification_message(str(message.reply_to_message.message_id))
        if pending is None:
            return
        if not await self._authorize_update(update):
            return
        await message.reply_text(await self._send_reply(context.bot, pending.id, message.text))

    async def _approval_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        if query is None:
            return
        if not await self._authorize_callback(update):
            return

        parsed = parse_callback_data(query.data or "")
        if parsed is None:
            await query.answer("Invalid approval payload", show_alert=True)
            return
        decision, ticket_id = parsed

        pending = self._approvals.store.get(ticket_id)
        if pending is None:
            await query.answer("Ticket expired or already handled", show_alert=True)
            return

        if decision == "reply":
            await query.answer()
            if query.message is not None:
                await query.message.reply_text(
                    f"Reply to the prompt above with your answer for [{pending.id}].",
                    reply_markup=ForceReply(selective=True),
                )
            return

        await self._approvals.reject(ticket_id)
        await query.answer("Ignored")
        await self._mark_prompt(context.bot, pending, "Ignored")

    async def _send_reply(self, bot: Bot, ticket_id: str, text: str) -> str:
        try:
            pending = await self._approvals.approve(ticket_id, text)
        except KeyError:
            return f"Ticket {ticket_id.upper()} expired or already handled."
        except ValueError:
            return "Reply text is empty."
        except CrispApiError as exc:
            logger.error(
                "Approved reply could not be sent: %s",
                exc,
                extra={"ticket_id": ticket_id.upper(), "failure": "upstream"},
            )
            return f"Failed to send reply for {ticket_id.upper()}: {exc}"

        await self._mark_prompt(bot, pending, "Reply sent")
        return f"Reply sent to {pending.visitor_name} [{pending.id}]."

    async def _mark_prompt(self, bot: Bot, pending: PendingReply, outcome: str) -> None:
        logger.info("Approval resolved: %s", outcome, extra={"ticket_id": pending.id, "session_id": pending.session_id})
        if not pending.notification_chat_id or not pending.notification_message_id:
            return
        name = truncate_text(pending.visitor_name, MAX_NAME_CHARS)
        preview = truncate_text(pending.visitor_message, MAX_PREVIEW_CHARS)
        try:
            await bot.edit_message_text(
                chat_id=pending.notification_chat_id,
                message_id=int(pending.notification_message_id),
                text=f'[{pending.id}] {name}: "{preview}"\n\n{outcome}',
            )
        except TelegramError:
            logger.warning("Failed to update approval prompt", extra={"ticket_id": pending.id, "failure": "notify"})

    async def _authorize_update(self, update: Update) -> bool:
        user = update.effective_user
        if user is None or user.id not in self._allowed_users:
            if update.effective_message:
                await update.effective_message.reply_text("unauthorized")
            return False
        return True

    async def _authorize_callback(self, update: Update) -> bool:
        query = update.callback_query
        user = update.effective_user
        if query is None:
            return False
        if user is None or user.id not in self._allowed_users:
            await query.answer("unauthorized", show_alert=True)
            return False
        return True
