from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal

PENDING_REPLY_TTL_SECONDS = 60 * 60
TICKET_ID_LENGTH = 6
TICKET_ALPHABET = string.digits + string.ascii_uppercase

ApprovalDecision = Literal["reply", "ignore"]


@dataclass(slots=True)
class PendingReply:
    id: str
    session_id: str
    website_id: str
    account_id: str
    visitor_name: str
    visitor_message: str
    created_at: float
    proposed_reply: str = ""
    notification_message_id: str | None = None
    notification_chat_id: str | None = None


class PendingReplyStore:
    """Visitor messages waiting for a human decision, keyed by a short ticket id."""

    def __init__(
        self,
        ttl_seconds: float = PENDING_REPLY_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._pending: dict[str, PendingReply] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def store(
        self,
        session_id: str,
        website_id: str,
        account_id: str,
        visitor_name: str,
        visitor_message: str,
        proposed_reply: str = "",
    ) -> PendingReply:
        ticket_id = self._new_id()
        pending = PendingReply(
            id=ticket_id,
            session_id=session_id,
            website_id=website_id,
            account_id=account_id,
            visitor_name=visitor_name,
            visitor_message=visitor_message,
            proposed_reply=proposed_reply,
            created_at=self._clock(),
        )
        self._pending[ticket_id] = pending
        self.sweep()
        return pending

    def get(self, ticket_id: str) -> PendingReply | None:
        key = ticket_id.upper()
        pending = self._pending.get(key)
        if pending is None:
            return None
        if self._is_expired(pending, self._clock()):
            del self._pending[key]
            return None
        return pending

    def remove(self, ticket_id: str) -> bool:
        return self._pending.pop(ticket_id.upper(), None) is not None

    def attach_notification(self, ticket_id: str, message_id: str, chat_id: str) -> None:
        pending = self._pending.get(ticket_id.upper())
        if pending is None:
            return
        pending.notification_message_id = message_id
        pending.notification_chat_id = chat_id

    def find_by_notification_message(self, message_id: str) -> PendingReply | None:
        now = self._clock()
        for pending in self._pending.values():
            if pending.notification_message_id == message_id and not self._is_expired(pending, now):
                return pending
        return None

    def list_live(self) -> list[PendingReply]:
        now = self._clock()
        return [pending for pending in self._pending.values() if not self._is_expired(pending, now)]

    def sweep(self) -> int:
        now = self._clock()
        expired = [key for key, pending in self._pending.items() if self._is_expired(pending, now)]
        for key in expired:
            del self._pending[key]
        return len(expired)

    def _is_expired(self, pending: PendingReply, now: float) -> bool:
        return now - pending.created_at > self._ttl

    def _new_id(self) -> str:
        while True:
            candidate = "".join(secrets.choice(TICKET_ALPHABET) for _ in range(TICKET_ID_LENGTH))
            if candidate not in self._pending:
                return candidate


class ApprovalManager:
    def __init__(
        self,
        store: PendingReplyStore,
        send_reply: Callable[[PendingReply, str], Awaitable[None]],
    ) -> None:
        self._store = store
        self._send_reply = send_reply

    @property
    def store(self) -> PendingReplyStore:
        return self._store

    async def approve(self, ticket_id: str, text: str) -> PendingReply:
        text = text.strip()
        if not text:
            raise ValueError("Reply text is empty")

        pending = self._take(ticket_id)
        # Removed before sending: a ticket yields at most one visitor reply.
        await self._send_reply(pending, text)
        return pending

    async def reject(self, ticket_id: str) -> PendingReply:
        return self._take(ticket_id)

    def _take(self, ticket_id: str) -> PendingReply:
        pending = self._store.get(ticket_id)
        if pending is None:
            raise KeyError(f"No pending reply for ticket_id={ticket_id}")
        self._store.remove(pending.id)
        return pending
