from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

CHANNEL_ID = "crisp"

DeliverCallback = Callable[[str, list[str] | None], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class Route:
    session_key: str
    account_id: str
    agent_id: str


@dataclass(frozen=True, slots=True)
class Peer:
    id: str
    kind: str = "direct"


@dataclass(slots=True)
class InboundContext:
    body: str
    session_key: str
    account_id: str
    sender_id: str
    sender_name: str
    recipient_id: str
    message_id: str | None = None
    media_url: str | None = None
    timestamp: int | None = None
    history: list[dict[str, str]] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "Body": self.body,
            "RawBody": self.body,
            "From": f"{CHANNEL_ID}:{self.sender_id}",
            "To": f"{CHANNEL_ID}:{self.recipient_id}",
            "SessionKey": self.session_key,
            "AccountId": self.account_id,
            "ChatType": "direct",
            "SenderName": self.sender_name,
            "SenderId": self.sender_id,
            "Provider": CHANNEL_ID,
            "Surface": CHANNEL_ID,
            "OriginatingChannel": CHANNEL_ID,
            "OriginatingTo": f"{CHANNEL_ID}:{self.sender_id}",
        }
        if self.message_id is not None:
            payload["MessageSid"] = self.message_id
        if self.timestamp is not None:
            payload["Timestamp"] = self.timestamp
        if self.media_url:
            payload["MediaUrl"] = self.media_url
        if self.history:
            payload["History"] = list(self.history)
        return payload


class AgentRuntime(Protocol):
    """Services the assistant host provides to the channel."""

    def resolve_route(self, cfg: dict[str, Any], channel: str, account_id: str, peer: Peer) -> Route: ...

    async def dispatch_reply(self, context: InboundContext, deliver: DeliverCallback) -> None: ...

    async def enqueue_system_event(self, text: str, session_key: str) -> None: ...

    async def send_cross_channel_message(self, channel: str, to: str, text: str) -> None: ...
