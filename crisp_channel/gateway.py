from __future__ import annotations

import logging
from typing import Any

import httpx

from .notify import TelegramNotifier
from .runtime import DeliverCallback, InboundContext, Peer, Route

logger = logging.getLogger(__name__)

HOOKS_AGENT_PATH = "/hooks/agent"
HOOKS_WAKE_PATH = "/hooks/wake"


class GatewayError(Exception):
    pass


class GatewayRuntime:
    """Agent runtime backed by an OpenClaw gateway's hook endpoints.

    Replies come back synchronously from ``/hooks/agent`` as
    ``{"replies": [{"text": ..., "mediaUrls": [...]}]}``; a bare ``{"text": ...}``
    is accepted as a single reply. ``telegram:<chat>`` notices are relayed through
    the approval bot.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        agent_id: str = "main",
        telegram: TelegramNotifier | None = None,
        timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._agent_id = agent_id
        self._telegram = telegram
        self._timeout = timeout_seconds
        self._transport = transport

    def resolve_route(self, cfg: dict[str, Any], channel: str, account_id: str, peer: Peer) -> Route:
        session_key = f"agent:{self._agent_id}:{channel}:{account_id}:{peer.kind}:{peer.id}"
        return Route(session_key=session_key, account_id=account_id, agent_id=self._agent_id)

    async def dispatch_reply(self, context: InboundContext, deliver: DeliverCallback) -> None:
        payload = {
            "message": context.body,
            "name": "Crisp",
            "sessionKey": context.session_key,
            "agentId": self._agent_id,
            "deliver": False,
            "context": context.to_payload(),
        }
        data = await self._post(HOOKS_AGENT_PATH, payload)
        for text, media_urls in extract_replies(data):
            await deliver(text, media_urls)

    async def enqueue_system_event(self, text: str, session_key: str) -> None:
        await self._post(HOOKS_WAKE_PATH, {"text": text, "mode": "now", "sessionKey": session_key})

    async def send_cross_channel_message(self, channel: str, to: str, text: str) -> None:
        if channel == "telegram" and self._telegram is not None:
            await self._telegram.send_text(to, text)
            return
        raise GatewayError(f"Unsupported notification channel: {channel}")

    async def _post(self, path: str, payload: dict[str, Any]) -> Any:
        if not self._token:
            raise GatewayError("OPENCLAW_HOOKS_TOKEN is not configured")
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self._base_url}{path}",
                    json=payload,
                    headers={"Authorization": f"Bearer {self._token}"},
                )
        except httpx.HTTPError as exc:
            raise GatewayError(f"Gateway request failed: {path}: {exc}") from exc

        if not response.is_success:
            raise GatewayError(f"Gateway error: {response.status_code} {path} - {response.text}")
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise GatewayError(f"Gateway returned invalid JSON: {path}") from exc


def extract_replies(data: Any) -> list[tuple[str, list[str] | None]]:
    if not isinstance(data, dict):
        return []

    raw_replies = data.get("replies")
    if not isinstance(raw_replies, list):
        raw_replies = [data]

    replies: list[tuple[str, list[str] | None]] = []
    for item in raw_replies:
        if not isinstance(item, dict):
            continue
        text = item.get("text")
        media = item.get("mediaUrls")
        media_urls = [url for url in media if isinstance(url, str) and url] if isinstance(media, list) else None
        if isinstance(text, str) and text or media_urls:
            replies.append((text if isinstance(text, str) else "", media_urls or None))
    return replies
