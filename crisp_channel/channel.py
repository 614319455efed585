from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from starlette.requests import Request
from starlette.responses import Response

from .approvals import PendingReply
from .config import default_account_id, list_account_ids, resolve_account
from .crisp_api import CrispApiError, MessageType
from .webhook import ClientFactory, WebhookRouter, default_client_factory

logger = logging.getLogger(__name__)

ConfigSource = Callable[[], dict[str, Any]]


@dataclass(frozen=True, slots=True)
class SendResult:
    ok: bool
    message_id: str | None = None
    error: str | None = None


def resolve_target(to: str | None) -> str:
    target = (to or "").strip()
    if not target:
        raise ValueError("Crisp requires a target session id")
    return target


class CrispChannel:
    """Multi-account entry point used by the host: webhook dispatch plus outbound sends."""

    def __init__(
        self,
        config_source: ConfigSource,
        router: WebhookRouter,
        client_factory: ClientFactory = default_client_factory,
    ) -> None:
        self._config_source = config_source
        self._router = router
        self._client_factory = client_factory

    async def http_handler(self, request: Request) -> Response | None:
        cfg = self._config_source()
        for account_id in list_account_ids(cfg):
            account = resolve_account(cfg, account_id)
            if not account.configured or not account.enabled:
                continue
            response = await self._router.handle(request, account, cfg)
            if response is not None:
                return response
        return None

    async def send_reply(self, account_id: str, session_id: str, website_id: str, text: str) -> None:
        account = resolve_account(self._config_source(), account_id)
        if account.config is None:
            raise CrispApiError(f"Crisp account {account_id!r} is not configured")
        client = self._client_factory(account.config)
        await client.send_message(website_id, session_id, text)
        logger.info(
            "Sent approved reply",
            extra={"account_id": account_id, "session_id": session_id, "website_id": website_id},
        )

    async def send_ticket_reply(self, pending: PendingReply, text: str) -> None:
        await self.send_reply(pending.account_id, pending.session_id, pending.website_id, text)

    async def send_text(self, to: str, text: str, account_id: str | None = None) -> SendResult:
        return await self._send(to, text, "text", account_id)

    async def send_media(self, to: str, media_url: str, account_id: str | None = None) -> SendResult:
        return await self._send(to, media_url, "file", account_id)

    async def _send(self, to: str, content: str, message_type: MessageType, account_id: str | None) -> SendResult:
        cfg = self._config_source()
        account = resolve_account(cfg, account_id or default_account_id(cfg))
        if account.config is None:
            return SendResult(ok=False, error="Crisp not configured")
        try:
            session_id = resolve_target(to)
            client = self._client_factory(account.config)
            data = await client.send_message(account.config.website_id, session_id, content, message_type=message_type)
        except (ValueError, CrispApiError) as exc:
            logger.warning(
                "Outbound Crisp send failed: %s",
                exc,
                extra={"account_id": account.account_id, "failure": "upstream"},
            )
            return SendResult(ok=False, error=str(exc))

        fingerprint = data.get("fingerprint")
        return SendResult(ok=True, message_id=str(fingerprint) if fingerprint is not None else None)
