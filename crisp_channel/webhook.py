from __future__ import annotations

import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .approvals import PendingReplyStore
from .config import AccountConfig, ResolvedAccount
from .crisp_api import CrispApiClient, CrispApiError, build_dashboard_url
from .notify import ApprovalNotifier, SystemEventNotifier
from .runtime import CHANNEL_ID, AgentRuntime, InboundContext, Peer
from .sessions import Session, SessionTracker

logger = logging.getLogger(__name__)

SUPPORTED_MESSAGE_TYPES = {"text", "file"}
FILE_PLACEHOLDER = "<media:attachment>"
DEFAULT_VISITOR_NAME = "Visitor"

ClientFactory = Callable[[AccountConfig], CrispApiClient]


class MalformedPayloadError(ValueError):
    pass


@dataclass(slots=True)
class WebhookEvent:
    event: str
    data: dict[str, Any]
    website_id: str | None = None
    timestamp: int | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> "WebhookEvent":
        if not isinstance(payload, dict):
            raise MalformedPayloadError("Webhook body must be a JSON object")
        event = payload.get("event")
        if not isinstance(event, str) or not event:
            raise MalformedPayloadError("Webhook body is missing 'event'")
        data = payload.get("data")
        if not isinstance(data, dict):
            raise MalformedPayloadError("Webhook body is missing 'data'")
        website_id = payload.get("website_id")
        timestamp = payload.get("timestamp")
        return cls(
            event=event,
            data=data,
            website_id=str(website_id) if website_id else None,
            timestamp=timestamp if isinstance(timestamp, int) and not isinstance(timestamp, bool) else None,
        )

    @property
    def session_id(self) -> str | None:
        value = self.data.get("session_id")
        return str(value) if value else None


def parse_event(raw: bytes) -> WebhookEvent:
    try:
        payload = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayloadError("Invalid JSON body") from exc
    return WebhookEvent.from_dict(payload)


def validate_secret(provided: str | None, expected: str | None) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def default_client_factory(config: AccountConfig) -> CrispApiClient:
    return CrispApiClient(api_key_id=config.api_key_id, api_key_secret=config.api_key_secret)


def history_from_messages(messages: list[dict[str, Any]]) -> list[dict[str, str]]:
    """Crisp lists newest first; the newest entry is the message being answered."""
    history: list[dict[str, str]] = []
    for message in list(reversed(messages))[:-1]:
        content = message.get("content")
        if not isinstance(content, str) or not content:
            continue
        role = "user" if message.get("from") == "user" else "assistant"
        history.append({"role": role, "content": content})
    return history


class WebhookRouter:
    def __init__(
        self,
        runtime: AgentRuntime,
        sessions: SessionTracker,
        pending: PendingReplyStore,
        notifier: ApprovalNotifier | None = None,
        approval_chat_id: str = "",
        client_factory: ClientFactory = default_client_factory,
    ) -> None:
        self._runtime = runtime
        self._sessions = sessions
        self._pending = pending
        self._notifier = notifier
        self._approval_chat_id = approval_chat_id
        self._fallback_notifier = SystemEventNotifier(runtime)
        self._client_factory = client_factory

    async def handle(self, request: Request, account: ResolvedAccount, cfg: dict[str, Any]) -> Response | None:
        config = account.config
        if config is None or request.method != "POST":
            return None
        if not request.url.path.startswith(config.webhook_path):
            return None

        if not validate_secret(request.query_params.get("secret"), config.webhook_secret):
            client_host = request.client.host if request.client else "unknown"
            logger.warning(
                "Invalid webhook secret from %s",
                client_host,
                extra={"account_id": account.account_id, "failure": "auth"},
            )
            return JSONResponse({"error": "Invalid secret"}, status_code=401)

        try:
            event = parse_event(await request.body())
            logger.info(
                "Received webhook",
                extra={"account_id": account.account_id, "event": event.event, "session_id": event.session_id},
            )
            await self.dispatch(event, account.account_id, config, cfg)
        except MalformedPayloadError as exc:
            logger.warning(
                "Malformed webhook payload: %s",
                exc,
                extra={"account_id": account.account_id, "failure": "malformed"},
            )
            return JSONResponse({"error": "Internal error"}, status_code=500)
        except Exception:
            logger.exception("Webhook processing failed", extra={"account_id": account.account_id, "failure": "internal"})
            return JSONResponse({"error": "Internal error"}, status_code=500)

        return JSONResponse({"ok": True})

    async def dispatch(self, event: WebhookEvent, account_id: str, config: AccountConfig, cfg: dict[str, Any]) -> None:
        if event.event == "message:send":
            await self._handle_inbound_message(event, account_id, config, cfg)
        elif event.event == "message:received":
            return
        elif event.event == "session:set_state":
            logger.info(
                "Conversation state changed to %s",
                event.data.get("state"),
                extra={"account_id": account_id, "session_id": event.session_id, "event": event.event},
            )
        elif event.event == "session:set_email":
            email = event.data.get("email")
            if event.session_id and isinstance(email, str):
                self._sessions.set_email(event.session_id, email)
        else:
            logger.info("Unhandled webhook event", extra={"account_id": account_id, "event": event.event})

    async def _handle_inbound_message(
        self,
        event: WebhookEvent,
        account_id: str,
        config: AccountConfig,
        cfg: dict[str, Any],
    ) -> None:
        data = event.data
        sender = data.get("from")
        if sender != "user":
            logger.debug("Skipping message from %s", sender, extra={"account_id": account_id})
            return

        message_type = data.get("type")
        if message_type is not None and message_type not in SUPPORTED_MESSAGE_TYPES:
            logger.debug("Skipping unsupported message type %s", message_type, extra={"account_id": account_id})
            return

        session_id = event.session_id
        website_id = data.get("website_id") or event.website_id
        if not session_id or not website_id:
            raise MalformedPayloadError("Message event is missing session_id or website_id")
        website_id = str(website_id)

        user = data.get("user")
        nickname = user.get("nickname") if isinstance(user, dict) else None
        visitor_name = nickname if isinstance(nickname, str) and nickname else DEFAULT_VISITOR_NAME

        content = data.get("content")
        if message_type == "file":
            if isinstance(content, dict):
                content = content.get("url")
            media_url = content if isinstance(content, str) and content else None
            text = FILE_PLACEHOLDER
        else:
            media_url = None
            text = content if isinstance(content, str) else ""

        log_extra = {"account_id": account_id, "session_id": session_id, "website_id": website_id}
        session = self._sessions.track(session_id, website_id, account_id, visitor_name)
        if session.is_new:
            logger.info("New conversation started", extra=log_extra)
            await self._notify_new_conversation(config, session)

        if not config.auto_reply and not config.approval_mode:
            logger.info("Auto-reply disabled, message recorded only", extra=log_extra)
            return

        if config.approval_mode:
            await self._request_approval(
                account_id=account_id,
                config=config,
                cfg=cfg,
                session_id=session_id,
                website_id=website_id,
                visitor_name=visitor_name,
                visitor_message=media_url if media_url else text,
            )
            return

        timestamp = data.get("timestamp")
        fingerprint = data.get("fingerprint")
        await self._auto_reply(
            account_id=account_id,
            config=config,
            cfg=cfg,
            session_id=session_id,
            website_id=website_id,
            visitor_name=visitor_name,
            text=text,
            media_url=media_url,
            message_id=str(fingerprint) if fingerprint is not None else None,
            timestamp=timestamp if isinstance(timestamp, int) else event.timestamp,
        )

    async def _request_approval(
        self,
        account_id: str,
        config: AccountConfig,
        cfg: dict[str, Any],
        session_id: str,
        website_id: str,
        visitor_name: str,
        visitor_message: str,
    ) -> None:
        pending = self._pending.store(
            session_id=session_id,
            website_id=website_id,
            account_id=account_id,
            visitor_name=visitor_name,
            visitor_message=visitor_message,
        )
        log_extra = {"account_id": account_id, "session_id": session_id, "ticket_id": pending.id}
        logger.info("Stored reply awaiting approval", extra=log_extra)

        chat_id = config.approval_chat_id or self._approval_chat_id
        notifier = self._notifier if self._notifier is not None and chat_id else self._fallback_notifier
        try:
            route = self._runtime.resolve_route(cfg, CHANNEL_ID, account_id, Peer(id=session_id))
            result = await notifier.notify_pending(pending, chat_id=chat_id, session_key=route.session_key)
        except Exception:
            logger.exception("Approval notification failed", extra={**log_extra, "failure": "notify"})
            return

        if not result.ok:
            logger.warning(
                "Approval notification not delivered: %s",
                result.error,
                extra={**log_extra, "failure": "notify"},
            )
            return
        if result.message_id:
            self._pending.attach_notification(pending.id, result.message_id, result.chat_id or chat_id)

    async def _auto_reply(
        self,
        account_id: str,
        config: AccountConfig,
        cfg: dict[str, Any],
        session_id: str,
        website_id: str,
        visitor_name: str,
        text: str,
        media_url: str | None,
        message_id: str | None,
        timestamp: int | None,
    ) -> None:
        log_extra = {"account_id": account_id, "session_id": session_id, "website_id": website_id}
        client = self._client_factory(config)

        history: list[dict[str, str]] = []
        if config.history_limit > 0:
            try:
                messages = await client.get_messages(website_id, session_id, limit=config.history_limit)
                history = history_from_messages(messages)
            except CrispApiError as exc:
                logger.warning("Failed to fetch history: %s", exc, extra={**log_extra, "failure": "upstream"})

        delivered = 0

        async def deliver(reply_text: str, media_urls: list[str] | None = None) -> None:
            nonlocal delivered
            if reply_text.strip():
                await client.send_message(website_id, session_id, reply_text)
                delivered += 1
            for url in media_urls or []:
                await client.send_message(website_id, session_id, url, message_type="file")
                delivered += 1

        try:
            route = self._runtime.resolve_route(cfg, CHANNEL_ID, account_id, Peer(id=session_id))
            context = InboundContext(
                body=text,
                session_key=route.session_key,
                account_id=route.account_id,
                sender_id=session_id,
                sender_name=visitor_name,
                recipient_id=website_id,
                message_id=message_id,
                media_url=media_url,
                timestamp=timestamp,
                history=history,
            )
            await self._runtime.dispatch_reply(context, deliver)
            if not delivered:
                logger.info("Assistant returned no reply", extra=log_extra)
                return

            logger.info("Sent assistant reply", extra=log_extra)
            if config.resolve_on_reply:
                await client.update_conversation_state(website_id, session_id, "resolved")
        except CrispApiError:
            logger.exception("Crisp API call failed", extra={**log_extra, "failure": "upstream"})
        except Exception:
            logger.exception("Assistant dispatch failed", extra={**log_extra, "failure": "dispatch"})

    async def _notify_new_conversation(self, config: AccountConfig, session: Session) -> None:
        if not config.notify_on_new or not config.notify_target:
            return

        channel, _, to = config.notify_target.partition(":")
        if not channel or not to:
            logger.warning("Invalid notifyTarget format: %s", config.notify_target, extra={"failure": "notify"})
            return

        lines = ["🆕 New Crisp conversation", ""]
        if session.visitor_email:
            lines.append(f"👤 {session.visitor_name} ({session.visitor_email})")
        else:
            lines.append(f"👤 {session.visitor_name}")
        lines.extend(["", f"🔗 Open in Crisp: {build_dashboard_url(session.website_id, session.session_id)}"])

        try:
            await self._runtime.send_cross_channel_message(channel, to, "\n".join(lines))
        except Exception:
            logger.exception(
                "Failed to send new conversation notification",
                extra={"session_id": session.session_id, "failure": "notify"},
            )
