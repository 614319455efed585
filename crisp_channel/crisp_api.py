from __future__ import annotations

import asyncio
from typing import Any, Literal

import httpx

from .config import CRISP_API_BASE

DEFAULT_TIMEOUT_SECONDS = 10.0

ConversationState = Literal["resolved", "unresolved"]
MessageType = Literal["text", "file", "animation"]


class CrispApiError(Exception):
    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class CrispTimeoutError(CrispApiError):
    pass


def build_dashboard_url(website_id: str, session_id: str) -> str:
    return f"https://app.crisp.chat/website/{website_id}/inbox/{session_id}"


class CrispApiClient:
    """Minimal Crisp REST v1 client.

    Every call authenticates with the plugin key pair, is bounded by a fixed
    timeout and returns the ``data`` member of Crisp's ``{error, reason, data}``
    envelope.
    """

    def __init__(
        self,
        api_key_id: str,
        api_key_secret: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        base_url: str = CRISP_API_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._auth = httpx.BasicAuth(api_key_id, api_key_secret)
        self._timeout = timeout_seconds
        self._base_url = base_url
        self._transport = transport

    async def send_message(
        self,
        website_id: str,
        session_id: str,
        content: str,
        message_type: MessageType = "text",
    ) -> dict[str, Any]:
        data = await self._request(
            "POST",
            f"/website/{website_id}/conversation/{session_id}/message",
            json={"type": message_type, "content": content, "from": "operator", "origin": "chat"},
        )
        return data if isinstance(data, dict) else {}

    async def get_conversation(self, website_id: str, session_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/website/{website_id}/conversation/{session_id}")
        return data if isinstance(data, dict) else {}

    async def get_messages(self, website_id: str, session_id: str, limit: int = 20) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            f"/website/{website_id}/conversation/{session_id}/messages",
            params={"limit": limit},
        )
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    async def update_conversation_state(
        self,
        website_id: str,
        session_id: str,
        state: ConversationState,
    ) -> None:
        await self._request(
            "PATCH",
            f"/website/{website_id}/conversation/{session_id}/state",
            json={"state": state},
        )

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                auth=self._auth,
                timeout=self._timeout,
                headers={"X-Crisp-Tier": "plugin"},
                transport=self._transport,
            ) as client:
                # httpx timeouts apply per read; the deadline covers the whole exchange.
                response = await asyncio.wait_for(
                    client.request(method, path, json=json, params=params),
                    timeout=self._timeout,
                )
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            raise CrispTimeoutError(f"Crisp API timeout after {self._timeout}s: {method} {path}") from exc
        except httpx.HTTPError as exc:
            raise CrispApiError(f"Crisp API request failed: {method} {path}: {exc}") from exc

        if not response.is_success:
            raise CrispApiError(
                f"Crisp API error: {response.status_code} {response.reason_phrase} - {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CrispApiError(
                f"Crisp API returned invalid JSON: {method} {path}",
                status_code=response.status_code,
                body=response.text,
            ) from exc

        if not isinstance(payload, dict):
            raise CrispApiError(f"Crisp API returned unexpected payload: {payload!r}", status_code=response.status_code)
        if payload.get("error"):
            reason = payload.get("reason") or "Unknown error"
            raise CrispApiError(f"Crisp API error: {reason}", status_code=response.status_code, body=response.text)
        return payload.get("data")
