from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

CRISP_API_BASE = "https://api.crisp.chat/v1"
DEFAULT_ACCOUNT_ID = "default"
DEFAULT_WEBHOOK_PATH = "/crisp-webhook"
MIN_WEBHOOK_SECRET_LENGTH = 16
MAX_HISTORY_LIMIT = 50


@dataclass(slots=True)
class ServiceConfig:
    channel_config_path: Path
    log_level: str
    host: str
    port: int
    telegram_bot_token: str
    telegram_approval_chat_id: str
    telegram_allowed_users: set[int]
    gateway_url: str
    gateway_token: str
    gateway_agent_id: str

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        config_path = Path(os.getenv("CRISP_CONFIG_PATH", "./crisp.json")).resolve()
        log_level = os.getenv("LOG_LEVEL", "INFO").upper().strip() or "INFO"
        host = os.getenv("HOST", "0.0.0.0").strip() or "0.0.0.0"
        port = parse_int_env("PORT", default=8090)
        token = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()
        approval_chat_id = os.getenv("TELEGRAM_APPROVAL_CHAT_ID", "").strip()
        if approval_chat_id and not token:
            raise ValueError("TELEGRAM_APPROVAL_CHAT_ID requires TELEGRAM_BOT_TOKEN")

        return cls(
            channel_config_path=config_path,
            log_level=log_level,
            host=host,
            port=port,
            telegram_bot_token=token,
            telegram_approval_chat_id=approval_chat_id,
            telegram_allowed_users=parse_allowed_users(os.getenv("TELEGRAM_ALLOWED_USERS", "")),
            gateway_url=os.getenv("OPENCLAW_GATEWAY_URL", "http://127.0.0.1:8080").strip(),
            gateway_token=os.getenv("OPENCLAW_HOOKS_TOKEN", "").strip(),
            gateway_agent_id=os.getenv("OPENCLAW_AGENT_ID", "main").strip() or "main",
        )

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token)


@dataclass(frozen=True, slots=True)
class AccountConfig:
    """Settings for one Crisp website, as validated from ``channels.crisp``."""

    website_id: str
    api_key_id: str
    api_key_secret: str
    webhook_secret: str
    webhook_path: str = DEFAULT_WEBHOOK_PATH
    enabled: bool = True
    name: str | None = None
    auto_reply: bool = True
    approval_mode: bool = False
    approval_chat_id: str | None = None
    operator_name: str = "Assistant"
    operator_avatar: str | None = None
    notify_on_new: bool = False
    notify_target: str | None = None
    history_limit: int = 10
    resolve_on_reply: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AccountConfig":
        website_id = _require_str(data, "websiteId")
        try:
            uuid.UUID(website_id)
        except ValueError as exc:
            raise ValueError(f"websiteId must be a UUID: {website_id!r}") from exc

        webhook_secret = _require_str(data, "webhookSecret")
        if len(webhook_secret) < MIN_WEBHOOK_SECRET_LENGTH:
            raise ValueError(f"webhookSecret must be at least {MIN_WEBHOOK_SECRET_LENGTH} characters")

        history_limit = data.get("historyLimit", 10)
        if isinstance(history_limit, bool) or not isinstance(history_limit, int):
            raise ValueError(f"historyLimit must be an integer: {history_limit!r}")
        if not 0 <= history_limit <= MAX_HISTORY_LIMIT:
            raise ValueError(f"historyLimit must be between 0 and {MAX_HISTORY_LIMIT}")

        avatar = _optional_str(data, "operatorAvatar")
        if avatar is not None and urlparse(avatar).scheme not in {"http", "https"}:
            raise ValueError(f"operatorAvatar must be a URL: {avatar!r}")

        approval_chat = data.get("approvalChatId")

        return cls(
            website_id=website_id,
            api_key_id=_require_str(data, "apiKeyId"),
            api_key_secret=_require_str(data, "apiKeySecret"),
            webhook_secret=webhook_secret,
            webhook_path=_optional_str(data, "webhookPath") or DEFAULT_WEBHOOK_PATH,
            enabled=_bool(data, "enabled", True),
            name=_optional_str(data, "name"),
            auto_reply=_bool(data, "autoReply", True),
            approval_mode=_bool(data, "approvalMode", False),
            approval_chat_id=str(approval_chat) if approval_chat not in (None, "") else None,
            operator_name=_optional_str(data, "operatorName") or "Assistant",
            operator_avatar=avatar,
            notify_on_new=_bool(data, "notifyOnNew", False),
            notify_target=_optional_str(data, "notifyTarget"),
            history_limit=history_limit,
            resolve_on_reply=_bool(data, "resolveOnReply", False),
        )


@dataclass(frozen=True, slots=True)
class ResolvedAccount:
    account_id: str
    name: str
    enabled: bool
    configured: bool
    config: AccountConfig | None
    base_url: str = CRISP_API_BASE

    def describe(self) -> dict[str, Any]:
        return {
            "accountId": self.account_id,
            "name": self.name,
            "enabled": self.enabled,
            "configured": self.configured,
            "baseUrl": self.base_url,
        }


class JsonConfigSource:
    """Reads the host configuration file on every call so edits apply without restart."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def __call__(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        payload = json.loads(self._path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"Configuration root must be an object: {self._path}")
        return payload


def crisp_section(cfg: dict[str, Any]) -> dict[str, Any] | None:
    channels = cfg.get("channels")
    if not isinstance(channels, dict):
        return None
    section = channels.get("crisp")
    return section if isinstance(section, dict) else None


def list_account_ids(cfg: dict[str, Any]) -> list[str]:
    section = crisp_section(cfg)
    if section is None:
        return []

    accounts = section.get("accounts")
    if isinstance(accounts, dict) and accounts:
        return list(accounts.keys())

    if section.get("websiteId"):
        return [DEFAULT_ACCOUNT_ID]
    return []


def default_account_id(cfg: dict[str, Any]) -> str:
    ids = list_account_ids(cfg)
    return ids[0] if ids else DEFAULT_ACCOUNT_ID


def resolve_account(cfg: dict[str, Any], account_id: str | None = None) -> ResolvedAccount:
    account_id = account_id or DEFAULT_ACCOUNT_ID
    section = crisp_section(cfg)
    if section is None:
        return ResolvedAccount(
            account_id=account_id,
            name=account_id,
            enabled=False,
            configured=False,
            config=None,
        )

    merged = {key: value for key, value in section.items() if key != "accounts"}
    accounts = section.get("accounts")
    if account_id != DEFAULT_ACCOUNT_ID and isinstance(accounts, dict):
        overlay = accounts.get(account_id)
        if isinstance(overlay, dict):
            merged.update(overlay)

    try:
        config: AccountConfig | None = AccountConfig.from_dict(merged)
    except ValueError as exc:
        logger.warning("Invalid Crisp account configuration: %s", exc, extra={"account_id": account_id})
        config = None

    return ResolvedAccount(
        account_id=account_id,
        name=str(merged.get("name") or account_id),
        enabled=merged.get("enabled") is not False,
        configured=config is not None,
        config=config,
    )


def parse_allowed_users(raw: str) -> set[int]:
    users: set[int] = set()
    for part in raw.split(","):
        value = part.strip()
        if not value:
            continue
        try:
            users.add(int(value))
        except ValueError as exc:
            raise ValueError(f"Invalid TELEGRAM_ALLOWED_USERS entry: {value!r}") from exc
    return users


def parse_int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from exc


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{key} is required")
    return value.strip()


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value.strip() or None


def _bool(data: dict[str, Any], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be a boolean")
    return value
