import json

import pytest

from crisp_channel.config import (
    AccountConfig,
    JsonConfigSource,
    ServiceConfig,
    default_account_id,
    list_account_ids,
    parse_allowed_users,
    resolve_account,
)

WEBSITE_ID = "8c3b6f5e-1f4a-4c47-9a5e-3a2f1b0c9d7e"
OTHER_WEBSITE_ID = "0f1e2d3c-4b5a-4968-8776-a5b4c3d2e1f0"


def account_dict(**overrides):
    data = {
        "websiteId": WEBSITE_ID,
        "apiKeyId": "key-id",
        "apiKeySecret": "key-secret",
        "webhookSecret": "webhook-secret-0123456789",
    }
    data.update(overrides)
    return data


def test_account_defaults():
    config = AccountConfig.from_dict(account_dict())

    assert config.webhook_path == "/crisp-webhook"
    assert config.enabled is True
    assert config.auto_reply is True
    assert config.approval_mode is False
    assert config.operator_name == "Assistant"
    assert config.history_limit == 10
    assert config.resolve_on_reply is False


@pytest.mark.parametrize(
    "overrides",
    [
        {"websiteId": "not-a-uuid"},
        {"webhookSecret": "too-short"},
        {"apiKeySecret": ""},
        {"historyLimit": 51},
        {"historyLimit": -1},
        {"historyLimit": True},
        {"operatorAvatar": "avatar.png"},
        {"autoReply": "yes"},
    ],
)
def test_account_rejects_invalid_values(overrides):
    with pytest.raises(ValueError):
        AccountConfig.from_dict(account_dict(**overrides))


def test_approval_chat_id_accepts_numbers():
    config = AccountConfig.from_dict(account_dict(approvalChatId=-100123))

    assert config.approval_chat_id == "-100123"


def test_single_account_section_lists_default():
    cfg = {"channels": {"crisp": account_dict()}}

    assert list_account_ids(cfg) == ["default"]
    assert default_account_id(cfg) == "default"

    account = resolve_account(cfg)
    assert account.configured
    assert account.enabled
    assert account.config.website_id == WEBSITE_ID


def test_missing_section_is_not_configured():
    assert list_account_ids({}) == []
    assert default_account_id({}) == "default"

    account = resolve_account({}, "default")
    assert not account.configured
    assert account.config is None


def test_named_accounts_overlay_shared_settings():
    cfg = {
        "channels": {
            "crisp": {
                **account_dict(autoReply=False),
                "accounts": {
                    "shop": {"name": "Shop"},
                    "support": {"websiteId": OTHER_WEBSITE_ID, "webhookPath": "/crisp-support", "enabled": False},
                },
            }
        }
    }

    assert list_account_ids(cfg) == ["shop", "support"]
    assert default_account_id(cfg) == "shop"

    shop = resolve_account(cfg, "shop")
    assert shop.name == "Shop"
    assert shop.config.website_id == WEBSITE_ID
    assert shop.config.auto_reply is False

    support = resolve_account(cfg, "support")
    assert support.enabled is False
    assert support.config.website_id == OTHER_WEBSITE_ID
    assert support.config.webhook_path == "/crisp-support"
    assert support.describe()["accountId"] == "support"


def test_invalid_account_is_reported_unconfigured():
    cfg = {"channels": {"crisp": account_dict(webhookSecret="short")}}

    account = resolve_account(cfg)

    assert account.configured is False
    assert account.config is None


def test_json_config_source_rereads_file(tmp_path):
    path = tmp_path / "crisp.json"
    source = JsonConfigSource(path)
    assert source() == {}

    path.write_text(json.dumps({"channels": {"crisp": account_dict()}}), encoding="utf-8")
    assert list_account_ids(source()) == ["default"]

    path.write_text(json.dumps({"channels": {}}), encoding="utf-8")
    assert list_account_ids(source()) == []

    path.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError):
        source()


def test_parse_allowed_users():
    assert parse_allowed_users(" 1, 22 ,,333 ") == {1, 22, 333}
    assert parse_allowed_users("") == set()
    with pytest.raises(ValueError):
        parse_allowed_users("1,abc")


def test_service_config_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("CRISP_CONFIG_PATH", str(tmp_path / "crisp.json"))
    monkeypatch.setenv("PORT", "9000")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
    monkeypatch.setenv("TELEGRAM_APPROVAL_CHAT_ID", "-100123")
    monkeypatch.setenv("TELEGRAM_ALLOWED_USERS", "42")
    monkeypatch.setenv("OPENCLAW_HOOKS_TOKEN", "hooks-token")
    monkeypatch.delenv("OPENCLAW_AGENT_ID", raising=False)

    config = ServiceConfig.from_env()

    assert config.channel_config_path == (tmp_path / "crisp.json").resolve()
    assert config.port == 9000
    assert config.log_level == "DEBUG"
    assert config.telegram_enabled
    assert config.telegram_approval_chat_id == "-100123"
    assert config.telegram_allowed_users == {42}
    assert config.gateway_token == "hooks-token"
    assert config.gateway_agent_id == "main"


def test_service_config_rejects_inconsistent_env(monkeypatch):
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
    monkeypatch.setenv("TELEGRAM_APPROVAL_CHAT_ID", "-100123")
    with pytest.raises(ValueError):
        ServiceConfig.from_env()

    monkeypatch.delenv("TELEGRAM_APPROVAL_CHAT_ID")
    monkeypatch.setenv("PORT", "eighty")
    with pytest.raises(ValueError):
        ServiceConfig.from_env()
