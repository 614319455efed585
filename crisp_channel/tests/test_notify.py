import asyncio
from types import SimpleNamespace

from telegram.constants import ParseMode
from telegram.error import TelegramError

from crisp_channel.approvals import PendingReply
from crisp_channel.notify import (
    TELEGRAM_MESSAGE_LIMIT,
    SystemEventNotifier,
    TelegramNotifier,
    approval_keyboard,
    format_approval_prompt,
    truncate_escaped,
    truncate_text,
)


def run(coro):
    return asyncio.run(coro)


def make_pending(**overrides) -> PendingReply:
    data = {
        "id": "AB12CD",
        "session_id": "session_abc",
        "website_id": "site-1",
        "account_id": "default",
        "visitor_name": "Bob_Smith",
        "visitor_message": "Price for item #4 (blue)?",
        "created_at": 1000.0,
    }
    data.update(overrides)
    return PendingReply(**data)


class FakeBot:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.sent: list[dict] = []

    async def send_message(self, **kwargs):
        if self.error is not None:
            raise self.error
        self.sent.append(kwargs)
        return SimpleNamespace(message_id=555, chat_id=-100123)


class FakeRuntime:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.events: list[tuple[str, str]] = []

    async def enqueue_system_event(self, text: str, session_key: str) -> None:
        if self.fail:
            raise RuntimeError("gateway down")
        self.events.append((text, session_key))


def test_truncate_text():
    assert truncate_text("short", 10) == "short"
    assert truncate_text("abcdefghij", 8) == "abcde..."


def test_prompt_escapes_markdown():
    prompt = format_approval_prompt(make_pending())

    assert "\\[AB12CD\\]" in prompt
    assert "*Bob\\_Smith*" in prompt
    assert "item \\#4 \\(blue\\)?" in prompt


def test_prompt_fits_telegram_limit_after_escaping():
    prompt = format_approval_prompt(make_pending(visitor_name="_" * 500, visitor_message="." * 5000))

    assert len(prompt) <= TELEGRAM_MESSAGE_LIMIT
    assert prompt.endswith("or ignore it\\._")
    assert "\\.\\.\\.\"" in prompt


def test_truncate_escaped_keeps_escape_pairs_whole():
    assert truncate_escaped("hello", 10) == "hello"

    # A cut after the backslash of "\." drops the whole pair.
    assert truncate_escaped("a." * 20, 11) == "a\\.a\\.\\.\\."


def test_keyboard_callback_data():
    keyboard = approval_keyboard("AB12CD")

    [[reply, ignore]] = keyboard.inline_keyboard
    assert reply.callback_data == "crisp:reply:AB12CD"
    assert ignore.callback_data == "crisp:ignore:AB12CD"


def test_telegram_notifier_returns_message_correlation():
    bot = FakeBot()
    notifier = TelegramNotifier(bot)

    result = run(notifier.notify_pending(make_pending(), chat_id="-100123", session_key="agent:main:crisp"))

    assert result.ok
    assert result.message_id == "555"
    assert result.chat_id == "-100123"
    [sent] = bot.sent
    assert sent["chat_id"] == "-100123"
    assert sent["parse_mode"] == ParseMode.MARKDOWN_V2
    assert sent["reply_markup"].inline_keyboard[0][0].callback_data == "crisp:reply:AB12CD"


def test_telegram_notifier_reports_failure():
    notifier = TelegramNotifier(FakeBot(error=TelegramError("chat not found")))

    result = run(notifier.notify_pending(make_pending(), chat_id="-1", session_key="key"))

    assert not result.ok
    assert "chat not found" in result.error


def test_system_event_notifier_mentions_ticket():
    runtime = FakeRuntime()
    notifier = SystemEventNotifier(runtime)

    result = run(notifier.notify_pending(make_pending(), chat_id="", session_key="agent:main:crisp:session_abc"))

    assert result.ok
    assert result.message_id is None
    [(text, session_key)] = runtime.events
    assert "[AB12CD]" in text
    assert "Bob_Smith" in text
    assert session_key == "agent:main:crisp:session_abc"


def test_system_event_notifier_failure_is_reported():
    notifier = SystemEventNotifier(FakeRuntime(fail=True))

    result = run(notifier.notify_pending(make_pending(), chat_id="", session_key="key"))

    assert not result.ok
    assert result.error == "gateway down"
