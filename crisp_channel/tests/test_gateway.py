import asyncio
import json

import httpx
import pytest

from crisp_channel.gateway import GatewayError, GatewayRuntime, extract_replies
from crisp_channel.runtime import InboundContext, Peer


def run(coro):
    return asyncio.run(coro)


def make_runtime(handler, token: str = "hooks-token", telegram=None) -> GatewayRuntime:
    return GatewayRuntime(
        base_url="http://gateway.local/",
        token=token,
        agent_id="support",
        telegram=telegram,
        transport=httpx.MockTransport(handler),
    )


def make_context() -> InboundContext:
    return InboundContext(
        body="Do you ship to Canada?",
        session_key="agent:support:crisp:default:direct:session_abc",
        account_id="default",
        sender_id="session_abc",
        sender_name="Alice",
        recipient_id="site-1",
    )


def test_resolve_route_builds_session_key():
    runtime = make_runtime(lambda request: httpx.Response(200))

    route = runtime.resolve_route({}, "crisp", "default", Peer(id="session_abc"))

    assert route.session_key == "agent:support:crisp:default:direct:session_abc"
    assert route.agent_id == "support"


def test_dispatch_reply_posts_agent_hook_and_delivers_replies():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={"replies": [{"text": "Yes we do"}, {"text": "", "mediaUrls": ["https://files/rates.pdf"]}]},
        )

    delivered: list[tuple[str, list[str] | None]] = []

    async def deliver(text, media_urls):
        delivered.append((text, media_urls))

    run(make_runtime(handler).dispatch_reply(make_context(), deliver))

    [request] = requests
    assert str(request.url) == "http://gateway.local/hooks/agent"
    assert request.headers["Authorization"] == "Bearer hooks-token"
    body = json.loads(request.content)
    assert body["message"] == "Do you ship to Canada?"
    assert body["agentId"] == "support"
    assert body["deliver"] is False
    assert body["context"]["SenderName"] == "Alice"
    assert delivered == [("Yes we do", None), ("", ["https://files/rates.pdf"])]


def test_enqueue_system_event_posts_wake_hook():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(204)

    run(make_runtime(handler).enqueue_system_event("ticket AB12CD waiting", session_key="key-1"))

    [request] = requests
    assert request.url.path == "/hooks/wake"
    assert json.loads(request.content) == {"text": "ticket AB12CD waiting", "mode": "now", "sessionKey": "key-1"}


def test_gateway_errors_are_wrapped():
    runtime = make_runtime(lambda request: httpx.Response(401, text="bad token"))
    with pytest.raises(GatewayError, match="401"):
        run(runtime.enqueue_system_event("x", session_key="k"))

    runtime = make_runtime(lambda request: httpx.Response(200), token="")
    with pytest.raises(GatewayError, match="OPENCLAW_HOOKS_TOKEN"):
        run(runtime.enqueue_system_event("x", session_key="k"))


def test_cross_channel_message_uses_telegram():
    class FakeTelegram:
        def __init__(self) -> None:
            self.sent: list[tuple[str, str]] = []

        async def send_text(self, chat_id: str, text: str) -> None:
            self.sent.append((chat_id, text))

    telegram = FakeTelegram()
    runtime = make_runtime(lambda request: httpx.Response(200), telegram=telegram)

    run(runtime.send_cross_channel_message("telegram", "12345", "New conversation"))
    assert telegram.sent == [("12345", "New conversation")]

    with pytest.raises(GatewayError):
        run(runtime.send_cross_channel_message("slack", "C1", "New conversation"))


def test_extract_replies_shapes():
    assert extract_replies({"text": "hi"}) == [("hi", None)]
    assert extract_replies({"replies": [{"text": "a"}, "junk", {"text": ""}]}) == [("a", None)]
    assert extract_replies({}) == []
    assert extract_replies(None) == []
