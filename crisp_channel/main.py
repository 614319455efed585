from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from telegram.ext import Application

from .approval_bot import ApprovalBot
from .approvals import ApprovalManager, PendingReplyStore
from .channel import CrispChannel
from .config import JsonConfigSource, ServiceConfig
from .gateway import GatewayRuntime
from .logging_setup import setup_logging
from .notify import TelegramNotifier
from .sessions import SessionTracker
from .webhook import WebhookRouter

logger = logging.getLogger(__name__)


def create_app(channel: CrispChannel, telegram_app: Application | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if telegram_app is not None:
            await telegram_app.initialize()
            await telegram_app.start()
            if telegram_app.updater is not None:
                await telegram_app.updater.start_polling()
            logger.info("Telegram approval bot started")
        yield
        if telegram_app is not None:
            if telegram_app.updater is not None:
                await telegram_app.updater.stop()
            await telegram_app.stop()
            await telegram_app.shutdown()

    app = FastAPI(title="Crisp Channel", version="0.1.0", lifespan=lifespan)

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/{path:path}")
    async def webhook(request: Request) -> Response:
        response = await channel.http_handler(request)
        if response is None:
            return JSONResponse({"error": "Not found"}, status_code=404)
        return response

    return app


def main() -> None:
    config = ServiceConfig.from_env()
    setup_logging(config.log_level)

    telegram_app: Application | None = None
    notifier: TelegramNotifier | None = None
    if config.telegram_enabled:
        telegram_app = Application.builder().token(config.telegram_bot_token).build()
        notifier = TelegramNotifier(telegram_app.bot)
        if not config.telegram_allowed_users:
            logger.warning("No TELEGRAM_ALLOWED_USERS configured; nobody can resolve approvals from Telegram")

    runtime = GatewayRuntime(
        base_url=config.gateway_url,
        token=config.gateway_token,
        agent_id=config.gateway_agent_id,
        telegram=notifier,
    )
    pending = PendingReplyStore()
    router = WebhookRouter(
        runtime=runtime,
        sessions=SessionTracker(),
        pending=pending,
        notifier=notifier,
        approval_chat_id=config.telegram_approval_chat_id,
    )
    channel = CrispChannel(config_source=JsonConfigSource(config.channel_config_path), router=router)

    if telegram_app is not None:
        approvals = ApprovalManager(store=pending, send_reply=channel.send_ticket_reply)
        ApprovalBot(approvals, config.telegram_allowed_users).register(telegram_app)

    logger.info("Starting Crisp channel bridge")
    uvicorn.run(create_app(channel, telegram_app), host=config.host, port=config.port, log_config=None)


if __name__ == "__main__":
    main()
