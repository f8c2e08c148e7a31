"""Small REST surface: health for monitoring and two wallet endpoints."""

from __future__ import annotations

import hmac
import logging
from typing import Awaitable, Callable, Dict, Optional

from aiohttp import web

from casinoapp.casino_service import CasinoService
from casinoapp.entities import InsufficientFundsError
from casinoapp.ledger import Ledger


Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _make_auth_middleware(api_key: str):
    @web.middleware
    async def auth_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        if not request.path.startswith("/api/"):
            return await handler(request)

        provided = request.headers.get("X-API-Key", "")
        if not provided:
            return _error(401, "Missing API Key")
        if not api_key or not hmac.compare_digest(provided, api_key):
            return _error(401, "Invalid API Key")

        raw_user = request.headers.get("X-User-ID", "").strip()
        if not raw_user.isdigit():
            return _error(400, "Missing or invalid X-User-ID header")
        request["user_id"] = int(raw_user)
        return await handler(request)

    return auth_middleware


async def health(request: web.Request) -> web.Response:
    """Report queue and session state; 503 when the queue worker is down."""

    casino: CasinoService = request.app["casino"]
    queue = casino.turn_queue
    running = queue.running
    payload: Dict[str, object] = {
        "status": "ok" if running else "degraded",
        "queue_depth": queue.get_queue_depth(),
        "queue_running": running,
        "active_sessions": casino.sessions.total_active(),
    }
    return web.json_response(payload, status=200 if running else 503)


async def handle_me(request: web.Request) -> web.Response:
    ledger: Ledger = request.app["ledger"]
    user_id = request["user_id"]
    balance = await ledger.get_balance(user_id)
    return web.json_response({"user_id": str(user_id), "balance": balance})


async def handle_transfer(request: web.Request) -> web.Response:
    ledger: Ledger = request.app["ledger"]
    logger: logging.Logger = request.app["logger"]
    user_id = request["user_id"]

    try:
        body = await request.json()
        to_user_id = int(body["to_user_id"])
        amount = int(body["amount"])
    except (ValueError, TypeError, KeyError):
        return _error(400, "Invalid Request Body")

    if amount <= 0:
        return _error(400, "Amount must be positive")
    if to_user_id == user_id:
        return _error(400, "Cannot transfer to yourself")

    try:
        await ledger.transfer(user_id, to_user_id, amount)
    except InsufficientFundsError:
        return _error(400, "Insufficient funds or transaction failed")

    logger.info(
        "API transfer completed",
        extra={
            "category": "api",
            "user_id": user_id,
            "recipient_id": to_user_id,
            "amount": amount,
        },
    )
    return web.json_response({"status": "success"})


def create_app(
    *,
    ledger: Ledger,
    casino: CasinoService,
    api_key: str,
    logger: Optional[logging.Logger] = None,
) -> web.Application:
    app = web.Application(middlewares=[_make_auth_middleware(api_key)])
    app["ledger"] = ledger
    app["casino"] = casino
    app["logger"] = logger or logging.getLogger(__name__)
    app.router.add_get("/health", health)
    app.router.add_get("/api/v1/me", handle_me)
    app.router.add_post("/api/v1/transfer", handle_transfer)
    return app


class ApiServer:
    """Runs :func:`create_app` on the bot's event loop."""

    def __init__(
        self,
        app: web.Application,
        *,
        host: str = "0.0.0.0",
        port: int = 8080,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._logger = logger or logging.getLogger(__name__)

    async def start(self) -> None:
        if self._runner is not None:
            return
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        self._runner = runner
        self._logger.info(
            "API server listening",
            extra={"category": "startup", "api_host": self._host, "api_port": self._port},
        )

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        self._logger.info("API server stopped", extra={"category": "startup"})


__all__ = ["ApiServer", "create_app", "handle_me", "handle_transfer", "health"]
