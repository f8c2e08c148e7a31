"""Tests for the REST API."""

from types import SimpleNamespace

import pytest
from aiohttp import test_utils

from casinoapp.api_server import create_app
from casinoapp.services.session_store import ActivePlayerTracker, SessionRegistry
from casinoapp.services.turn_queue import TurnQueue

API_KEY = "test-key"


def _headers(user_id="1", key=API_KEY):
    headers = {"X-User-ID": user_id}
    if key is not None:
        headers["X-API-Key"] = key
    return headers


@pytest.fixture
def casino():
    return SimpleNamespace(
        turn_queue=TurnQueue(ActivePlayerTracker()),
        sessions=SessionRegistry(),
    )


@pytest.fixture
def app(ledger, casino):
    return create_app(ledger=ledger, casino=casino, api_key=API_KEY)


@pytest.mark.asyncio
async def test_health_reports_queue_worker(app, casino):
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        response = await client.get("/health")
        assert response.status == 503
        assert (await response.json())["status"] == "degraded"

        await casino.turn_queue.start()
        try:
            response = await client.get("/health")
            payload = await response.json()
        finally:
            await casino.turn_queue.stop()

    assert response.status == 200
    assert payload == {
        "status": "ok",
        "queue_depth": 0,
        "queue_running": True,
        "active_sessions": 0,
    }


@pytest.mark.asyncio
async def test_api_key_is_required(app):
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        missing = await client.get("/api/v1/me", headers=_headers(key=None))
        wrong = await client.get("/api/v1/me", headers=_headers(key="nope"))
        bad_user = await client.get("/api/v1/me", headers=_headers(user_id="abc"))

        assert missing.status == 401
        assert (await missing.json())["error"] == "Missing API Key"
        assert wrong.status == 401
        assert (await wrong.json())["error"] == "Invalid API Key"
        assert bad_user.status == 400


@pytest.mark.asyncio
async def test_me_returns_balance(app, ledger):
    await ledger.add_coins(1, 420)

    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        response = await client.get("/api/v1/me", headers=_headers())
        payload = await response.json()

    assert response.status == 200
    assert payload == {"user_id": "1", "balance": 420}


@pytest.mark.asyncio
async def test_transfer(app, ledger):
    await ledger.add_coins(1, 100)

    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        ok = await client.post(
            "/api/v1/transfer", json={"to_user_id": "2", "amount": 60}, headers=_headers()
        )
        too_much = await client.post(
            "/api/v1/transfer", json={"to_user_id": 2, "amount": 60}, headers=_headers()
        )
        to_self = await client.post(
            "/api/v1/transfer", json={"to_user_id": 1, "amount": 1}, headers=_headers()
        )
        negative = await client.post(
            "/api/v1/transfer", json={"to_user_id": 2, "amount": -5}, headers=_headers()
        )
        garbage = await client.post(
            "/api/v1/transfer", data="not json", headers=_headers()
        )

        assert ok.status == 200
        assert await ok.json() == {"status": "success"}
        assert too_much.status == 400
        assert (await too_much.json())["error"] == "Insufficient funds or transaction failed"
        assert (await to_self.json())["error"] == "Cannot transfer to yourself"
        assert (await negative.json())["error"] == "Amount must be positive"
        assert (await garbage.json())["error"] == "Invalid Request Body"

    assert await ledger.get_balance(1) == 40
    assert await ledger.get_balance(2) == 60
