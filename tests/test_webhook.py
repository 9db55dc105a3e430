"""
Integration tests for the FastAPI app: webhook endpoint, echo endpoint and path filtering.

Outside TestLifespan the app lifespan is not started; exchange client,
repository and bot are placed on app.state directly.
"""

import asyncio
import json

import pytest
from fastapi import BackgroundTasks, Request
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, MagicMock, patch

import config
import main
from errors import ConfigurationError
from main import app, lifespan
from webhook import webhook

SIGNAL = {
    "symbol": "BTCUSDT",
    "action": "ENTRY",
    "type": "BUY",
    "price": 95000,
    "stopLoss": 94000,
    "strategy": "baseline_v1.2",
}


@pytest.fixture
def client(api, repo):
    app.state.exchange = api
    app.state.repository = repo
    app.state.bot = None
    return TestClient(app)


@pytest.mark.integration
class TestWebhook:

    def test_entry_signal(self, client, repo, mock_exchange, responses):
        mock_exchange.order.side_effect = [responses.resting(111), responses.resting(222)]

        response = client.post("/webhook", json=SIGNAL)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["orderId"] == "111"
        assert "skipped" not in body
        limit_orders = [r for r in repo.rows if r.order_type == "limit" and r.status == "open"]
        assert len(limit_orders) == 1
        assert limit_orders[0].quantity == 0.00495
        assert body["dbOrderId"] == limit_orders[0].id

    def test_replayed_signal_is_skipped(self, client, mock_exchange, responses):
        mock_exchange.order.side_effect = [responses.resting(111), responses.resting(222)]
        client.post("/webhook", json=SIGNAL)

        response = client.post("/webhook", json=SIGNAL)

        assert response.status_code == 200
        assert response.json()["skipped"] is True
        assert response.json()["success"] is True
        assert mock_exchange.order.call_count == 2

    def test_text_plain_accepted(self, client):
        response = client.post("/webhook", content=json.dumps(SIGNAL), headers={"Content-Type": "text/plain"})
        assert response.status_code == 200

    def test_nan_stop_loss_in_text_body(self, client):
        body = ('{"symbol": "BTCUSDT", "action": "EXIT", "type": "SELL", "price": 95000, '
                '"stopLoss": NaN, "strategy": "baseline_v1.2"}')
        response = client.post("/webhook", content=body, headers={"Content-Type": "text/plain"})
        # no open position for the strategy yet
        assert response.status_code == 200
        assert response.json()["skipped"] is True

    def test_wrong_content_type(self, client):
        response = client.post("/webhook", content="symbol=BTC", headers={"Content-Type": "application/x-www-form-urlencoded"})
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_invalid_json(self, client):
        response = client.post("/webhook", content="{not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400

    def test_unknown_action(self, client, mock_exchange):
        response = client.post("/webhook", json={**SIGNAL, "action": "HOLD"})
        assert response.status_code == 400
        assert "HOLD" in response.json()["error"]
        mock_exchange.order.assert_not_called()

    def test_unknown_symbol(self, client):
        response = client.post("/webhook", json={**SIGNAL, "symbol": "DOGEUSDT"})
        assert response.status_code == 400
        assert "DOGE" in response.json()["error"]

    def test_exchange_rejection(self, client, repo, mock_exchange, responses):
        mock_exchange.order.return_value = responses.error("Insufficient margin")
        response = client.post("/webhook", json=SIGNAL)
        assert response.status_code == 500
        assert response.json()["success"] is False
        assert repo.rows == []

    def test_unexpected_error(self, client, mock_info):
        mock_info.all_mids.return_value = None
        response = client.post("/webhook", json=SIGNAL)
        assert response.status_code == 500
        assert response.json()["error"] == "Internal server error"

    def test_invalid_utf8_body(self, client, mock_exchange):
        response = client.post("/webhook", content=b'{"symbol": "BTC\xff"}', headers={"Content-Type": "application/json"})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid encoding"
        mock_exchange.order.assert_not_called()

    def test_notification_runs_after_response(self, client, monkeypatch, mock_exchange, responses):
        monkeypatch.setattr(config, "TELEGRAM_CHAT_ID", "42")
        bot = AsyncMock()
        app.state.bot = bot
        mock_exchange.order.side_effect = [responses.resting(111), responses.resting(222)]
        body = json.dumps(SIGNAL).encode()

        async def receive():
            return {"type": "http.request", "body": body, "more_body": False}

        request = Request({
            "type": "http",
            "method": "POST",
            "path": "/webhook",
            "headers": [(b"content-type", b"application/json")],
            "query_string": b"",
            "app": app,
        }, receive)
        tasks = BackgroundTasks()

        response = asyncio.run(webhook(request, tasks))

        assert response.status_code == 200
        bot.send_message.assert_not_awaited()
        assert len(tasks.tasks) == 1

        asyncio.run(tasks())
        bot.send_message.assert_awaited_once()

    def test_notification_sent(self, client, monkeypatch, mock_exchange, responses):
        monkeypatch.setattr(config, "TELEGRAM_CHAT_ID", "42")
        bot = AsyncMock()
        app.state.bot = bot
        mock_exchange.order.side_effect = [responses.resting(111), responses.resting(222)]

        client.post("/webhook", json=SIGNAL)

        bot.send_message.assert_awaited_once()
        assert "Trade Executed" in bot.send_message.call_args.kwargs["text"]

    def test_notification_failure_does_not_change_response(self, client, monkeypatch, mock_exchange, responses):
        monkeypatch.setattr(config, "TELEGRAM_CHAT_ID", "42")
        bot = AsyncMock()
        bot.send_message.side_effect = RuntimeError("telegram down")
        app.state.bot = bot
        mock_exchange.order.side_effect = [responses.resting(111), responses.resting(222)]

        response = client.post("/webhook", json=SIGNAL)

        assert response.status_code == 200
        assert response.json()["success"] is True


@pytest.mark.integration
class TestRoutes:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["exchange"] is True
        assert response.json()["telegram"] is False

    def test_root(self, client):
        assert client.get("/").status_code == 200

    def test_unknown_get_blocked(self, client):
        assert client.get("/foo").status_code == 404

    def test_scanner_path_blocked(self, client):
        assert client.post("/wp-admin/setup.php").status_code == 404

    def test_unknown_post_blocked(self, client):
        assert client.post("/orders", json={}).status_code == 404

    def test_echo(self, client):
        response = client.post("/webhook/echo?source=tv", json={"hello": "world"})
        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Request received successfully"
        assert body["requestDetails"]["body"] == {"hello": "world"}
        assert body["requestDetails"]["query"] == {"source": "tv"}


@pytest.mark.integration
class TestLifespan:

    async def _run(self):
        async with lifespan(app):
            pass

    def test_pool_closed_when_exchange_client_fails(self, monkeypatch):
        monkeypatch.setattr(config, "BOT_TOKEN", None)
        pool = MagicMock()
        with patch.object(main, "init_db", return_value=pool), \
                patch.object(main, "create_client", side_effect=ConfigurationError("HYPERLIQUID_PRIVATE_KEY missing")):
            with pytest.raises(ConfigurationError):
                asyncio.run(self._run())
        pool.closeall.assert_called_once()

    def test_database_failure_is_reraised(self, monkeypatch):
        monkeypatch.setattr(config, "BOT_TOKEN", None)
        with patch.object(main, "init_db", side_effect=RuntimeError("refused")), \
                patch.object(main, "create_client") as create_client:
            with pytest.raises(RuntimeError):
                asyncio.run(self._run())
        create_client.assert_not_called()

    def test_pool_closed_on_shutdown(self, monkeypatch, api):
        monkeypatch.setattr(config, "BOT_TOKEN", None)
        pool = MagicMock()
        with patch.object(main, "init_db", return_value=pool), \
                patch.object(main, "create_client", return_value=api):
            asyncio.run(self._run())
        assert app.state.exchange is api
        pool.closeall.assert_called_once()
