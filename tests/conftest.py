"""
Pytest configuration and shared fixtures for the signal relay tests.

This module provides:
- Mock Hyperliquid Info / Exchange SDK clients
- In-memory order repository
- Exchange response builders
"""

import uuid
from datetime import datetime

import pytest
from unittest.mock import Mock

import config
from hyperliquid_api import HyperliquidAPI
from models import NewOrder, OrderRecord

USER_ADDRESS = "0x1234567890abcdef1234567890abcdef12345678"


# ===========================
# Exchange responses
# ===========================

def resting_response(oid):
    return {"status": "ok", "response": {"type": "order", "data": {"statuses": [{"resting": {"oid": oid}}]}}}


def filled_response(oid, avg_px="95010.0", total_sz="0.00495"):
    return {
        "status": "ok",
        "response": {"type": "order", "data": {"statuses": [
            {"filled": {"oid": oid, "avgPx": avg_px, "totalSz": total_sz}}
        ]}},
    }


def error_response(message):
    return {"status": "ok", "response": {"type": "order", "data": {"statuses": [{"error": message}]}}}


@pytest.fixture
def responses():
    """Access to response builders from tests"""
    return Mock(resting=resting_response, filled=filled_response, error=error_response)


# ===========================
# In-memory repository
# ===========================

class InMemoryOrderRepository:
    """Same interface as database.OrderRepository, rows kept in a list"""

    def __init__(self):
        self.rows = []

    def _open(self, symbol, strategy):
        return [r for r in self.rows if r.symbol == symbol and r.strategy == strategy and r.status == "open"]

    def find_open_order(self, symbol, strategy):
        rows = sorted(self._open(symbol, strategy), key=lambda r: r.created_at, reverse=True)
        return rows[0] if rows else None

    def find_open_strategies(self, symbol):
        return sorted({r.strategy for r in self.rows if r.symbol == symbol and r.status == "open"})

    def insert_order(self, order: NewOrder):
        now = datetime.now()
        record = OrderRecord(id=str(uuid.uuid4()), created_at=now, updated_at=now, **order.model_dump())
        self.rows.append(record)
        return record

    def get(self, order_id):
        return next(r for r in self.rows if r.id == order_id)

    def update_order_oid(self, order_id, oid):
        self.get(order_id).oid = oid

    def update_stop_loss_price(self, symbol, strategy, price):
        for r in self._open(symbol, strategy):
            if r.order_type == "stop_loss":
                r.price = price

    def close_order(self, order_id, pnl):
        record = self.get(order_id)
        record.status = "closed"
        record.pnl = pnl

    def close_all_orders(self, symbol, strategy, pnl):
        for r in self._open(symbol, strategy):
            r.status = "closed"
            r.pnl = pnl


@pytest.fixture
def repo():
    return InMemoryOrderRepository()


def make_open_record(repo, symbol="BTC", strategy="baseline_v1.2", price=95000.0, quantity=0.00495,
                     order_type="limit", action="BUY", oid="111"):
    return repo.insert_order(NewOrder(
        user_address=USER_ADDRESS,
        symbol=symbol,
        strategy=strategy,
        quantity=quantity,
        order_type=order_type,
        action=action,
        price=price,
        oid=oid,
    ))


@pytest.fixture
def open_record():
    """Factory to create open order records"""
    return make_open_record


# ===========================
# Mock Hyperliquid SDK
# ===========================

@pytest.fixture
def mock_info():
    """Mock hyperliquid.info.Info"""
    info = Mock()
    info.meta = Mock(return_value={"universe": [
        {"name": "BTC", "szDecimals": 5, "maxLeverage": 40},
        {"name": "ETH", "szDecimals": 4, "maxLeverage": 25},
        {"name": "OLD", "szDecimals": 0, "maxLeverage": 3, "isDelisted": True},
    ]})
    info.all_mids = Mock(return_value={"BTC": "95010.0", "ETH": "3000.0"})
    info.post = Mock(return_value={"leverage": {"type": "isolated", "value": 8}})
    info.user_state = Mock(return_value={"assetPositions": []})
    info.frontend_open_orders = Mock(return_value=[])
    return info


@pytest.fixture
def mock_exchange():
    """Mock hyperliquid.exchange.Exchange"""
    exchange = Mock()
    exchange.order = Mock(return_value=resting_response(111))
    exchange.bulk_cancel = Mock(return_value={"status": "ok", "response": {"type": "cancel", "data": {"statuses": ["success"]}}})
    exchange.bulk_modify_orders_new = Mock(return_value={
        "status": "ok", "response": {"type": "batchModify", "data": {"statuses": [{"resting": {"oid": 222}}]}}
    })
    exchange.update_leverage = Mock(return_value={"status": "ok", "response": {"type": "default"}})
    return exchange


@pytest.fixture
def api(mock_info, mock_exchange):
    return HyperliquidAPI(mock_info, mock_exchange, USER_ADDRESS)


def position_state(coin, szi, entry_px="95000.0", liquidation_px="83000.0"):
    return {"assetPositions": [{
        "type": "oneWay",
        "position": {
            "coin": coin,
            "szi": szi,
            "entryPx": entry_px,
            "liquidationPx": liquidation_px,
            "leverage": {"type": "isolated", "value": 8},
        },
    }]}


@pytest.fixture
def with_position(mock_info):
    """Sets a live exchange position on the mocked Info client"""
    def _set(coin="BTC", szi="0.00495", **kwargs):
        mock_info.user_state.return_value = position_state(coin, szi, **kwargs)
    return _set


@pytest.fixture(autouse=True)
def trading_config(monkeypatch):
    monkeypatch.setattr(config, "FIX_STOPLOSS", 5.0)
    monkeypatch.setattr(config, "ALLOWED_STRATEGIES", ["baseline_v1.2", "turtle", "sonicR"])
    monkeypatch.setattr(config, "CHECK_EXCHANGE_ORDERS", False)
    monkeypatch.setattr(config, "TELEGRAM_CHAT_ID", None)
