# utils.py
import re
import math
import logging
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from typing import Optional
from aiogram import Bot

logger = logging.getLogger(__name__)

QUOTE_SUFFIXES = ("USDT", "USDC", "PERP")
# Hyperliquid: не более 5 значащих цифр и не более MAX_DECIMALS - szDecimals знаков после запятой
MAX_SIGNIFICANT_FIGURES = 5
MAX_PERP_DECIMALS = 6


def normalize_symbol(symbol: str) -> str:
    """BTCUSDT, BTC/USDT, BTC-USDC, BYBIT:BTCUSDT.P -> BTC"""
    symbol = symbol.strip().upper()
    # BINANCE:BTCUSDT -> BTCUSDT
    symbol = symbol.split(':')[-1]
    symbol = re.sub(r'\.P$', '', symbol)
    symbol = re.sub(r'[/\-]', '', symbol)

    for suffix in QUOTE_SUFFIXES:
        if symbol.endswith(suffix) and len(symbol) > len(suffix):
            symbol = symbol[:-len(suffix)]
            break

    logger.debug(f"Нормализованный символ: {symbol}")
    return symbol


def _floor(value: float, decimals: int) -> float:
    # 12 значащих цифр срезают хвосты двоичной арифметики (100099.99999999999 -> 100100)
    step = Decimal(1).scaleb(-decimals)
    return float(Decimal(format(value, '.12g')).quantize(step, rounding=ROUND_DOWN))


def normalize_order_size(size: float, decimals: int) -> float:
    """Обрезает размер до szDecimals актива. Никогда не округляет вверх."""
    return _floor(size, max(0, decimals))


def price_decimals(price: float, sz_decimals: int) -> int:
    if price <= 0:
        raise ValueError(f"Цена должна быть положительной: {price}")
    significant = MAX_SIGNIFICANT_FIGURES - math.floor(math.log10(price)) - 1
    return max(0, min(significant, MAX_PERP_DECIMALS - sz_decimals))


def normalize_price(price: float, sz_decimals: int) -> float:
    """
    Приводит цену к шагу цены биржи.

    Не более 5 значащих цифр и не более (6 - szDecimals) знаков после запятой,
    целые цены допустимы всегда. Обрезка вниз, без округления вверх.
    """
    return _floor(price, price_decimals(price, sz_decimals))


def validate_stop_loss(side: str, price: float, stop_loss: Optional[float]) -> bool:
    """Стоп-лосс ниже цены для BUY и выше цены для SELL"""
    if stop_loss is None:
        return False
    if side == "BUY":
        return stop_loss < price
    if side == "SELL":
        return stop_loss > price
    return False


def liquidation_price(side: str, price: float, size: float, leverage: int) -> float:
    """
    Упрощённая цена ликвидации изолированной позиции.

    margin = price * size / leverage, ликвидация на расстоянии margin / size от цены.
    """
    if size <= 0 or leverage <= 0:
        raise ValueError(f"Некорректные размер {size} или плечо {leverage}")
    margin = price * size / leverage
    distance = margin / size
    return price - distance if side == "BUY" else price + distance


def is_stop_beyond_liquidation(side: str, stop_loss: float, liquidation: float) -> bool:
    """Стоп-лосс должен сработать раньше ликвидации"""
    if side == "BUY":
        return stop_loss > liquidation
    return stop_loss < liquidation


def format_trade_message(signal, result) -> str:
    emoji = "✅" if result.success else "❌"
    if signal.action == "ENTRY":
        action = "🟢 Buy" if signal.side == "BUY" else "🔴 Sell"
    elif signal.action == "EXIT":
        action = "🔁 Exit"
    else:
        action = "🛑 Update stop"

    lines = [
        f"{emoji} *Trade {'Executed' if result.success else 'Failed'}*",
        f"*Symbol:* {signal.symbol}",
        f"*Strategy:* {signal.strategy}",
        f"*Action:* {action}",
        f"*Price:* {signal.price}",
        f"*Stop Loss:* {signal.stop_loss if signal.stop_loss is not None else '-'}",
    ]
    if not result.success and result.error:
        lines.append(f"*Error:* {result.error}")
    lines.append(f"*Time:* {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    return "\n".join(lines)


async def send_notification(bot: Optional[Bot], chat_id: Optional[str], text: str) -> None:
    """Отправка в Telegram. Ошибки только логируются и не влияют на результат сигнала."""
    if bot is None or not chat_id:
        logger.debug("Telegram не настроен, уведомление пропущено")
        return
    try:
        await bot.send_message(chat_id=chat_id, text=text, parse_mode="Markdown")
        logger.info(f"Уведомление отправлено в чат {chat_id}")
    except Exception as e:
        logger.error(f"Ошибка отправки уведомления в чат {chat_id}: {str(e)}")
