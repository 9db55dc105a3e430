import json
import logging
from datetime import datetime
from typing import Optional

import config
from database import OrderRepository
from errors import ExchangeError, SkippedSignal, ValidationError
from hyperliquid_api import HyperliquidAPI, extract_order_id, first_status
from models import NewOrder, OrderRequest, OrderResult, Position, Signal, ValidationResult
from utils import (
    is_stop_beyond_liquidation,
    liquidation_price,
    normalize_order_size,
    normalize_price,
    validate_stop_loss,
)

logger = logging.getLogger(__name__)

# Сдвиг от mid-цены при закрытии, чтобы лимитка исполнилась сразу
CLOSE_PRICE_SLIPPAGE = 0.001


def has_open_position(signal: Signal, api: HyperliquidAPI, repo: OrderRepository) -> bool:
    if repo.find_open_order(signal.symbol, signal.strategy) is not None:
        return True
    if config.CHECK_EXCHANGE_ORDERS and api.get_open_orders(signal.symbol):
        logger.info(f"Найдены открытые ордера {signal.symbol} на бирже без записи в БД")
        return True
    return False


def validate_signal(signal: Signal, api: HyperliquidAPI, repo: OrderRepository) -> ValidationResult:
    """Проверки по порядку, до первой неудачи: символ, стоп-лосс, конфликт позиции"""
    if not api.symbol_exists(signal.symbol):
        return ValidationResult(is_valid=False, reason=f"Invalid symbol: {signal.symbol} not found on Hyperliquid")

    if signal.action == "ENTRY" and not validate_stop_loss(signal.side, signal.price, signal.stop_loss):
        logger.info(f"Стоп-лосс {signal.stop_loss} некорректен для {signal.side} по цене {signal.price}")
        return ValidationResult(is_valid=False, reason=f"Invalid stop loss for {signal.symbol}")

    if signal.action == "UPDATE_STOP" and signal.stop_loss is None:
        return ValidationResult(is_valid=False, reason=f"New stop loss price is required for {signal.symbol}")

    has_position = has_open_position(signal, api, repo)

    if signal.action == "ENTRY" and has_position:
        return ValidationResult(
            is_valid=False,
            skipped=True,
            reason=f"Already have open position for {signal.symbol} ({signal.strategy})"
        )

    if signal.action in ("EXIT", "UPDATE_STOP") and not has_position:
        return ValidationResult(
            is_valid=False,
            skipped=True,
            reason=f"No open position found for {signal.symbol} ({signal.strategy})"
        )

    return ValidationResult(is_valid=True)


def build_order(signal: Signal, api: HyperliquidAPI, usd_risk: Optional[float] = None) -> OrderRequest:
    """
    Собирает ордер для ENTRY сигнала.

    Размер позиции = фиксированная сумма риска в USD / |mid - стоп-лосс|,
    т.е. при срабатывании стопа теряем одну и ту же сумму независимо от
    расстояния до стопа.
    """
    usd_risk = config.FIX_STOPLOSS if usd_risk is None else usd_risk
    logger.info(f"Сборка ордера {signal.symbol} с фиксированным риском ${usd_risk}")

    market_price = api.get_mid_price(signal.symbol)
    if not market_price:
        raise ExchangeError(f"Unable to fetch market price for {signal.symbol}")

    leverage = api.get_leverage(signal.symbol)
    if leverage.type == "cross":
        logger.warning(f"{signal.symbol} в режиме cross, переключаем на isolated {leverage.value}x")
        leverage = api.set_isolated_leverage(signal.symbol, leverage.value)

    asset = api.get_asset_meta(signal.symbol)

    distance = abs(market_price - signal.stop_loss)
    if distance == 0:
        raise ValidationError(f"Stop loss equals market price for {signal.symbol}", {"price": market_price})

    raw_size = usd_risk / distance
    quantity = normalize_order_size(raw_size, asset.sz_decimals)
    logger.info(f"Размер {signal.symbol}: {raw_size} -> {quantity} (${usd_risk} / {distance})")
    if quantity <= 0:
        raise ValidationError(
            f"Order size for {signal.symbol} is below exchange precision",
            {"raw_size": raw_size, "sz_decimals": asset.sz_decimals}
        )

    price = normalize_price(market_price, asset.sz_decimals)
    stop_loss = normalize_price(signal.stop_loss, asset.sz_decimals)

    # После обрезки до шага цены стоп может совпасть с ценой входа
    if not validate_stop_loss(signal.side, price, stop_loss):
        raise ValidationError(
            f"Normalized stop loss {stop_loss} is not beyond entry price {price} for {signal.symbol}",
            {"side": signal.side, "sz_decimals": asset.sz_decimals}
        )

    liquidation = liquidation_price(signal.side, price, quantity, leverage.value)
    if not is_stop_beyond_liquidation(signal.side, stop_loss, liquidation):
        raise ValidationError(
            f"Stop loss {stop_loss} is beyond liquidation price {liquidation:.6f} for {signal.symbol}",
            {"leverage": leverage.value, "side": signal.side}
        )

    return OrderRequest(
        symbol=signal.symbol,
        side=signal.side,
        quantity=quantity,
        price=price,
        stop_loss=stop_loss,
        leverage=leverage.value,
        sz_decimals=asset.sz_decimals,
    )


def execute_entry(order: OrderRequest, signal: Signal, api: HyperliquidAPI,
                  repo: OrderRepository) -> OrderResult:
    is_buy = order.side == "BUY"
    logger.info(f"Размещаем {order.side} {order.quantity} {order.symbol} по {order.price}")

    response = api.place_limit_order(order.symbol, is_buy, order.quantity, order.price)
    first_status(response)

    record = repo.insert_order(NewOrder(
        user_address=api.user_address,
        symbol=order.symbol,
        strategy=signal.strategy,
        quantity=order.quantity,
        order_type="limit",
        action=order.side,
        price=order.price,
    ))
    oid = extract_order_id(response)
    repo.update_order_oid(record.id, oid)
    logger.info(f"Основной ордер {oid} для {order.symbol} сохранён как {record.id}")

    if order.stop_loss is not None:
        sl_side = "SELL" if is_buy else "BUY"
        try:
            sl_response = api.place_stop_loss_order(order.symbol, not is_buy, order.quantity, order.stop_loss)
            first_status(sl_response)
        except ExchangeError as e:
            logger.error(f"Стоп-лосс для {order.symbol} не создан, основной ордер {oid} остался: {e.message}")
            raise ExchangeError(
                f"Stop loss order failed for {order.symbol}: {e.message}",
                {"primary_oid": oid, "db_order_id": record.id}
            )

        sl_record = repo.insert_order(NewOrder(
            user_address=api.user_address,
            symbol=order.symbol,
            strategy=signal.strategy,
            quantity=order.quantity,
            order_type="stop_loss",
            action=sl_side,
            price=order.stop_loss,
        ))
        sl_oid = extract_order_id(sl_response)
        repo.update_order_oid(sl_record.id, sl_oid)
        logger.info(f"Стоп-лосс {sl_oid} для {order.symbol} по {order.stop_loss} сохранён как {sl_record.id}")

    return OrderResult(
        success=True,
        message="Order placed successfully",
        order_id=oid,
        db_order_id=record.id,
    )


def _cancel_remaining_orders(api: HyperliquidAPI, symbol: str, keep_oid: Optional[str] = None) -> None:
    stale = [order["oid"] for order in api.get_open_orders(symbol) if str(order["oid"]) != keep_oid]
    if stale:
        api.cancel_orders(symbol, stale)
        logger.info(f"Отменены оставшиеся ордера {symbol}: {stale}")


def close_position(signal: Signal, api: HyperliquidAPI, repo: OrderRepository) -> OrderResult:
    """
    EXIT: запись в БД решает, есть ли что закрывать; размер и сторона
    берутся с биржи, т.к. только она знает фактическую позицию.
    """
    db_order = repo.find_open_order(signal.symbol, signal.strategy)
    if db_order is None:
        raise ValidationError(f"No open position found for {signal.symbol}")

    other_strategies = [s for s in repo.find_open_strategies(signal.symbol) if s != signal.strategy]
    if other_strategies:
        logger.warning(
            f"По {signal.symbol} открыты и другие стратегии {other_strategies}: "
            f"на бирже одна нетто-позиция, закрываем её целиком"
        )

    position = api.get_position(signal.symbol)
    if position is None:
        # На бирже уже пусто (например, сработал стоп), БД отстаёт
        logger.warning(f"Позиции {signal.symbol} на бирже нет, закрываем записи {signal.strategy} без pnl")
        _cancel_remaining_orders(api, signal.symbol)
        repo.close_all_orders(signal.symbol, signal.strategy, None)
        return OrderResult(
            success=True,
            message=f"Position {signal.symbol} was already closed on exchange",
            order_id=db_order.oid,
            db_order_id=db_order.id,
        )

    asset = api.get_asset_meta(signal.symbol)
    market_price = api.get_mid_price(signal.symbol)
    if not market_price:
        raise ExchangeError(f"Unable to fetch market price for {signal.symbol}")

    # Long закрываем продажей чуть ниже mid, short покупкой чуть выше
    adjustment = 1 - CLOSE_PRICE_SLIPPAGE if position.is_long else 1 + CLOSE_PRICE_SLIPPAGE
    close_price = normalize_price(market_price * adjustment, asset.sz_decimals)
    size = normalize_order_size(position.size, asset.sz_decimals)

    logger.info(f"Закрываем {'LONG' if position.is_long else 'SHORT'} {size} {signal.symbol} по {close_price}")
    response = api.place_limit_order(signal.symbol, not position.is_long, size, close_price, reduce_only=True)
    close_oid = extract_order_id(response)

    _cancel_remaining_orders(api, signal.symbol, keep_oid=close_oid)

    # Последняя запись может быть стоп-лоссом, средняя цена входа есть только на бирже
    entry_price = position.entry_price or db_order.price
    if position.is_long:
        pnl = (close_price - entry_price) * size
    else:
        pnl = (entry_price - close_price) * size

    repo.close_all_orders(signal.symbol, signal.strategy, pnl)

    return OrderResult(
        success=True,
        message=f"Closed {signal.symbol} position, pnl={pnl:.4f}",
        order_id=close_oid,
        db_order_id=db_order.id,
    )


def check_stop_for_position(symbol: str, position: Position, new_stop: float,
                            market_price: Optional[float]) -> None:
    """Новый стоп не должен сработать сразу и должен сработать раньше ликвидации"""
    if not market_price:
        raise ExchangeError(f"Unable to fetch market price for {symbol}")
    side = "BUY" if position.is_long else "SELL"
    if not validate_stop_loss(side, market_price, new_stop):
        raise ValidationError(
            f"New stop loss {new_stop} would trigger immediately at market price {market_price} for {symbol}",
            {"side": side}
        )
    liquidation = position.liquidation_price
    if liquidation is not None and not is_stop_beyond_liquidation(side, new_stop, liquidation):
        raise ValidationError(
            f"New stop loss {new_stop} is beyond liquidation price {liquidation} for {symbol}",
            {"side": side}
        )


def update_stop_loss(signal: Signal, api: HyperliquidAPI, repo: OrderRepository) -> OrderResult:
    if signal.stop_loss is None:
        raise ValidationError(f"New stop loss price is required for {signal.symbol}")

    position = api.get_position(signal.symbol)
    if position is None:
        raise ValidationError(f"No open position found for {signal.symbol}")

    asset = api.get_asset_meta(signal.symbol)
    new_stop = normalize_price(signal.stop_loss, asset.sz_decimals)
    check_stop_for_position(signal.symbol, position, new_stop, api.get_mid_price(signal.symbol))

    # Стоп закрывает позицию: для long это продажа (A), для short покупка (B)
    stop_side = "A" if position.is_long else "B"
    candidates = [
        order for order in api.get_open_orders(signal.symbol)
        if order.get("reduceOnly") and order["side"] == stop_side
    ]
    candidates.sort(key=lambda order: not order.get("isTrigger", False))
    if not candidates:
        raise ValidationError(f"No stop loss order found for {signal.symbol}")
    stop_order = candidates[0]

    size = normalize_order_size(position.size, asset.sz_decimals)
    old_stop = stop_order.get("triggerPx") or stop_order.get("limitPx")

    logger.info(f"Стоп-лосс {signal.symbol} ордер {stop_order['oid']}: {old_stop} -> {new_stop}")
    response = api.modify_stop_loss(stop_order["oid"], signal.symbol, not position.is_long, size, new_stop)
    first_status(response)

    repo.update_stop_loss_price(signal.symbol, signal.strategy, new_stop)

    return OrderResult(
        success=True,
        message=f"Updated stop loss for {signal.symbol} from {old_stop} to {new_stop}",
        order_id=str(stop_order["oid"]),
    )


def log_trade(signal: Signal, result: OrderResult) -> None:
    log_entry = {
        "timestamp": datetime.now().isoformat(),
        "symbol": signal.symbol,
        "strategy": signal.strategy,
        "action": signal.action,
        "side": signal.side,
        "price": signal.price,
        "stopLoss": signal.stop_loss,
        "success": result.success,
        "orderId": result.order_id,
        "message": result.message,
        "error": result.error,
    }
    logger.info(f"Trade log: {json.dumps(log_entry)}")


def process_signal(signal: Signal, api: HyperliquidAPI, repo: OrderRepository) -> OrderResult:
    """parse уже выполнен: validate -> build -> execute"""
    validation = validate_signal(signal, api, repo)
    if validation.skipped:
        logger.info(f"Сигнал пропущен: {validation.reason}")
        raise SkippedSignal(validation.reason)
    if not validation.is_valid:
        logger.info(f"Сигнал не прошёл проверку: {validation.reason}")
        raise ValidationError(validation.reason)

    if signal.action == "ENTRY":
        order = build_order(signal, api)
        logger.info(f"Ордер собран: {order.model_dump_json()}")
        return execute_entry(order, signal, api, repo)
    if signal.action == "EXIT":
        return close_position(signal, api, repo)
    return update_stop_loss(signal, api, repo)
