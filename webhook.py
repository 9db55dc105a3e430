# webhook.py
import json
import math
import logging
from datetime import datetime
from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

import config
from errors import InternalError, ParseError, SkippedSignal, TradingError
from models import OrderResult, Signal
from services import log_trade, process_signal
from utils import format_trade_message, normalize_symbol, send_notification

logger = logging.getLogger(__name__)

router = APIRouter()

ACTION_ALIASES = {
    "ENTRY": "ENTRY",
    "OPEN": "ENTRY",
    "EXIT": "EXIT",
    "CLOSE": "EXIT",
    "UPDATE_STOP": "UPDATE_STOP",
    "MOVE_SL": "UPDATE_STOP",
    "TRAIL": "UPDATE_STOP",
}
SIDE_ALIASES = {
    "BUY": "BUY",
    "LONG": "BUY",
    "SELL": "SELL",
    "SHORT": "SELL",
}


def clean_json_data(data_str: str) -> dict:
    """Очищает JSON данные от NaN и других невалидных значений"""
    cleaned_str = data_str.replace(': NaN', ': null').replace(':NaN', ':null')
    try:
        return json.loads(cleaned_str)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON: {str(e)}")


def _optional_float(value):
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ParseError(f"Invalid number: {value}")
    return None if math.isnan(number) else number


def parse_webhook(data: dict) -> Signal:
    """Payload алерта -> канонический сигнал. Любое нераспознанное поле -> ParseError."""
    if not isinstance(data, dict) or not data:
        raise ParseError("Empty webhook payload")

    raw_action = str(data.get("action") or "").strip().upper()
    if not raw_action:
        raise ParseError("Missing action")
    action = ACTION_ALIASES.get(raw_action)
    if action is None:
        raise ParseError(f"Unknown action: {raw_action}", {"allowed": "ENTRY, EXIT, UPDATE_STOP"})

    raw_side = str(data.get("type") or "").strip().upper()
    if not raw_side:
        raise ParseError("Missing type")
    side = SIDE_ALIASES.get(raw_side)
    if side is None:
        raise ParseError(f"Unknown type: {raw_side}", {"allowed": "BUY, SELL"})

    symbol = str(data.get("symbol") or "").strip()
    if not symbol:
        raise ParseError("Missing symbol")

    price = _optional_float(data.get("price"))
    if price is None or price <= 0:
        raise ParseError(f"Price must be positive: {data.get('price')}")

    strategy = str(data.get("strategy") or "").strip()
    if not strategy:
        raise ParseError("Missing strategy")
    if config.ALLOWED_STRATEGIES and strategy not in config.ALLOWED_STRATEGIES:
        raise ParseError(f"Unknown strategy: {strategy}", {"allowed": ", ".join(config.ALLOWED_STRATEGIES)})

    return Signal(
        symbol=normalize_symbol(symbol),
        action=action,
        side=side,
        price=price,
        stop_loss=_optional_float(data.get("stopLoss")),
        strategy=strategy,
    )


def decode_body(raw_body: bytes) -> str:
    try:
        return raw_body.decode('utf-8')
    except UnicodeDecodeError as e:
        raise ParseError("Invalid encoding", {"position": e.start})


def _error_response(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=OrderResult(success=False, error=error).to_response())


@router.post("/webhook")
async def webhook(request: Request, background_tasks: BackgroundTasks):
    """Основной webhook endpoint для торговых сигналов"""
    raw_body = await request.body()

    # TradingView шлёт алерты как text/plain
    content_type = request.headers.get('Content-Type', '').lower()
    if 'application/json' not in content_type and 'text/plain' not in content_type:
        logger.error(f"Неверный Content-Type: {content_type}")
        return _error_response(400, "Expected Content-Type: application/json or text/plain")

    try:
        raw_data_str = decode_body(raw_body)
        logger.info(f"Получен webhook запрос: {raw_data_str}")
        signal = parse_webhook(clean_json_data(raw_data_str))
    except ParseError as e:
        logger.error(f"Ошибка парсинга сигнала: {e}")
        return _error_response(e.status_code, e.message)

    logger.info(f"Сигнал: {signal.model_dump_json()}")
    state = request.app.state

    try:
        # Биржа и БД синхронные, в пуле потоков они не блокируют event loop
        result = await run_in_threadpool(process_signal, signal, state.exchange, state.repository)
        status_code = 200
    except SkippedSignal as e:
        result = OrderResult(success=True, skipped=True, reason=e.message)
        return JSONResponse(status_code=200, content=result.to_response())
    except TradingError as e:
        logger.error(f"Ошибка обработки сигнала {signal.symbol}: {e}")
        result = OrderResult(success=False, error=e.message)
        status_code = e.status_code
    except Exception as e:
        logger.exception(f"Необработанная ошибка для сигнала {signal.symbol}: {str(e)}")
        error = InternalError("Internal server error", {"cause": type(e).__name__})
        result = OrderResult(success=False, error=error.message)
        status_code = error.status_code

    log_trade(signal, result)
    # Уведомление уходит после ответа и не задерживает его
    background_tasks.add_task(
        send_notification, getattr(state, "bot", None), config.TELEGRAM_CHAT_ID, format_trade_message(signal, result)
    )

    return JSONResponse(status_code=status_code, content=result.to_response())


@router.post("/webhook/echo")
async def webhook_echo(request: Request):
    """Логирует алерт целиком, без обработки. Для отладки формата сообщений."""
    raw_body = (await request.body()).decode('utf-8', errors='replace')
    try:
        body = json.loads(raw_body)
    except json.JSONDecodeError:
        body = raw_body

    details = {
        "method": request.method,
        "url": str(request.url),
        "headers": dict(request.headers),
        "query": dict(request.query_params),
        "body": body,
        "timestamp": datetime.now().isoformat(),
    }
    logger.info(f"Полный запрос алерта: {json.dumps(details, ensure_ascii=False)}")
    return {"message": "Request received successfully", "requestDetails": details}
