import logging
import uvicorn
from datetime import datetime
from aiogram import Bot
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

import config
from database import OrderRepository, close_db, init_db
from hyperliquid_api import create_client
from utils import send_notification
from webhook import router

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(config.LOG_FILE),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

# Всё, что не в этом списке, отдаём как 404 без обработки
ROUTES = {
    ("GET", "/"),
    ("GET", "/health"),
    ("POST", "/webhook"),
    ("POST", "/webhook/echo"),
}

NOT_FOUND = {"success": False, "error": "Not Found"}


async def route_filter_middleware(request: Request, call_next):
    """Сканеры ботов и случайные запросы не доходят до роутера и не засоряют лог сигналов"""
    route = (request.method, request.url.path.rstrip("/") or "/")
    if route not in ROUTES:
        client_ip = request.client.host if request.client else "unknown"
        logger.warning(f"Отклонён запрос от {client_ip}: {route[0]} {request.url.path}")
        return JSONResponse(status_code=404, content=NOT_FOUND)
    return await call_next(request)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Запуск обработчика сигналов Hyperliquid...")
    bot = Bot(token=config.BOT_TOKEN) if config.BOT_TOKEN else None
    app.state.bot = bot

    pool = None
    try:
        pool = init_db()
        app.state.exchange = create_client()
    except Exception as e:
        logger.error(f"Ошибка запуска: {str(e)}")
        close_db(pool)
        await send_notification(bot, config.TELEGRAM_CHAT_ID, f"❌ *Startup failed*\n{str(e)}")
        if bot:
            await bot.session.close()
        raise

    app.state.repository = OrderRepository(pool)
    logger.info("База данных и клиент биржи инициализированы")
    try:
        yield
    finally:
        close_db(pool)
        if bot:
            await bot.session.close()
        logger.info("Обработчик остановлен")


app = FastAPI(
    title="Hyperliquid Signal Relay",
    description="Webhook для исполнения торговых сигналов на Hyperliquid",
    version="1.0.0",
    lifespan=lifespan
)

app.middleware("http")(route_filter_middleware)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Необработанное исключение на {request.url.path}: {str(exc)}")
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


@app.get("/")
async def root():
    return {
        "status": "success",
        "message": "Hyperliquid Signal Relay is running",
        "endpoints": sorted(f"{method} {path}" for method, path in ROUTES),
    }


@app.get("/health")
async def health_check(request: Request):
    state = request.app.state
    return {
        "status": "healthy",
        "exchange": getattr(state, "exchange", None) is not None,
        "database": getattr(state, "repository", None) is not None,
        "telegram": getattr(state, "bot", None) is not None,
        "timestamp": datetime.now().isoformat(),
    }


app.include_router(router)

if __name__ == "__main__":
    logger.info(f"Starting server on http://{config.HOST}:{config.PORT}")
    uvicorn.run(
        app,
        host=config.HOST,
        port=config.PORT,
        log_config=None,
        timeout_keep_alive=5,
        limit_max_requests=1000,
    )
