import os
from dotenv import load_dotenv

load_dotenv()

# ------------------- Hyperliquid -------------------
HYPERLIQUID_PRIVATE_KEY = os.getenv("HYPERLIQUID_PRIVATE_KEY")
HYPERLIQUID_USER_ADDRESS = os.getenv("HYPERLIQUID_USER_ADDRESS")
HYPERLIQUID_TESTNET = os.getenv("HYPERLIQUID_TESTNET", "false").lower() == "true"

# ------------------- Торговля -------------------
# Сумма в USD, которую теряем при срабатывании стоп-лосса
FIX_STOPLOSS = float(os.getenv("FIX_STOPLOSS", "5"))
ALLOWED_STRATEGIES = [
    s.strip() for s in os.getenv("ALLOWED_STRATEGIES", "baseline_v1.2,turtle,sonicR").split(",") if s.strip()
]
CHECK_EXCHANGE_ORDERS = os.getenv("CHECK_EXCHANGE_ORDERS", "false").lower() == "true"

# ------------------- База данных -------------------
DB_HOST = os.getenv("DB_HOST")
DB_NAME = os.getenv("DB_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASSWORD = os.getenv("DB_PASSWORD")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_POOL_MIN = int(os.getenv("DB_POOL_MIN", "1"))
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX", "20"))

# ------------------- Telegram -------------------
BOT_TOKEN = os.getenv("BOT_TOKEN")
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID")

# ------------------- Сервер -------------------
LOG_FILE = os.getenv("LOG_FILE", "signal_relay.log")
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "5000"))
