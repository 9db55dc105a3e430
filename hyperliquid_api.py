import json
import logging
from typing import Dict, List, Optional
from eth_account import Account
from hyperliquid.exchange import Exchange
from hyperliquid.info import Info
from hyperliquid.utils import constants

import config
from errors import ConfigurationError, ExchangeError, OrderIdMissing, ValidationError
from models import AssetMeta, Leverage, Position

logger = logging.getLogger(__name__)

GTC = {"limit": {"tif": "Gtc"}}


def stop_loss_order_type(trigger_price: float) -> Dict:
    return {"trigger": {"triggerPx": trigger_price, "isMarket": True, "tpsl": "sl"}}


def first_status(response: Dict) -> Dict:
    """Первый статус из ответа order / batchModify"""
    if not isinstance(response, dict) or response.get("status") != "ok":
        raise ExchangeError(f"Биржа отклонила запрос: {response}")
    try:
        statuses = response["response"]["data"]["statuses"]
    except (KeyError, TypeError):
        raise ExchangeError(f"Неожиданный формат ответа биржи: {response}")
    if not statuses:
        raise ExchangeError("Пустой список статусов в ответе биржи")
    status = statuses[0]
    if isinstance(status, dict) and "error" in status:
        raise ExchangeError(f"Ошибка ордера: {status['error']}")
    return status


def extract_order_id(response: Dict) -> str:
    """oid из статуса resting (лимитка в стакане) или filled (исполнена сразу)"""
    status = first_status(response)
    if isinstance(status, dict):
        for key in ("resting", "filled"):
            if key in status and status[key].get("oid") is not None:
                return str(status[key]["oid"])
    raise OrderIdMissing("В ответе биржи нет oid", {"status": json.dumps(status)})


class HyperliquidAPI:
    def __init__(self, info: Info, exchange: Exchange, user_address: str):
        self.info = info
        self.exchange = exchange
        self.user_address = user_address

    def get_universe(self) -> List[AssetMeta]:
        try:
            meta = self.info.meta()
        except Exception as e:
            logger.error(f"Ошибка при получении метаданных активов: {str(e)}")
            raise ExchangeError(f"Не удалось получить метаданные активов: {str(e)}")
        return [
            AssetMeta(
                name=asset["name"],
                sz_decimals=int(asset["szDecimals"]),
                max_leverage=int(asset.get("maxLeverage", 1)),
                asset_id=index,
                is_delisted=bool(asset.get("isDelisted", False)),
            )
            for index, asset in enumerate(meta["universe"])
        ]

    def find_asset(self, symbol: str) -> Optional[AssetMeta]:
        for asset in self.get_universe():
            if asset.name == symbol:
                return asset
        return None

    def get_asset_meta(self, symbol: str) -> AssetMeta:
        asset = self.find_asset(symbol)
        if asset is None:
            raise ValidationError(f"Актив {symbol} не найден на Hyperliquid")
        return asset

    def symbol_exists(self, symbol: str) -> bool:
        asset = self.find_asset(symbol)
        exists = asset is not None and not asset.is_delisted
        logger.info(f"Символ {symbol} доступен: {exists}")
        return exists

    def get_mid_price(self, symbol: str) -> Optional[float]:
        try:
            mids = self.info.all_mids()
        except Exception as e:
            logger.error(f"Ошибка при получении цены для {symbol}: {str(e)}")
            raise ExchangeError(f"Не удалось получить цену {symbol}: {str(e)}")
        price = float(mids.get(symbol) or 0)
        if price <= 0:
            return None
        logger.info(f"Текущая mid-цена {symbol}: {price}")
        return price

    def get_leverage(self, symbol: str) -> Leverage:
        try:
            data = self.info.post("/info", {"type": "activeAssetData", "user": self.user_address, "coin": symbol})
            leverage = data["leverage"]
            return Leverage(type=leverage["type"], value=int(leverage["value"]))
        except Exception as e:
            logger.error(f"Ошибка при получении плеча для {symbol}: {str(e)}")
            raise ExchangeError(f"Не удалось получить плечо {symbol}: {str(e)}")

    def set_isolated_leverage(self, symbol: str, leverage: int) -> Leverage:
        """Переключает аккаунт на isolated для символа. Меняет настройки аккаунта на бирже."""
        try:
            response = self.exchange.update_leverage(leverage, symbol, is_cross=False)
        except Exception as e:
            logger.error(f"Ошибка при установке плеча для {symbol}: {str(e)}")
            raise ExchangeError(f"Не удалось установить isolated плечо {symbol}: {str(e)}")
        if response.get("status") != "ok":
            raise ExchangeError(f"Биржа отклонила смену плеча для {symbol}: {response}")
        logger.warning(f"Режим маржи {symbol} переключён на isolated, плечо {leverage}x")
        return Leverage(type="isolated", value=leverage)

    def get_position(self, symbol: str) -> Optional[Position]:
        try:
            state = self.info.user_state(self.user_address)
        except Exception as e:
            logger.error(f"Ошибка при получении позиций: {str(e)}")
            raise ExchangeError(f"Не удалось получить позиции: {str(e)}")

        for item in state.get("assetPositions", []):
            position = item["position"]
            if position["coin"] != symbol:
                continue
            szi = float(position["szi"])
            if szi == 0:
                return None
            liquidation = position.get("liquidationPx")
            return Position(
                coin=symbol,
                szi=szi,
                entry_price=float(position["entryPx"]) if position.get("entryPx") else None,
                liquidation_price=float(liquidation) if liquidation else None,
            )
        return None

    def get_open_orders(self, symbol: Optional[str] = None) -> List[Dict]:
        """Открытые ордера с флагами reduceOnly / isTrigger"""
        try:
            orders = self.info.frontend_open_orders(self.user_address)
        except Exception as e:
            logger.error(f"Ошибка при получении открытых ордеров: {str(e)}")
            raise ExchangeError(f"Не удалось получить открытые ордера: {str(e)}")
        if symbol is None:
            return orders
        return [order for order in orders if order["coin"] == symbol]

    def place_order(self, symbol: str, is_buy: bool, size: float, price: float, order_type: Dict,
                    reduce_only: bool = False) -> Dict:
        try:
            response = self.exchange.order(symbol, is_buy, size, price, order_type, reduce_only=reduce_only)
        except Exception as e:
            logger.error(f"Ошибка при создании ордера для {symbol}: {str(e)}")
            raise ExchangeError(f"Не удалось создать ордер {symbol}: {str(e)}")
        logger.info(f"Ответ API ордера {symbol}: {json.dumps(response)}")
        return response

    def place_limit_order(self, symbol: str, is_buy: bool, size: float, price: float,
                          reduce_only: bool = False) -> Dict:
        return self.place_order(symbol, is_buy, size, price, GTC, reduce_only=reduce_only)

    def place_stop_loss_order(self, symbol: str, is_buy: bool, size: float, trigger_price: float) -> Dict:
        return self.place_order(symbol, is_buy, size, trigger_price, stop_loss_order_type(trigger_price),
                                reduce_only=True)

    def cancel_orders(self, symbol: str, oids: List[int]) -> None:
        if not oids:
            return
        try:
            response = self.exchange.bulk_cancel([{"coin": symbol, "oid": int(oid)} for oid in oids])
        except Exception as e:
            logger.error(f"Ошибка при отмене ордеров {oids} для {symbol}: {str(e)}")
            raise ExchangeError(f"Не удалось отменить ордера {symbol}: {str(e)}")
        logger.info(f"Отменено ордеров для {symbol}: {len(oids)}, ответ: {json.dumps(response)}")

    def modify_stop_loss(self, oid: int, symbol: str, is_buy: bool, size: float, trigger_price: float) -> Dict:
        """Замена триггер-цены стоп-лосса одним batchModify"""
        modify = {
            "oid": int(oid),
            "order": {
                "coin": symbol,
                "is_buy": is_buy,
                "sz": size,
                "limit_px": trigger_price,
                "order_type": stop_loss_order_type(trigger_price),
                "reduce_only": True,
            },
        }
        try:
            response = self.exchange.bulk_modify_orders_new([modify])
        except Exception as e:
            logger.error(f"Ошибка при изменении стоп-лосса {oid} для {symbol}: {str(e)}")
            raise ExchangeError(f"Не удалось изменить стоп-лосс {symbol}: {str(e)}")
        logger.info(f"Ответ API изменения стоп-лосса {symbol}: {json.dumps(response)}")
        return response


def create_client() -> HyperliquidAPI:
    """Клиенты Info/Exchange по переменным окружения. Вызывается один раз при старте."""
    if not config.HYPERLIQUID_PRIVATE_KEY:
        raise ConfigurationError("HYPERLIQUID_PRIVATE_KEY не задан")
    if not config.HYPERLIQUID_USER_ADDRESS:
        raise ConfigurationError("HYPERLIQUID_USER_ADDRESS не задан")

    base_url = constants.TESTNET_API_URL if config.HYPERLIQUID_TESTNET else constants.MAINNET_API_URL
    wallet = Account.from_key(config.HYPERLIQUID_PRIVATE_KEY)
    info = Info(base_url, skip_ws=True)
    exchange = Exchange(wallet, base_url, account_address=config.HYPERLIQUID_USER_ADDRESS)
    logger.info(f"Hyperliquid клиент создан: {base_url}, аккаунт {config.HYPERLIQUID_USER_ADDRESS}")
    return HyperliquidAPI(info, exchange, config.HYPERLIQUID_USER_ADDRESS)
