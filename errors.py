"""
Исключения конвейера сигнал -> ордер.

Каждое исключение несёт HTTP-статус, с которым webhook отвечает источнику
алерта. Ни одна ошибка не повторяется автоматически.
"""


class TradingError(Exception):
    """Базовая ошибка обработки сигнала"""
    status_code = 500

    def __init__(self, message: str, context: dict = None):
        self.message = message
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        msg = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            msg = f"{msg} | Context: {ctx_str}"
        return msg


class ParseError(TradingError):
    """Некорректный или нераспознанный payload"""
    status_code = 400


class ValidationError(TradingError):
    """Сигнал не прошёл проверку: символ, стоп-лосс, конфликт позиции, ликвидация"""
    status_code = 400


class SkippedSignal(TradingError):
    """
    Не ошибка: повторная доставка или сигнал без действия.

    Отвечаем 200, чтобы источник алертов не считал доставку неудачной.
    """
    status_code = 200


class ExchangeError(TradingError):
    """Биржа отклонила запрос или вернула неожиданный ответ"""
    status_code = 500


class OrderIdMissing(ExchangeError):
    """В ответе биржи нет oid ни в статусе resting, ни в filled"""


class ConfigurationError(TradingError):
    """Не заданы обязательные переменные окружения"""
    status_code = 500


class InternalError(TradingError):
    status_code = 500
