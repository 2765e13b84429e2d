"""Ошибки предметной области.

У каждой ошибки есть стабильный ``kind`` (его видит клиент), HTTP-статус и
признак ``retryable``: повторять запрос имеет смысл только для временных
ошибок, повтор settlement защищён ключом идемпотентности.
"""
from fastapi import Request
from fastapi.responses import JSONResponse


class StorefrontError(Exception):
    """Базовая ошибка приложения."""

    kind = "error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, retryable: bool | None = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.kind,
            "message": self.message,
            "retryable": self.retryable,
        }


class ValidationError(StorefrontError):
    """Некорректные данные запроса (ошибка клиента, повтор бесполезен)."""

    kind = "validation_error"
    status_code = 400


class MissingField(ValidationError):
    kind = "missing_field"

    def __init__(self, *fields: str):
        self.fields = fields
        super().__init__(f"Missing required field(s): {', '.join(fields)}")


class InvalidStatus(ValidationError):
    kind = "invalid_status"

    def __init__(self, status: str, allowed):
        self.status = status
        super().__init__(f"Status must be one of: {', '.join(allowed)}. Got: {status!r}")


class InvalidTransition(StorefrontError):
    kind = "invalid_transition"
    status_code = 409

    def __init__(self, entity: str, current: str, new: str):
        self.current = current
        self.new = new
        super().__init__(f"{entity} status cannot change from {current} to {new}")


class InvalidSignature(StorefrontError):
    """Подпись callback не совпала: возможная подмена данных."""

    kind = "invalid_signature"
    status_code = 400


class NotFound(StorefrontError):
    kind = "not_found"
    status_code = 404


class GatewayNotFound(NotFound):
    """Шлюз не знает такой платёж."""

    kind = "gateway_not_found"


class GatewayUnavailable(StorefrontError):
    """Шлюз недоступен (сеть, таймаут, 5xx). Можно повторить с backoff."""

    kind = "gateway_unavailable"
    status_code = 503
    retryable = True


class GatewayRejected(StorefrontError):
    """Шлюз окончательно отклонил запрос."""

    kind = "gateway_rejected"
    status_code = 400


class InvalidGatewayRequest(GatewayRejected):
    kind = "invalid_gateway_request"


class AlreadyRefunded(GatewayRejected):
    kind = "already_refunded"
    status_code = 409


class GatewayFetchFailed(StorefrontError):
    """Не удалось получить авторитетные данные платежа перед settlement."""

    kind = "gateway_fetch_failed"
    status_code = 502


class DuplicateSettlement(StorefrontError):
    """Платёж уже проведён. Не ошибка: вызывающий код возвращает существующий результат."""

    kind = "duplicate_settlement"
    status_code = 200


class PersistenceFailure(StorefrontError):
    """Запись в БД не удалась после того, как деньги уже списаны.

    Такие случаи попадают в очередь сверки (settlement_intents), а не
    просто в лог.
    """

    kind = "persistence_failure"
    status_code = 500
    retryable = True


class ResourceBusy(StorefrontError):
    kind = "resource_busy"
    status_code = 409
    retryable = True


async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    """Единый формат ответа для ошибок приложения."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
