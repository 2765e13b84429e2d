"""Безопасность: подписи платёжного шлюза и JWT токены."""
import hashlib
import hmac
from datetime import datetime, timedelta
from typing import Any

from jose import jwt

from storefront.config import settings
from storefront.core.errors import MissingField


def compute_payment_signature(gateway_order_id: str, gateway_payment_id: str, secret: str) -> str:
    """HMAC-SHA256 от "order_id|payment_id", hex."""
    body = f"{gateway_order_id}|{gateway_payment_id}"
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_payment_signature(
    gateway_order_id: str | None,
    gateway_payment_id: str | None,
    signature: str | None,
    secret: str | None,
) -> bool:
    """
    Проверить подпись callback от платёжного шлюза.

    Сравнение выполняется за постоянное время. Неверная или битая подпись
    даёт False, исключение бросается только при отсутствии входных данных.
    """
    missing = [
        name
        for name, value in (
            ("gateway_order_id", gateway_order_id),
            ("gateway_payment_id", gateway_payment_id),
            ("signature", signature),
            ("secret", secret),
        )
        if value is None or value == ""
    ]
    if missing:
        raise MissingField(*missing)

    expected = compute_payment_signature(str(gateway_order_id), str(gateway_payment_id), str(secret))
    return hmac.compare_digest(expected.encode("utf-8"), str(signature).encode("utf-8"))


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Создание JWT токена."""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(hours=24)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm="HS256")
    return encoded_jwt


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Декодирование JWT токена."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=["HS256"])
        return payload
    except jwt.JWTError:
        return None
