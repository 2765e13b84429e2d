"""Dependencies для FastAPI."""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from storefront.config import settings
from storefront.core.security import decode_access_token
from storefront.services.gateway_client import PaymentGateway, RazorpayClient

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


async def get_current_admin(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """
    Dependency для проверки авторизации администратора.

    Проверяет JWT токен и возвращает его payload.
    """
    token = credentials.credentials
    payload = decode_access_token(token)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        )

    role = payload.get("role")
    if role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )

    return payload


async def get_optional_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(optional_security),
) -> dict | None:
    """Payload администратора, если токен передан, иначе None."""
    if credentials is None:
        return None
    return await get_current_admin(credentials)


def get_gateway() -> PaymentGateway:
    """Клиент платёжного шлюза (в тестах подменяется через dependency_overrides)."""
    return RazorpayClient(settings)
