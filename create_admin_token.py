#!/usr/bin/env python3
"""
Скрипт для выпуска JWT токена администратора.

Токен нужен для возвратов, смены статусов и работы с очередью сверки.

Использование:
    export SECRET_KEY="..."
    python create_admin_token.py --subject ops@example.com --hours 12
"""
import argparse
from datetime import timedelta

from storefront.config import settings
from storefront.core.security import create_access_token


def main():
    parser = argparse.ArgumentParser(description="Выпуск токена администратора")
    parser.add_argument("--subject", required=True, help="Кому выдаётся токен (email или логин)")
    parser.add_argument("--hours", type=int, default=24, help="Срок действия в часах")
    args = parser.parse_args()

    if settings.is_production and settings.secret_key == "your-secret-key-change-in-production":
        parser.error("SECRET_KEY не задан для production")

    token = create_access_token(
        {"sub": args.subject, "role": "admin"},
        expires_delta=timedelta(hours=args.hours),
    )
    print(token)


if __name__ == "__main__":
    main()
