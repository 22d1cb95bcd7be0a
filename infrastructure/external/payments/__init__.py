"""
Factory for payment gateway clients.
"""
from __future__ import annotations

from typing import Optional

from core.settings import payment_settings
from application.ports.payment_gateway import PaymentGateway


def get_payment_gateway(provider: Optional[str] = None) -> PaymentGateway:
    name = (provider or payment_settings.default_provider).lower()
    if name in {"http", "rest"}:
        from .http_gateway import HttpPaymentGateway
        return HttpPaymentGateway()
    if name in {"inmemory", "memory", "local"}:
        from .inmemory_gateway import InMemoryPaymentGateway
        return InMemoryPaymentGateway(webhook_secret=payment_settings.gateway.webhook_secret)
    raise ValueError(f"Unsupported payment provider: {name}")
