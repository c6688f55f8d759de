from __future__ import annotations

import os

from flask import current_app

from campus_market.integrations.common import IntegrationMisconfiguredError
from campus_market.integrations.payments.base import PaymentsProvider
from campus_market.integrations.payments.mock_provider import MockPaymentsProvider
from campus_market.integrations.payments.squad_provider import SquadPaymentsProvider, base_url_for, is_sandbox_key


def _provider_name() -> str:
    configured = current_app.config.get("PAYMENTS_PROVIDER") or os.getenv("PAYMENTS_PROVIDER") or "squad"
    return str(configured).strip().lower()


def _squad_keys() -> tuple[str, str]:
    secret_key = (os.getenv("SQUAD_SECRET_KEY") or "").strip()
    public_key = (os.getenv("SQUAD_PUBLIC_KEY") or "").strip()
    return secret_key, public_key


def build_payments_provider() -> PaymentsProvider:
    provider = _provider_name()
    if provider == "mock":
        return MockPaymentsProvider()
    if provider != "squad":
        raise IntegrationMisconfiguredError(f"Unknown payments provider '{provider}'")
    secret_key, public_key = _squad_keys()
    if not secret_key or not public_key:
        raise IntegrationMisconfiguredError("Payment service is not configured. Please contact support.")
    return SquadPaymentsProvider(secret_key=secret_key, public_key=public_key)


def get_payments_provider() -> PaymentsProvider:
    """Provider cached on the app; tests swap it through ``app.extensions``."""
    cached = current_app.extensions.get("payments_provider")
    if cached is not None:
        return cached
    provider = build_payments_provider()
    current_app.extensions["payments_provider"] = provider
    return provider


def payment_health() -> dict:
    provider = _provider_name()
    if provider == "mock":
        return {"configured": True, "provider": "mock", "mode": "mock", "baseUrl": "", "keyPrefix": "not set"}
    secret_key, public_key = _squad_keys()
    if is_sandbox_key(secret_key):
        mode = "sandbox"
    elif secret_key:
        mode = "live"
    else:
        mode = "unknown"
    return {
        "configured": bool(secret_key and public_key),
        "provider": provider,
        "mode": mode,
        "baseUrl": base_url_for(secret_key),
        "hasSecretKey": bool(secret_key),
        "hasPublicKey": bool(public_key),
        "keyPrefix": f"{secret_key[:8]}..." if secret_key else "not set",
    }
