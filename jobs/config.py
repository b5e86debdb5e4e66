"""Runtime configuration for the P2P price monitor and its payment-method catalogue."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterable

from dotenv import load_dotenv

DEFAULT_UPSTREAM_URL = "https://p2p.binance.com/bapi/c2c/v2/friendly/c2c/adv/search"
DEFAULT_ASSET = "USDT"
DEFAULT_FIAT = "VES"
DEFAULT_ROWS = 10
DEFAULT_POLL_INTERVAL_SECONDS = 8.0
DEFAULT_RETENTION_DAYS = 30
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_UPSTREAM_ATTEMPTS = 1


@dataclass(frozen=True)
class P2PSettings:
    """Settings shared by the listing client, the store and the poller."""

    upstream_url: str = DEFAULT_UPSTREAM_URL
    asset: str = DEFAULT_ASSET
    fiat: str = DEFAULT_FIAT
    rows: int = DEFAULT_ROWS
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    retention_days: int = DEFAULT_RETENTION_DAYS
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    upstream_attempts: int = DEFAULT_UPSTREAM_ATTEMPTS
    db_path: str | None = None


@dataclass(frozen=True)
class PaymentMethod:
    key: str
    label: str


PAYMENT_METHODS: tuple[PaymentMethod, ...] = (
    PaymentMethod("PagoMovil", "Pago Móvil"),
    PaymentMethod("Banesco", "Banesco"),
    PaymentMethod("SpecificBank", "Banco Específico"),
    PaymentMethod("BANK", "Transferencia Bancaria"),
    PaymentMethod("Mercantil", "Mercantil"),
    PaymentMethod("Provincial", "Provincial"),
    PaymentMethod("Bancamiga", "Bancamiga"),
    PaymentMethod("BNCBancoNacional", "BNC Banco Nacional"),
    PaymentMethod("BBVABank", "BBVA Bank"),
    PaymentMethod("Bancaribe", "Bancaribe"),
    PaymentMethod("Banplus", "Banplus"),
    PaymentMethod("BancoVeneCredit", "Banco VeneCredit"),
    PaymentMethod("BancoPlaza", "Banco Plaza"),
    PaymentMethod("BancoActivo", "Banco Activo"),
    PaymentMethod("RecargaPines", "Recarga Pines"),
)

DEFAULT_PAYMENT_METHODS: tuple[str, ...] = ("Banesco", "PagoMovil")


def _env_number(name: str, default: float, cast: type) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = cast(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be a number (got {raw!r})") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive (got {raw!r})")
    return value


def load_settings() -> P2PSettings:
    """Build settings from the environment (and a ``.env`` file when present)."""

    load_dotenv()
    return P2PSettings(
        upstream_url=os.getenv("P2P_UPSTREAM_URL", DEFAULT_UPSTREAM_URL),
        asset=os.getenv("P2P_ASSET", DEFAULT_ASSET).upper(),
        fiat=os.getenv("P2P_FIAT", DEFAULT_FIAT).upper(),
        rows=_env_number("P2P_ROWS", DEFAULT_ROWS, int),
        poll_interval=_env_number(
            "P2P_POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS, float
        ),
        retention_days=_env_number("P2P_RETENTION_DAYS", DEFAULT_RETENTION_DAYS, int),
        timeout=_env_number("P2P_UPSTREAM_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS, float),
        upstream_attempts=_env_number(
            "P2P_UPSTREAM_ATTEMPTS", DEFAULT_UPSTREAM_ATTEMPTS, int
        ),
        db_path=os.getenv("P2P_PRICES_DB_PATH") or None,
    )


def get_payment_method(key: str) -> PaymentMethod | None:
    for method in PAYMENT_METHODS:
        if method.key == key:
            return method
    return None


def parse_payment_methods(raw: str | Iterable[str] | None) -> tuple[str, ...]:
    """Normalize a comma-separated string or iterable into an ordered tuple of keys."""

    if raw is None:
        return tuple()
    items = raw.split(",") if isinstance(raw, str) else raw
    cleaned = [item.strip() for item in items if item and item.strip()]
    return tuple(dict.fromkeys(cleaned))


__all__ = [
    "P2PSettings",
    "PaymentMethod",
    "PAYMENT_METHODS",
    "DEFAULT_PAYMENT_METHODS",
    "load_settings",
    "get_payment_method",
    "parse_payment_methods",
]
