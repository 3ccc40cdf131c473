"""
Runtime configuration for the checkout subsystem.

Values come from ``PHARMACY_*`` environment variables, mirroring how the
data layer resolves its database path.  Every field has a default suitable
for local development against a storefront served on localhost.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

DEFAULT_BASE_URL = "http://localhost/pharmacy/customer-portal"


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}") from None


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from None


def _env_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class CheckoutConfig:
    base_url: str = DEFAULT_BASE_URL
    db_path: str = "db/checkout.db"
    log_dir: str = "logs"

    # Endpoint paths, resolved against base_url
    push_initiate_path: str = "api/initiate-payment.php"
    push_status_path: str = "api/check-payment-status.php"
    redirect_initiate_path: str = "api/initiate-paypal-payment.php"
    cash_initiate_path: str = "api/create-order.php"
    # Host-rooted prefixes tried once each when initiation hits a network error
    fallback_prefixes: Tuple[str, ...] = ("/customer-portal/",)

    poll_grace_seconds: float = 5.0
    poll_interval_seconds: float = 5.0
    poll_max_attempts: int = 60

    push_test_mode: bool = False
    http_timeout_seconds: float = 30.0
    kes_to_usd_rate: float = 0.0077

    extra_headers: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.poll_max_attempts < 1:
            raise ValueError("poll_max_attempts must be at least 1")
        if self.poll_interval_seconds <= 0 or self.poll_grace_seconds < 0:
            raise ValueError("poll intervals must be positive")
        if self.http_timeout_seconds <= 0:
            raise ValueError("http_timeout_seconds must be positive")

    def alternate_paths(self, path: str) -> Tuple[str, ...]:
        """Alternate spellings of ``path`` used for the one-shot fallback."""
        bare = path.lstrip("/")
        return tuple(f"{prefix}{bare}" for prefix in self.fallback_prefixes if f"{prefix}{bare}" != path)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "CheckoutConfig":
        env = os.environ if env is None else env
        fallback_raw = env.get("PHARMACY_FALLBACK_PATHS")
        fallbacks = (
            tuple(p.strip() for p in fallback_raw.split(",") if p.strip())
            if fallback_raw is not None
            else ("/customer-portal/",)
        )
        return cls(
            base_url=env.get("PHARMACY_API_BASE_URL", DEFAULT_BASE_URL).rstrip("/"),
            db_path=env.get("PHARMACY_DB_PATH", "db/checkout.db"),
            log_dir=env.get("PHARMACY_LOG_DIR", "logs"),
            fallback_prefixes=fallbacks,
            poll_grace_seconds=_env_float(env, "PHARMACY_POLL_GRACE", 5.0),
            poll_interval_seconds=_env_float(env, "PHARMACY_POLL_INTERVAL", 5.0),
            poll_max_attempts=_env_int(env, "PHARMACY_POLL_MAX_ATTEMPTS", 60),
            push_test_mode=_env_bool(env, "PHARMACY_PUSH_TEST_MODE", False),
            http_timeout_seconds=_env_float(env, "PHARMACY_HTTP_TIMEOUT", 30.0),
            kes_to_usd_rate=_env_float(env, "PHARMACY_KES_TO_USD_RATE", 0.0077),
        )
