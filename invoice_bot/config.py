"""Runtime configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass


def env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= minimum else default


def env_str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip()


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


DEFAULT_MAX_CONCURRENT_RENDERS = max(4, min(32, os.cpu_count() or 4))


@dataclass(frozen=True)
class Settings:
    """Process-wide settings, built once at start-up and passed explicitly."""

    host: str = "0.0.0.0"
    port: int = 8080

    telegram_bot_token: str = ""
    telegram_api_base: str = "https://api.telegram.org"
    telegram_provider_token: str = ""
    webhook_secret: str = ""
    currency: str = "XTR"
    store_dir: str = ""
    protect_content: bool = True

    max_concurrent_renders: int = DEFAULT_MAX_CONCURRENT_RENDERS
    max_inflight_renders: int = max(100, DEFAULT_MAX_CONCURRENT_RENDERS * 4)
    render_queue_timeout_ms: int = 120000
    render_timeout_ms: int = 300000

    max_body_bytes: int = 1024 * 1024
    max_pages: int = 100
    listen_backlog: int = 512

    delivery_max_attempts: int = 3
    delivery_backoff_ms: int = 500
    delivery_backoff_max_ms: int = 4000
    http_timeout_ms: int = 10000

    invoice_title: str = "Invoice PDF"
    invoice_description: str = "A PDF copy of your invoice, delivered to this chat after payment."
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        max_concurrent = env_int(
            "INVOICE_MAX_CONCURRENT_RENDERS",
            DEFAULT_MAX_CONCURRENT_RENDERS,
            minimum=1,
        )
        return cls(
            host=env_str("INVOICE_HOST", "0.0.0.0"),
            port=env_int("INVOICE_PORT", 8080, minimum=0),
            telegram_bot_token=env_str("TELEGRAM_BOT_TOKEN"),
            telegram_api_base=env_str("TELEGRAM_API_BASE", "https://api.telegram.org").rstrip("/"),
            telegram_provider_token=env_str("TELEGRAM_PROVIDER_TOKEN"),
            webhook_secret=env_str("INVOICE_WEBHOOK_SECRET"),
            currency=env_str("INVOICE_CURRENCY", "XTR").upper(),
            store_dir=env_str("INVOICE_STORE_DIR"),
            protect_content=env_bool("INVOICE_PROTECT_CONTENT", True),
            max_concurrent_renders=max_concurrent,
            max_inflight_renders=env_int(
                "INVOICE_MAX_INFLIGHT_RENDERS",
                max(100, max_concurrent * 4),
                minimum=1,
            ),
            render_queue_timeout_ms=env_int("INVOICE_RENDER_QUEUE_TIMEOUT_MS", 120000, minimum=0),
            render_timeout_ms=env_int("INVOICE_RENDER_TIMEOUT_MS", 300000, minimum=1000),
            max_body_bytes=env_int("INVOICE_MAX_BODY_BYTES", 1024 * 1024, minimum=1024),
            max_pages=env_int("INVOICE_MAX_PAGES", 100, minimum=1),
            listen_backlog=env_int("INVOICE_LISTEN_BACKLOG", 512, minimum=1),
            delivery_max_attempts=env_int("INVOICE_DELIVERY_MAX_ATTEMPTS", 3, minimum=1),
            delivery_backoff_ms=env_int("INVOICE_DELIVERY_BACKOFF_MS", 500, minimum=0),
            delivery_backoff_max_ms=env_int("INVOICE_DELIVERY_BACKOFF_MAX_MS", 4000, minimum=0),
            http_timeout_ms=env_int("INVOICE_HTTP_TIMEOUT_MS", 10000, minimum=100),
            invoice_title=env_str("INVOICE_TITLE", "Invoice PDF"),
            invoice_description=env_str(
                "INVOICE_DESCRIPTION",
                "A PDF copy of your invoice, delivered to this chat after payment.",
            ),
            log_level=env_str("INVOICE_LOG_LEVEL", "INFO").upper(),
        )

    def delivery_backoff(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed delivery attempt."""
        delay_ms = self.delivery_backoff_ms * (2 ** max(0, attempt - 1))
        return min(delay_ms, self.delivery_backoff_max_ms) / 1000.0


class ConfigurationError(RuntimeError):
    """Raised when required settings are missing or inconsistent."""


def require_bot_token(settings: Settings) -> str:
    if not settings.telegram_bot_token:
        raise ConfigurationError("TELEGRAM_BOT_TOKEN must be set to run the invoice bot.")
    return settings.telegram_bot_token
