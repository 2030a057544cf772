"""
Configuration - Luggage Deposit Booking Backend
================================================
Environment-driven settings plus the one-time structlog setup.

Secrets are optional at construction time and required at first use:
`config.require("stripe_secret_key")` raises ConfigurationError when the
variable is unset, so a missing secret stops the process at startup instead of
degrading silently.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from errors import ConfigurationError


# Setting name -> environment variable, used in error messages
ENV_NAMES = {
    "stripe_secret_key": "STRIPE_SECRET_KEY",
    "stripe_webhook_secret": "STRIPE_WEBHOOK_SECRET",
    "sendgrid_api_key": "SENDGRID_API_KEY",
    "email_from": "EMAIL_FROM",
    "owner_email": "EMAIL_TO_OWNER",
    "public_base_url": "PUBLIC_BASE_URL",
    "database_url": "DATABASE_URL",
    "wallet_issuer_id": "GOOGLE_WALLET_ISSUER_ID",
    "wallet_service_account_email": "GOOGLE_WALLET_SERVICE_ACCOUNT_EMAIL",
    "wallet_private_key": "GOOGLE_WALLET_PRIVATE_KEY",
}

ROUTING_MODES = ("hash", "path")


def _split(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class BookingConfig:
    """Process-wide settings, built once by the application factory."""

    env: str = "development"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    log_json: bool = True
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    # Payment provider
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    provider_timeout_seconds: float = 8.0
    verify_max_retries: int = 1
    currency: str = "eur"

    # Links
    public_base_url: Optional[str] = None
    routing_mode: str = "hash"

    # Outbound email
    sendgrid_api_key: Optional[str] = None
    email_from: Optional[str] = None
    owner_email: Optional[str] = None

    # Persistence
    database_url: Optional[str] = None
    db_min_pool_size: int = 1
    db_max_pool_size: int = 10

    # Google Wallet
    wallet_issuer_id: Optional[str] = None
    wallet_service_account_email: Optional[str] = None
    wallet_private_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> "BookingConfig":
        env = os.getenv("ENV", "development")
        routing_mode = os.getenv("ROUTING_MODE", "hash").lower()
        if routing_mode not in ROUTING_MODES:
            raise ConfigurationError(
                f"ROUTING_MODE must be one of {', '.join(ROUTING_MODES)}, got {routing_mode!r}"
            )
        private_key = os.getenv("GOOGLE_WALLET_PRIVATE_KEY")
        return cls(
            env=env,
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_json=os.getenv("LOG_JSON", "true" if env != "development" else "false").lower() == "true",
            cors_origins=_split(os.getenv("CORS_ORIGINS", "*")),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
            provider_timeout_seconds=float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "8.0")),
            verify_max_retries=int(os.getenv("VERIFY_MAX_RETRIES", "1")),
            currency=os.getenv("CURRENCY", "eur").lower(),
            public_base_url=(os.getenv("PUBLIC_BASE_URL") or "").rstrip("/") or None,
            routing_mode=routing_mode,
            sendgrid_api_key=os.getenv("SENDGRID_API_KEY") or None,
            email_from=os.getenv("EMAIL_FROM") or None,
            owner_email=os.getenv("EMAIL_TO_OWNER") or None,
            database_url=os.getenv("DATABASE_URL") or None,
            db_min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "1")),
            db_max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "10")),
            wallet_issuer_id=os.getenv("GOOGLE_WALLET_ISSUER_ID") or None,
            wallet_service_account_email=os.getenv("GOOGLE_WALLET_SERVICE_ACCOUNT_EMAIL") or None,
            # Keys pasted into env files usually carry literal "\n"
            wallet_private_key=private_key.replace("\\n", "\n") if private_key else None,
        )

    def require(self, name: str) -> str:
        value = getattr(self, name, None)
        if not value:
            raise ConfigurationError(
                f"Missing environment variable: {ENV_NAMES.get(name, name.upper())}",
                details={"setting": name},
            )
        return value

    @property
    def wallet_enabled(self) -> bool:
        return bool(
            self.wallet_issuer_id
            and self.wallet_service_account_email
            and self.wallet_private_key
        )

    @property
    def debug(self) -> bool:
        return self.env == "development"


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog once for the whole process."""
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
