"""
Application settings

Loaded once from the process environment (and a local .env file) at startup,
then passed explicitly to the pieces that need them.
"""

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional, Tuple

from dotenv import load_dotenv

from errors import ConfigError

ENVIRONMENTS = ("development", "production", "test")


@dataclass(frozen=True)
class OAuthProvider:
    name: str
    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def partially_configured(self) -> bool:
        return bool(self.client_id) != bool(self.client_secret)


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    environment: str = "development"
    log_level: str = "INFO"
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_currency: str = "usd"
    mongo_transactions: bool = False
    cors_origins: Tuple[str, ...] = ("http://localhost:3000",)
    oauth_providers: Tuple[OAuthProvider, ...] = field(default_factory=tuple)

    @property
    def debug(self) -> bool:
        return self.environment == "development"

    @property
    def enabled_providers(self) -> List[str]:
        return ["local"] + [p.name for p in self.oauth_providers if p.enabled]

    def validate(self) -> "Settings":
        if self.environment not in ENVIRONMENTS:
            raise ConfigError(f"ENVIRONMENT must be one of {', '.join(ENVIRONMENTS)}, got {self.environment!r}")
        for provider in self.oauth_providers:
            if provider.partially_configured:
                raise ConfigError(f"OAuth provider '{provider.name}' needs both a client id and a client secret")
        if self.environment == "production":
            if not self.stripe_secret_key:
                raise ConfigError("STRIPE_SECRET_KEY is required in production")
            if not self.stripe_webhook_secret:
                raise ConfigError("STRIPE_WEBHOOK_SECRET is required in production")
        return self


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    load_dotenv()
    origins = os.getenv("CORS_ORIGINS")
    return Settings(
        database_url=os.getenv("DATABASE_URL"),
        database_name=os.getenv("DATABASE_NAME"),
        environment=os.getenv("ENVIRONMENT", "development"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
        stripe_currency=os.getenv("STRIPE_CURRENCY", "usd"),
        mongo_transactions=_flag(os.getenv("MONGO_TRANSACTIONS")),
        cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()) if origins else Settings.cors_origins,
        oauth_providers=(
            OAuthProvider("google", os.getenv("GOOGLE_CLIENT_ID"), os.getenv("GOOGLE_CLIENT_SECRET")),
            OAuthProvider("facebook", os.getenv("FACEBOOK_APP_ID"), os.getenv("FACEBOOK_APP_SECRET")),
        ),
    )


@lru_cache()
def get_settings() -> Settings:
    return load_settings().validate()


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
