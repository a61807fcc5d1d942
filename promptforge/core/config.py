import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from starlette.requests import Request
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    CONFIG_STRICT: bool = False

    # Site access gate (read once at startup)
    COMING_SOON: bool = False

    # Admin access
    ADMIN_KEY: Optional[str] = None

    # Managed backend (Supabase REST + auth)
    SUPABASE_URL: Optional[str] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None
    SUPABASE_JWT_SECRET: Optional[str] = None
    SUPABASE_TIMEOUT_SECONDS: float = 10.0

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_CREATOR_MONTHLY: Optional[str] = None
    STRIPE_PRICE_CREATOR_YEARLY: Optional[str] = None
    STRIPE_PRICE_PRO_MONTHLY: Optional[str] = None
    STRIPE_PRICE_PRO_YEARLY: Optional[str] = None
    STRIPE_PRICE_ENTERPRISE_MONTHLY: Optional[str] = None
    STRIPE_PRICE_ENTERPRISE_YEARLY: Optional[str] = None

    # App URLs
    APP_URL: str = "http://localhost:3000"
    CORS_ORIGINS: str = "http://localhost:3000"  # comma-separated

    # Notifications: Slack
    SLACK_WEBHOOK_URL: Optional[str] = None
    SLACK_DEFAULT_CHANNEL: str = "#general"

    # Notifications: Telegram
    TELEGRAM_ENABLED: bool = False
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_CHAT_ID: Optional[str] = None
    TELEGRAM_TEAM_LEAD_CHAT_ID: Optional[str] = None
    TELEGRAM_DEVOPS_CHAT_ID: Optional[str] = None
    TELEGRAM_SECURITY_CHAT_ID: Optional[str] = None
    TELEGRAM_EMERGENCY_CHAT_ID: Optional[str] = None

    # Notifications: GitHub issues
    GITHUB_TOKEN: Optional[str] = None
    GITHUB_OWNER: str = "your-org"
    GITHUB_REPO: str = "promptforge"

    NOTIFICATION_TIMEOUT_SECONDS: float = 10.0

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = False
    RATE_LIMIT_PER_MINUTE_DEFAULT: int = 120
    RATE_LIMIT_BURST_DEFAULT: int = 30
    RATE_LIMIT_TRUST_FORWARDED_FOR: bool = False

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def get_settings(request: Request) -> Settings:
    """Settings the running app was built with; the module default when none were bound."""
    return getattr(request.app.state, "settings", None) or settings


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("promptforge")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "SUPABASE_URL",
        "SUPABASE_SERVICE_ROLE_KEY",
        "SUPABASE_JWT_SECRET",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "ADMIN_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
