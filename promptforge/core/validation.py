"""
Startup environment checks.

``validate_env`` collects every problem it finds and raises once, so a bad
deploy reports all missing settings together. Set SKIP_ENV_VALIDATION=1 to
bypass it (the test suite does).
"""

import os
from typing import List, Optional
from urllib.parse import urlparse

from promptforge.core.config import settings

PRODUCTION_REQUIRED = (
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "SUPABASE_JWT_SECRET",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "ADMIN_KEY",
)


class EnvValidationError(RuntimeError):
    def __init__(self, problems: List[str]):
        self.problems = problems
        super().__init__("; ".join(problems))


def _is_https(url: Optional[str]) -> bool:
    parsed = urlparse(url or "")
    return parsed.scheme == "https" and bool(parsed.netloc)


def collect_env_problems(cfg, mode: str) -> List[str]:
    problems: List[str] = []
    supabase_url = getattr(cfg, "SUPABASE_URL", None)
    slack_url = getattr(cfg, "SLACK_WEBHOOK_URL", None)

    if supabase_url and not urlparse(supabase_url).netloc:
        problems.append("SUPABASE_URL must be a valid URL (e.g. https://<project>.supabase.co)")
    if slack_url and not _is_https(slack_url):
        problems.append("SLACK_WEBHOOK_URL must be an https URL")
    if getattr(cfg, "TELEGRAM_ENABLED", False) and not getattr(cfg, "TELEGRAM_BOT_TOKEN", None):
        problems.append("TELEGRAM_ENABLED requires TELEGRAM_BOT_TOKEN")

    if mode != "production":
        return problems

    problems.extend(f"{name} is required in production" for name in PRODUCTION_REQUIRED if not getattr(cfg, name, None))
    if supabase_url and not _is_https(supabase_url):
        problems.append("SUPABASE_URL must use https in production")
    if (getattr(cfg, "STRIPE_SECRET_KEY", "") or "").startswith("sk_test_"):
        problems.append("STRIPE_SECRET_KEY must be a live key in production")
    return problems


def validate_env(env: Optional[str] = None, settings_obj=None) -> bool:
    """Raise EnvValidationError listing every misconfiguration; return True otherwise."""
    if os.getenv("SKIP_ENV_VALIDATION") == "1":
        return True

    cfg = settings_obj or settings
    mode = (env or getattr(cfg, "ENV", None) or "development").lower()
    problems = collect_env_problems(cfg, mode)
    if problems:
        raise EnvValidationError(problems)
    return True
