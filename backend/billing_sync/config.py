"""
Runtime configuration.

Values are read once from the environment by Settings.from_env() and the
resulting object is passed explicitly to create_app() and to each service.
"""
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple


def _split_csv(value: Optional[str], default: Tuple[str, ...]) -> Tuple[str, ...]:
    if value is None:
        return default
    items = tuple(item.strip() for item in value.split(",") if item.strip())
    return items or default


@dataclass(frozen=True)
class Settings:
    # Stripe
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    # Supabase (service role key, the users table is not exposed to anon)
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None

    # FRONTEND_URL: canonical site domain for Stripe redirects
    frontend_url: str = "http://localhost:3000"
    cors_allowed_origins: Tuple[str, ...] = ("*",)

    # Optional price allowlist, one price per plan type
    stripe_price_monthly: Optional[str] = None
    stripe_price_yearly: Optional[str] = None

    # Identities created before signup completes must never be charged
    temporary_user_prefixes: Tuple[str, ...] = ("temp_",)
    temporary_email_markers: Tuple[str, ...] = ("temp@unilingo.com",)

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            stripe_secret_key=env.get("STRIPE_SECRET_KEY") or None,
            stripe_webhook_secret=env.get("STRIPE_WEBHOOK_SECRET") or None,
            supabase_url=env.get("SUPABASE_URL") or None,
            supabase_service_key=env.get("SUPABASE_SERVICE_ROLE_KEY") or None,
            frontend_url=(env.get("FRONTEND_URL") or cls.frontend_url).rstrip("/"),
            cors_allowed_origins=_split_csv(env.get("CORS_ALLOWED_ORIGINS"), cls.cors_allowed_origins),
            stripe_price_monthly=env.get("STRIPE_PRICE_MONTHLY") or None,
            stripe_price_yearly=env.get("STRIPE_PRICE_YEARLY") or None,
            temporary_user_prefixes=_split_csv(env.get("TEMP_USER_PREFIXES"), cls.temporary_user_prefixes),
            temporary_email_markers=_split_csv(env.get("TEMP_EMAIL_MARKERS"), cls.temporary_email_markers),
            log_level=(env.get("LOG_LEVEL") or cls.log_level).upper(),
        )

    @property
    def payments_configured(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def database_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)

    def price_for_plan(self, plan_type: str) -> Optional[str]:
        """Configured Stripe price id for a plan type, or None when unrestricted."""
        if plan_type == "monthly":
            return self.stripe_price_monthly
        if plan_type == "yearly":
            return self.stripe_price_yearly
        return None


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
