import os
from dataclasses import dataclass


DEFAULT_BUNDLE_ID = "com.danfields5454.callme"

DEFAULT_FROM_EMAIL = "CallMe <hello@justcallme.app>"

DEFAULT_APP_URL = "https://justcallme.app"

TRUTHY = ("1", "true", "yes")


def get_env(name: str, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if value is None or value == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in TRUTHY


@dataclass(frozen=True)
class Settings:
    supabase_url: str
    supabase_service_role_key: str
    apns_key_id: str = ""
    apns_team_id: str = ""
    apns_private_key: str = ""
    apns_bundle_id: str = DEFAULT_BUNDLE_ID
    apns_production: bool = False
    resend_api_key: str = ""
    resend_from_email: str = DEFAULT_FROM_EMAIL
    app_url: str = DEFAULT_APP_URL
    schedule_timezone: str = "UTC"
    webhook_secret: str = ""
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Read settings from the environment.

    Only the Supabase credentials are mandatory here. APNs key material is
    validated when a provider token is signed, so the expiry sweeper can run
    in an environment that has no push credentials at all.
    """
    return Settings(
        supabase_url=get_env("SUPABASE_URL"),
        supabase_service_role_key=get_env("SUPABASE_SERVICE_ROLE_KEY"),
        apns_key_id=os.getenv("APNS_KEY_ID", "").strip(),
        apns_team_id=os.getenv("APNS_TEAM_ID", "").strip(),
        apns_private_key=os.getenv("APNS_KEY_P8", ""),
        apns_bundle_id=os.getenv("APNS_BUNDLE_ID") or DEFAULT_BUNDLE_ID,
        apns_production=env_flag("APNS_PRODUCTION"),
        resend_api_key=os.getenv("RESEND_API_KEY", "").strip(),
        resend_from_email=os.getenv("RESEND_FROM_EMAIL") or DEFAULT_FROM_EMAIL,
        app_url=os.getenv("APP_URL") or DEFAULT_APP_URL,
        schedule_timezone=os.getenv("SCHEDULE_TIMEZONE") or "UTC",
        webhook_secret=os.getenv("WEBHOOK_SECRET", "").strip(),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )
