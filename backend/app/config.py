"""
Application settings and client construction.

Settings are read from the environment (optionally seeded from a .env file)
when the application starts. Nothing here runs at import time, so tests can
import any module without credentials.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv
from supabase import Client, create_client


@dataclass(frozen=True)
class Settings:
    supabase_url: str
    supabase_service_key: str
    ledger_bucket: str = "mail-ledger"
    ledger_filename: str = "data.xlsx"
    link_expiry_hours: int = 168
    bootstrap_window: int = 25
    fetch_batch_size: int = 10
    upload_workers: int = 8

    @property
    def link_expiry_seconds(self) -> int:
        return self.link_expiry_hours * 3600


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < 1:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def load_settings() -> Settings:
    """
    Build Settings from environment variables.

    Raises:
        ValueError: If SUPABASE_URL or SUPABASE_SERVICE_KEY is missing, or a
            numeric variable is not a positive integer.
    """
    load_dotenv()

    supabase_url = os.getenv("SUPABASE_URL")
    supabase_service_key = os.getenv("SUPABASE_SERVICE_KEY")
    if not supabase_url or not supabase_service_key:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set in environment variables")

    return Settings(
        supabase_url=supabase_url,
        supabase_service_key=supabase_service_key,
        ledger_bucket=os.getenv("LEDGER_BUCKET", "").strip() or "mail-ledger",
        ledger_filename=os.getenv("LEDGER_FILENAME", "").strip() or "data.xlsx",
        link_expiry_hours=_int_env("LINK_EXPIRY_HOURS", 168),
        bootstrap_window=_int_env("BOOTSTRAP_WINDOW", 25),
        fetch_batch_size=_int_env("FETCH_BATCH_SIZE", 10),
        upload_workers=_int_env("UPLOAD_WORKERS", 8),
    )


def create_storage_client(settings: Settings) -> Client:
    """Admin client used for storage operations (bypasses RLS)."""
    return create_client(settings.supabase_url, settings.supabase_service_key)
