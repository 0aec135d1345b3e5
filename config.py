"""
Runtime configuration for the INK bridge.

All secrets live in .env (or the real environment), never in code.
Settings are read once at process start and passed explicitly to
create_app(); each operation asks for exactly the fields it needs via
Settings.require(), so a missing secret disables that path instead of
skipping its checks.
"""

import os
from dataclasses import dataclass, fields
from typing import List

from dotenv import load_dotenv

from errors import ConfigurationError

# field name -> environment variable
ENV_NAMES = {
    "webhook_secret": "SHOPIFY_WEBHOOK_SECRET",
    "shop_domain": "SHOPIFY_SHOP",
    "access_token": "SHOPIFY_ACCESS_TOKEN",
    "api_version": "SHOPIFY_API_VERSION",
    "session_db_path": "SESSION_DB_PATH",
    "nfs_api_url": "NFS_API_URL",
    "nfs_hmac_secret": "NFS_HMAC_SECRET",
    "internal_api_key": "INTERNAL_API_KEY",
    "app_url": "APP_URL",
    "protection_variant_id": "INK_PROTECTION_VARIANT_ID",
    "backfill_interval_minutes": "BACKFILL_INTERVAL_MINUTES",
}


def _env(name: str) -> str:
    return (os.getenv(name) or "").strip()


@dataclass(frozen=True)
class Settings:
    webhook_secret: str = ""
    shop_domain: str = ""
    access_token: str = ""
    api_version: str = "2024-10"
    session_db_path: str = ""
    nfs_api_url: str = ""
    nfs_hmac_secret: str = ""
    internal_api_key: str = ""
    app_url: str = ""
    protection_variant_id: str = ""
    backfill_interval_minutes: int = 0

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        """
        Build Settings from the process environment.
        - Loads .env first unless dotenv=False.
        - Strips whitespace and trailing slashes from URLs.
        - Never raises for missing values; use require() at the call site.
        """
        if dotenv:
            load_dotenv()

        interval = _env("BACKFILL_INTERVAL_MINUTES") or "0"
        try:
            backfill_interval = int(interval)
        except ValueError:
            raise ConfigurationError(
                f"BACKFILL_INTERVAL_MINUTES must be an integer, got {interval!r}"
            )

        return cls(
            webhook_secret=_env("SHOPIFY_WEBHOOK_SECRET"),
            shop_domain=_env("SHOPIFY_SHOP"),
            access_token=_env("SHOPIFY_ACCESS_TOKEN"),
            api_version=_env("SHOPIFY_API_VERSION") or "2024-10",
            session_db_path=_env("SESSION_DB_PATH"),
            nfs_api_url=_env("NFS_API_URL").rstrip("/"),
            nfs_hmac_secret=_env("NFS_HMAC_SECRET"),
            internal_api_key=_env("INTERNAL_API_KEY"),
            app_url=_env("APP_URL").rstrip("/"),
            protection_variant_id=_env("INK_PROTECTION_VARIANT_ID"),
            backfill_interval_minutes=max(backfill_interval, 0),
        )

    def missing(self, *names: str) -> List[str]:
        """Return the env var names for any of the given fields that are empty."""
        known = {f.name for f in fields(self)}
        out = []
        for name in names:
            if name not in known:
                raise KeyError(name)
            if not getattr(self, name):
                out.append(ENV_NAMES[name])
        return out

    def require(self, *names: str) -> None:
        """Raise ConfigurationError if any of the given fields is empty."""
        absent = self.missing(*names)
        if absent:
            raise ConfigurationError(f"Missing configuration: {', '.join(absent)}")
