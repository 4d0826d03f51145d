"""
Application Settings

All configuration comes from environment variables (a local .env file is
loaded first). One Settings object is built per process and handed to the
components that need it.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value or default


@dataclass
class Settings:
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "vapeshop"

    clover_merchant_id: Optional[str] = None
    clover_api_token: Optional[str] = None
    clover_base_url: str = "https://apisandbox.dev.clover.com"
    clover_charge_url: str = "https://scl-sandbox.dev.clover.com/v1/charges"
    clover_charge_fallback_url: str = "https://scl.clover.com/v1/charges"
    clover_timeout: float = 10.0
    clover_push_enabled: bool = False
    clover_webhook_secret: Optional[str] = None

    cloudinary_cloud_name: Optional[str] = None
    cloudinary_api_key: Optional[str] = None
    cloudinary_api_secret: Optional[str] = None
    cloudinary_folder: str = "products"
    cloudinary_timeout: float = 30.0

    frontend_url: Optional[str] = None
    admin_url: Optional[str] = None
    extra_origins: List[str] = field(default_factory=lambda: ["http://localhost:5173", "http://localhost:5176"])

    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=_env_str("DATABASE_URL", cls.database_url),
            database_name=_env_str("DATABASE_NAME", cls.database_name),
            clover_merchant_id=_env_str("CLOVER_MERCHANT_ID"),
            clover_api_token=_env_str("CLOVER_API_TOKEN"),
            clover_base_url=_env_str("CLOVER_BASE_URL", cls.clover_base_url).rstrip("/"),
            clover_charge_url=_env_str("CLOVER_CHARGE_URL", cls.clover_charge_url),
            clover_charge_fallback_url=_env_str("CLOVER_CHARGE_FALLBACK_URL", cls.clover_charge_fallback_url),
            clover_timeout=float(_env_str("CLOVER_TIMEOUT", str(cls.clover_timeout))),
            clover_push_enabled=_env_bool("CLOVER_PUSH_ENABLED", False),
            clover_webhook_secret=_env_str("CLOVER_WEBHOOK_SECRET"),
            cloudinary_cloud_name=_env_str("CLOUDINARY_CLOUD_NAME"),
            cloudinary_api_key=_env_str("CLOUDINARY_API_KEY"),
            cloudinary_api_secret=_env_str("CLOUDINARY_API_SECRET"),
            cloudinary_folder=_env_str("CLOUDINARY_FOLDER", cls.cloudinary_folder),
            cloudinary_timeout=float(_env_str("CLOUDINARY_TIMEOUT", str(cls.cloudinary_timeout))),
            frontend_url=_env_str("FRONTEND_URL"),
            admin_url=_env_str("ADMIN_URL"),
            log_level=_env_str("LOG_LEVEL", cls.log_level).upper(),
            port=int(_env_str("PORT", str(cls.port))),
        )

    @property
    def cors_origins(self) -> List[str]:
        origins = [o for o in (self.frontend_url, self.admin_url) if o]
        for o in self.extra_origins:
            if o not in origins:
                origins.append(o)
        return origins


def mask(value: Optional[str]) -> str:
    """Mask a secret for log output, keeping the first and last 3 characters."""
    if not value:
        return "missing"
    if len(value) <= 6:
        return "***"
    return f"{value[:3]}...{value[-3:]}"
