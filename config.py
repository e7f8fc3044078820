"""
Runtime settings for the REST membership API.

Everything is read from environment variables once, at import time, into an
immutable Settings object. Nothing mutates it afterwards.
"""
import os
from typing import List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict

DEFAULT_ORIGINS = ["http://localhost:3000", "http://localhost:5173", "http://localhost:8081"]
LOCALHOST_ORIGIN_REGEX = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_url: str = "mongodb://localhost:27017"
    database_name: str = "rest"

    access_token_secret: str = "dev_access_secret_change_me"
    refresh_token_secret: str = "dev_refresh_secret_change_me"
    jwt_secret: str = "dev_secret_change_me"
    access_token_expire_minutes: int = 60
    refresh_token_expire_days: int = 10
    reset_token_expire_minutes: int = 15
    bcrypt_rounds: int = 12
    cookie_secure: bool = False

    cors_origins: List[str] = DEFAULT_ORIGINS

    storage_backend: Literal["local", "cloudinary"] = "local"
    uploads_dir: str = "uploads"
    base_url: str = ""
    cloudinary_cloud_name: Optional[str] = None
    cloudinary_api_key: Optional[str] = None
    cloudinary_api_secret: Optional[str] = None

    email_host: Optional[str] = None
    email_port: Optional[int] = None
    email_user: Optional[str] = None
    email_pass: Optional[str] = None
    email_from_name: str = "R.E.S.T"
    expose_reset_token: bool = True

    admin_email: Optional[str] = None
    admin_password: Optional[str] = None

    content_cache_seconds: int = 300
    log_level: str = "INFO"

    @property
    def can_send_email(self) -> bool:
        return bool(self.email_host and self.email_port and self.email_user and self.email_pass)


def parse_origins(value: Optional[str]) -> List[str]:
    return [origin.strip() for origin in (value or "").split(",") if origin.strip()]


def collect_cors_origins(env: Mapping[str, str]) -> List[str]:
    """Merge the comma separated origin lists into one de-duplicated allow-list."""
    origins: List[str] = []
    for name in ("CORS_ORIGIN", "USER_CORS_ORIGIN", "CORS_ORIGINS"):
        origins.extend(parse_origins(env.get(name)))
    if not env.get("CORS_ORIGIN") and not env.get("USER_CORS_ORIGIN"):
        origins.extend(DEFAULT_ORIGINS)
    return list(dict.fromkeys(origins)) or list(DEFAULT_ORIGINS)


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if env is None else env
    values = {
        "database_url": env.get("DATABASE_URL"),
        "database_name": env.get("DATABASE_NAME"),
        "access_token_secret": env.get("ACCESS_TOKEN_SECRET"),
        "refresh_token_secret": env.get("REFRESH_TOKEN_SECRET"),
        "jwt_secret": env.get("JWT_SECRET"),
        "access_token_expire_minutes": env.get("ACCESS_TOKEN_EXPIRE_MINUTES"),
        "refresh_token_expire_days": env.get("REFRESH_TOKEN_EXPIRE_DAYS"),
        "bcrypt_rounds": env.get("BCRYPT_ROUNDS"),
        "storage_backend": (env.get("STORAGE_BACKEND") or "").strip().lower() or None,
        "uploads_dir": env.get("UPLOADS_DIR"),
        "base_url": (env.get("BASE_URL") or "").rstrip("/") or None,
        "cloudinary_cloud_name": env.get("CLOUDINARY_CLOUD_NAME"),
        "cloudinary_api_key": env.get("CLOUDINARY_API_KEY"),
        "cloudinary_api_secret": env.get("CLOUDINARY_API_SECRET"),
        "email_host": env.get("EMAIL_HOST"),
        "email_port": env.get("EMAIL_PORT"),
        "email_user": env.get("EMAIL_USER"),
        "email_pass": env.get("EMAIL_PASS"),
        "email_from_name": env.get("EMAIL_FROM_NAME"),
        "admin_email": env.get("ADMIN_EMAIL"),
        "admin_password": env.get("ADMIN_PASSWORD"),
        "content_cache_seconds": env.get("CONTENT_CACHE_SECONDS"),
        "log_level": env.get("LOG_LEVEL"),
    }
    # unset variables fall back to the model defaults
    values = {k: v for k, v in values.items() if v not in (None, "")}
    return Settings(
        **values,
        cookie_secure=_flag(env.get("COOKIE_SECURE"), False),
        expose_reset_token=_flag(env.get("EXPOSE_RESET_TOKEN"), True),
        cors_origins=collect_cors_origins(env),
    )


settings = load_settings()
