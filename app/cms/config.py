import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    client_schema: str

    storage_backend: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    api_rate_limit: int
    api_rate_window: int
    mag_code_max_attempts: int
    trust_proxy_hops: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///cms.db"),
        client_schema=_getenv("CLIENT_SCHEMA", ""),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        api_rate_limit=_getenv_int("API_RATE_LIMIT", 100),
        api_rate_window=_getenv_int("API_RATE_WINDOW", 60),
        mag_code_max_attempts=_getenv_int("MAG_CODE_MAX_ATTEMPTS", 5),
        trust_proxy_hops=_getenv_int("TRUST_PROXY_HOPS", 0),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "CLIENT_SCHEMA": s.client_schema,
        "STORAGE_BACKEND": s.storage_backend,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "API_RATE_LIMIT": s.api_rate_limit,
        "API_RATE_WINDOW": s.api_rate_window,
        "MAG_CODE_MAX_ATTEMPTS": s.mag_code_max_attempts,
        # reverse proxies in front of the app whose X-Forwarded-* headers are trusted
        "TRUST_PROXY_HOPS": s.trust_proxy_hops,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # media upload limit (25MB)
        "MAX_CONTENT_LENGTH": 25 * 1024 * 1024,
    }
