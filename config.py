# config.py
import os
import ssl
from typing import Optional
from pydantic import BaseModel
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives import hashes


class SyncSettings(BaseModel):
    """Tuning knobs for location sync, proximity and presence."""
    push_distance_km: float = 0.5
    push_max_interval_seconds: float = 15 * 60
    staleness_window_seconds: float = 2 * 60 * 60
    candidate_limit: int = 25
    max_distance_km: float = 50.0
    view_limit: int = 20
    heartbeat_interval_seconds: float = 2 * 60
    # Sessions with no device activity for this many heartbeat intervals are closed; 0 disables
    idle_heartbeats: int = 3
    refresh_debounce_seconds: float = 1.5
    refresh_interval_seconds: float = 60
    profile_retry_attempts: int = 2
    profile_retry_delay_seconds: float = 2.0
    location_cache_ttl_seconds: float = 60 * 60
    geo_timeout_seconds: float = 10
    geo_maximum_age_seconds: float = 30
    geo_high_accuracy: bool = False


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise Exception(f"Environment variable {name} must be a number, got {value!r}")


def get_sync_settings() -> SyncSettings:
    """Return sync tuning from environment variables, falling back to defaults."""
    defaults = SyncSettings()
    return SyncSettings(
        push_distance_km=_env_float("PUSH_DISTANCE_KM", defaults.push_distance_km),
        push_max_interval_seconds=_env_float("PUSH_MAX_INTERVAL_SECONDS", defaults.push_max_interval_seconds),
        staleness_window_seconds=_env_float("STALENESS_WINDOW_SECONDS", defaults.staleness_window_seconds),
        candidate_limit=int(_env_float("CANDIDATE_LIMIT", defaults.candidate_limit)),
        max_distance_km=_env_float("MAX_DISTANCE_KM", defaults.max_distance_km),
        view_limit=int(_env_float("VIEW_LIMIT", defaults.view_limit)),
        heartbeat_interval_seconds=_env_float("HEARTBEAT_INTERVAL_SECONDS", defaults.heartbeat_interval_seconds),
        idle_heartbeats=int(_env_float("IDLE_HEARTBEATS", defaults.idle_heartbeats)),
        refresh_debounce_seconds=_env_float("REFRESH_DEBOUNCE_SECONDS", defaults.refresh_debounce_seconds),
        refresh_interval_seconds=_env_float("REFRESH_INTERVAL_SECONDS", defaults.refresh_interval_seconds),
        profile_retry_attempts=int(_env_float("PROFILE_RETRY_ATTEMPTS", defaults.profile_retry_attempts)),
        profile_retry_delay_seconds=_env_float("PROFILE_RETRY_DELAY_SECONDS", defaults.profile_retry_delay_seconds),
        location_cache_ttl_seconds=_env_float("LOCATION_CACHE_TTL_SECONDS", defaults.location_cache_ttl_seconds),
        geo_timeout_seconds=_env_float("GEO_TIMEOUT_SECONDS", defaults.geo_timeout_seconds),
        geo_maximum_age_seconds=_env_float("GEO_MAXIMUM_AGE_SECONDS", defaults.geo_maximum_age_seconds),
    )


def get_db_config():
    """Return database configuration from environment variables."""
    return {
        'host': os.getenv('DB_HOST'),
        'port': int(os.getenv('DB_PORT', 5432)),
        'database': os.getenv('DB_NAME'),
        'user': os.getenv('DB_USER'),
        'password': os.getenv('DB_PASSWORD')
    }


def get_ssl_context() -> Optional[ssl.SSLContext]:
    """Create an SSL context for database connections, or None without a CA cert."""
    ca_cert_content = os.getenv('DB_CA_CERT')
    if not ca_cert_content:
        return None

    ssl_context = ssl.create_default_context(cadata=ca_cert_content)
    ssl_context.check_hostname = False
    ssl_context.verify_mode = ssl.CERT_NONE

    return ssl_context


def get_api_key():
    """Get API key from environment variables."""
    api_key = os.getenv("API_KEY")
    if not api_key:
        raise Exception("Missing required environment variable: API_KEY")
    return api_key


def derive_encryption_key():
    """Derive encryption key from environment variable."""
    key = os.getenv('ENCRYPTION_KEY')
    if not key:
        raise Exception("Missing required environment variable: ENCRYPTION_KEY")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=os.getenv('ENCRYPTION_SALT', 'static_salt').encode(),
        iterations=100000
    )
    return kdf.derive(key.encode())


def get_auth_base_url():
    """Get the auth service base URL from environment variables."""
    base_url = os.getenv("AUTH_BASE_URL")
    if not base_url:
        raise Exception("Missing required environment variable: AUTH_BASE_URL")
    return base_url.rstrip("/")


def get_auth_user_endpoint():
    return os.getenv("AUTH_USER_ENDPOINT", "/auth/v1/user")


def get_ip_geolocation_url():
    return os.getenv("IP_GEOLOCATION_URL", "https://ipapi.co").rstrip("/")


def get_avatar_config():
    """Return avatar resolution settings."""
    return {
        'signing_url': os.getenv('AVATAR_SIGNING_URL') or None,
        'public_base_url': (os.getenv('AVATAR_PUBLIC_BASE_URL') or '').rstrip('/') or None,
        'max_entries': int(os.getenv('AVATAR_CACHE_SIZE', 256)),
    }


def get_location_cache_dir():
    return os.getenv("LOCATION_CACHE_DIR", ".cache/presence")


def get_log_level():
    return os.getenv("LOG_LEVEL", "INFO").upper()
