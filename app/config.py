import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, List, Optional

from dotenv import load_dotenv

from app.utils.errors import ConfigError


DEFAULT_REWARD_MULTIPLIERS = "meals:2,kg:5,trays:3,boxes:4"
MIN_QR_TOKEN_LENGTH = 20


@dataclass(frozen=True)
class Settings:
    """
    Application settings, built once from the environment at startup.

    Holds every third-party credential the service needs; nothing else in the
    codebase reads credentials from the environment.
    """

    database_url: str = "sqlite:///./foodshare.db"

    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 24 * 60
    google_client_id: Optional[str] = None

    cors_allow_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])

    qr_token_ttl_hours: int = 24
    qr_token_length: int = 24

    nearby_result_limit: int = 50
    nearby_default_radius_km: float = 10.0
    nearby_max_radius_km: float = 50.0
    new_listing_notify_radius_km: float = 5.0

    sweep_enabled: bool = True
    sweep_interval_minutes: int = 30
    expiry_warning_hours: int = 2
    cron_secret: Optional[str] = None

    reward_multipliers: Dict[str, float] = field(
        default_factory=lambda: parse_multipliers(DEFAULT_REWARD_MULTIPLIERS)
    )
    meals_per_kg: float = 8
    meals_per_tray: float = 4
    meals_per_box: float = 10
    co2_per_meal_kg: float = 0.5
    water_per_meal_l: float = 500
    meals_per_person: float = 1.5

    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    email_from: Optional[str] = None

    vapid_public_key: Optional[str] = None
    vapid_private_key: Optional[str] = None
    vapid_claims_email: Optional[str] = None

    r2_bucket: Optional[str] = None
    r2_endpoint_url: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None

    log_level: str = "INFO"
    log_format: str = "json"

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_host and self.email_from)

    @property
    def push_enabled(self) -> bool:
        return bool(self.vapid_private_key and self.vapid_claims_email)

    @property
    def storage_enabled(self) -> bool:
        return bool(self.r2_bucket and self.r2_endpoint_url)


def parse_multipliers(raw: str) -> Dict[str, float]:
    """Parse a ``unit:factor`` comma list, e.g. ``meals:2,kg:5``."""
    table: Dict[str, float] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        unit, sep, factor = part.partition(":")
        if not sep:
            raise ConfigError(f"Malformed multiplier entry '{part}'")
        try:
            table[unit.strip()] = float(factor)
        except ValueError:
            raise ConfigError(f"Multiplier for '{unit.strip()}' is not a number")
    return table


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = _env(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got '{value}'")


def _env_float(name: str, default: float) -> float:
    value = _env(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got '{value}'")


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def load_settings() -> Settings:
    load_dotenv()

    token_length = _env_int("QR_TOKEN_LENGTH", 24)
    if token_length < MIN_QR_TOKEN_LENGTH:
        raise ConfigError(f"QR_TOKEN_LENGTH must be at least {MIN_QR_TOKEN_LENGTH}")

    jwt_secret = _env("JWT_SECRET")
    if not jwt_secret:
        raise ConfigError("JWT_SECRET must be set")

    origins = _env("CORS_ALLOW_ORIGINS", "http://localhost:3000")

    return Settings(
        database_url=_env("DATABASE_URL", "sqlite:///./foodshare.db"),
        jwt_secret=jwt_secret,
        jwt_algorithm=_env("JWT_ALGORITHM", "HS256"),
        access_token_expire_minutes=_env_int("ACCESS_TOKEN_EXPIRE_MINUTES", 24 * 60),
        google_client_id=_env("GOOGLE_CLIENT_ID"),
        cors_allow_origins=[o.strip() for o in origins.split(",") if o.strip()],
        qr_token_ttl_hours=_env_int("QR_TOKEN_TTL_HOURS", 24),
        qr_token_length=token_length,
        nearby_result_limit=_env_int("NEARBY_RESULT_LIMIT", 50),
        nearby_default_radius_km=_env_float("NEARBY_DEFAULT_RADIUS_KM", 10.0),
        nearby_max_radius_km=_env_float("NEARBY_MAX_RADIUS_KM", 50.0),
        new_listing_notify_radius_km=_env_float("NEW_LISTING_NOTIFY_RADIUS_KM", 5.0),
        sweep_enabled=_env_bool("SWEEP_ENABLED", True),
        sweep_interval_minutes=_env_int("SWEEP_INTERVAL_MINUTES", 30),
        expiry_warning_hours=_env_int("EXPIRY_WARNING_HOURS", 2),
        cron_secret=_env("CRON_SECRET"),
        reward_multipliers=parse_multipliers(_env("REWARD_MULTIPLIERS", DEFAULT_REWARD_MULTIPLIERS)),
        meals_per_kg=_env_float("MEALS_PER_KG", 8),
        meals_per_tray=_env_float("MEALS_PER_TRAY", 4),
        meals_per_box=_env_float("MEALS_PER_BOX", 10),
        co2_per_meal_kg=_env_float("CO2_PER_MEAL_KG", 0.5),
        water_per_meal_l=_env_float("WATER_PER_MEAL_L", 500),
        meals_per_person=_env_float("MEALS_PER_PERSON", 1.5),
        smtp_host=_env("SMTP_HOST"),
        smtp_port=_env_int("SMTP_PORT", 587),
        smtp_username=_env("SMTP_USERNAME"),
        smtp_password=_env("SMTP_PASSWORD"),
        email_from=_env("EMAIL_FROM"),
        vapid_public_key=_env("VAPID_PUBLIC_KEY"),
        vapid_private_key=_env("VAPID_PRIVATE_KEY"),
        vapid_claims_email=_env("VAPID_CLAIMS_EMAIL"),
        r2_bucket=_env("R2_BUCKET"),
        r2_endpoint_url=_env("R2_ENDPOINT_URL"),
        aws_access_key_id=_env("AWS_ACCESS_KEY_ID"),
        aws_secret_access_key=_env("AWS_SECRET_ACCESS_KEY"),
        log_level=_env("LOG_LEVEL", "INFO").upper(),
        log_format=_env("LOG_FORMAT", "json").lower(),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
