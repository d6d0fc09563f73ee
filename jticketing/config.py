import os
from dataclasses import dataclass


# ----------------------------
# Config & Constants
# ----------------------------
def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _with_scheme(url: str) -> str:
    url = url.rstrip("/")
    if url and not url.startswith(("http://", "https://")):
        return "https://" + url
    return url


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./jticketing.db"
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: int = 0  # 0 -> pool size

    payment_gateway_url: str = "https://payment.example"
    payment_api_key: str = ""
    payment_ag_token: str = "ZOO"
    public_base_url: str = "http://localhost:8000"
    frontend_base_url: str = "http://localhost:3000"

    zoo_base_url: str = ""
    zoo_user: str = ""
    zoo_pass: str = ""

    malaysia_tz: str = "Asia/Kuala_Lumpur"

    sweep_interval: float = 60.0
    sweep_batch: int = 50
    sweep_enabled: bool = True
    sweep_lock_backend: str = "local"  # 'local' | 'redis'
    redis_url: str = "redis://127.0.0.1:6379"

    provision_price_override: bool = False

    mail_backend: str = "log"  # 'smtp' | 'log'
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    smtp_from: str = "etiket@localhost"
    smtp_ssl: bool = False

    log_level: str = "INFO"
    log_format: str = "json"  # 'json' | 'console'


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", Settings.database_url),
        db_pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
        db_max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
        db_pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        db_gate_limit=int(os.getenv("DB_GATE_LIMIT", "0")),
        payment_gateway_url=_with_scheme(
            os.getenv("PAYMENT_GATEWAY_URL", Settings.payment_gateway_url)
        ),
        payment_api_key=os.getenv("PAYMENT_API_KEY", ""),
        payment_ag_token=os.getenv("PAYMENT_AG_TOKEN", "ZOO"),
        public_base_url=os.getenv(
            "PUBLIC_BASE_URL", Settings.public_base_url
        ).rstrip("/"),
        frontend_base_url=os.getenv(
            "FRONTEND_BASE_URL", Settings.frontend_base_url
        ).rstrip("/"),
        zoo_base_url=_with_scheme(os.getenv("ZOO_BASE_URL", "")),
        zoo_user=os.getenv("ZOO_USER", ""),
        zoo_pass=os.getenv("ZOO_PASS", ""),
        malaysia_tz=os.getenv("MALAYSIA_TZ", Settings.malaysia_tz),
        sweep_interval=float(
            os.getenv("SWEEP_INTERVAL", "60").rstrip("s") or "60"
        ),
        sweep_batch=int(os.getenv("SWEEP_BATCH", "50")),
        sweep_enabled=_env_bool("SWEEP_ENABLED", True),
        sweep_lock_backend=os.getenv("SWEEP_LOCK_BACKEND", "local").lower(),
        redis_url=os.getenv("REDIS_URL", Settings.redis_url),
        provision_price_override=_env_bool("PROVISION_PRICE_OVERRIDE", False),
        mail_backend=os.getenv("MAIL_BACKEND", "log").lower(),
        smtp_host=os.getenv("SMTP_HOST", Settings.smtp_host),
        smtp_port=int(os.getenv("SMTP_PORT", "587")),
        smtp_user=os.getenv("SMTP_USER", ""),
        smtp_pass=os.getenv("SMTP_PASS", ""),
        smtp_from=os.getenv("SMTP_FROM", Settings.smtp_from),
        smtp_ssl=_env_bool("SMTP_SSL", False),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_format=os.getenv("LOG_FORMAT", "json").lower(),
    )
