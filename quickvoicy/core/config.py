from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_host: str = "0.0.0.0"
    app_port: int = 8081

    # SQLAlchemy URL. SQLite file by default; any SQLAlchemy-supported database works.
    database_url: str = "sqlite:///quickvoicy.db"

    tg_bot_token: str = ""
    discord_bot_token: str = ""

    # Guards /api/* routes when set (X-Internal-Secret header).
    internal_secret: str = ""

    # Payment monitor: seconds between reconciliation ticks
    poll_interval: int = 30
    payment_monitor_enabled: bool = True
    # Parallel invoice checks within one tick
    monitor_concurrency: int = 5
    # Ceiling for one wallet round-trip per invoice (connect + lookup)
    invoice_check_timeout_sec: float = 45.0

    # Nostr Wallet Connect: timeout for relay connect and each request
    wallet_timeout_sec: float = 15.0

    # Where generated PDFs are written before being sent
    pdf_temp_dir: str = "temp"

    # In-progress chat forms (client name/email) expire after this many seconds
    form_ttl_sec: int = 600

    log_level: str = "INFO"


settings = Settings()
