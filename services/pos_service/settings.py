import os

from pydantic_settings import BaseSettings

from shared.database import build_database_url


class Settings(BaseSettings):
    """Application settings."""

    kafka_bootstrap_servers: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
    redis_host: str = os.getenv("REDIS_HOST", "localhost")
    redis_port: int = int(os.getenv("REDIS_PORT", "6379"))
    postgres_user: str = os.getenv("POSTGRES_USER", "postgres")
    postgres_password: str = os.getenv("POSTGRES_PASSWORD", "postgres")
    postgres_host: str = os.getenv("POSTGRES_HOST", "localhost")
    postgres_port: str = os.getenv("POSTGRES_PORT", "5432")
    postgres_db: str = os.getenv("POSTGRES_DB", "spa_pos")
    pos_service_port: int = int(os.getenv("POS_SERVICE_PORT", "8010"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    business_timezone: str = os.getenv("BUSINESS_TIMEZONE", "Africa/Nairobi")
    mpesa_account_reference: str = os.getenv("MPESA_ACCOUNT_REFERENCE", "SPA-POS")
    # PROCESSING transactions older than this are failed by the expiry worker
    payment_timeout_seconds: int = int(os.getenv("PAYMENT_TIMEOUT_SECONDS", "120"))
    expiry_poll_interval_seconds: int = int(os.getenv("EXPIRY_POLL_INTERVAL_SECONDS", "30"))
    seed_demo_data: bool = os.getenv("SEED_DEMO_DATA", "true").lower() == "true"

    @property
    def database_url(self) -> str:
        return build_database_url(
            self.postgres_user,
            self.postgres_password,
            self.postgres_host,
            self.postgres_port,
            self.postgres_db,
        )
