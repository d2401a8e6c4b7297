from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_env: str = "local"
    app_host: str = "0.0.0.0"
    app_port: int = 8080
    log_level: str = "INFO"

    admin_token: str = "change-me"

    postgres_host: str = "postgres"
    postgres_port: int = 5432
    postgres_db: str = "keygate"
    postgres_user: str = "keygate"
    postgres_password: str = "keygate"

    # full SQLAlchemy URL; wins over the postgres_* parts when set
    database_url: str | None = None

    redis_host: str = "redis"
    redis_port: int = 6379
    redis_db: int = 0

    # "redis" shares windows across instances, "memory" is per-process
    rate_limit_backend: str = "redis"
    default_rate_window: int = 60

    key_secret_prefix: str = "kg_"

    storage_timeout_seconds: float = 2.0
    expiry_sweep_interval_seconds: int = 300

    trust_forwarded_for: bool = False

    @property
    def postgres_dsn(self) -> str:
        if self.database_url:
            return self.database_url
        # asyncpg DSN
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def redis_url(self) -> str:
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"


settings = Settings()  # reads from environment
