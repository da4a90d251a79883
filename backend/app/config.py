from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_env: str = "development"
    database_url: str = "sqlite:///./credits.db"
    redis_url: str = "redis://localhost:6379/0"

    api_host: str = "0.0.0.0"
    api_port: int = 8000

    internal_api_key: str | None = None
    allow_insecure_dev_auth: bool = False

    cors_origins_raw: str = ""

    # Cron trigger auth: either a bearer secret or basic credentials (cron-job.org style).
    cron_secret: str | None = None
    cron_jobs_username: str | None = None
    cron_jobs_password: str | None = None

    registration_bonus_credits: int = 300

    credit_cost_chat: int = 10
    credit_cost_image: int = 20
    credit_cost_video: int = 50

    # Installment schedule sweep
    schedule_batch_limit: int = 50
    schedule_catch_up_per_schedule: int = 12
    schedule_cron_minute: int = 0

    def cors_origins(self) -> list[str]:
        raw = self.cors_origins_raw.strip()
        if not raw:
            return []
        return [item.strip() for item in raw.split(",") if item.strip()]

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
