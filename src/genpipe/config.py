from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://app:devpassword@db:5432/genpipe"
    REDIS_URL: str = "redis://redis:6379/0"

    JWT_SECRET_KEY: str = ""
    JWT_ALGORITHM: str = "HS256"

    # Generation providers
    FAL_API_KEY: str = ""
    FAL_BASE_URL: str = "https://queue.fal.run"
    KIE_API_KEY: str = ""
    KIE_BASE_URL: str = "https://api.kie.ai"
    PROVIDER_HTTP_TIMEOUT: float = 30.0

    # Webhook callbacks are only requested when PUBLIC_BASE_URL and CALLBACK_TOKEN are set
    PUBLIC_BASE_URL: str = ""
    CALLBACK_TOKEN: str = ""

    FCM_SERVER_KEY: str = ""
    FCM_URL: str = "https://fcm.googleapis.com/fcm/send"

    # Post-dispatch poll loop
    POLL_MAX_ATTEMPTS: int = 6
    POLL_BASE_DELAY: float = 2.0
    POLL_MAX_DELAY: float = 30.0

    # Reconciliation sweeper
    SWEEPER_ENABLED: bool = True
    SWEEPER_INTERVAL_SECONDS: int = 60
    SWEEPER_GRACE_SECONDS: int = 90
    SWEEPER_BATCH_SIZE: int = 100

    TIMEOUT_IMAGE_SECONDS: int = 600
    TIMEOUT_TEXT_SECONDS: int = 600
    TIMEOUT_VIDEO_SECONDS: int = 1200
    TIMEOUT_MUSIC_SECONDS: int = 1200

    APP_ENV: str = "development"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def timeout_for_kind(self, kind: str) -> int:
        """Return the forced-timeout age in seconds for a generation kind."""
        return {
            "image": self.TIMEOUT_IMAGE_SECONDS,
            "text": self.TIMEOUT_TEXT_SECONDS,
            "video": self.TIMEOUT_VIDEO_SECONDS,
            "music": self.TIMEOUT_MUSIC_SECONDS,
        }.get(kind, self.TIMEOUT_IMAGE_SECONDS)


settings = Settings()
