from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "PartnerMatch"
    ENVIRONMENT: str = "development"  # "development", "staging" or "production"

    # Database (circuit state persistence)
    DATABASE_URL: str = "sqlite:///./partnermatch.db"
    CIRCUIT_STATE_PERSIST: bool = False  # Share circuit state through the database

    # Sentry error tracking (disabled when DSN is empty)
    SENTRY_DSN: str = ""
    SENTRY_TRACES_SAMPLE_RATE: float = 0.1

    # Signal scoring
    SIGNAL_TIMEOUT_SECONDS: float = 30.0  # Max wait for all providers of one company
    SIGNAL_BATCH_SIZE: int = 5  # Companies scored concurrently per batch
    SIGNAL_BATCH_DELAY_SECONDS: float = 0.5  # Pause between batches (provider rate limits)

    # Outbound HTTP
    HTTP_TIMEOUT_SECONDS: float = 30.0

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


settings = Settings()
