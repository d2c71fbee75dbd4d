from enum import StrEnum

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    development = "development"
    production = "production"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: Environment = Environment.development
    LOG_LEVEL: str = "INFO"

    GAMMA_API_URL: str = "https://gamma-api.polymarket.com"
    CLOB_API_URL: str = "https://clob.polymarket.com"

    # Empty SUPABASE_URL selects the in-memory store and change feed
    SUPABASE_URL: str = ""
    SUPABASE_KEY: str = ""
    BETS_TABLE: str = "bets"

    REFRESH_INTERVAL_MS: int = 60_000
    HTTP_TIMEOUT: float = 15.0

    ENABLE_HTTP: bool = True
    HTTP_PORT: int = 8080

    @property
    def is_production(self) -> bool:
        return self.ENV == Environment.production

    @property
    def use_supabase(self) -> bool:
        return bool(self.SUPABASE_URL)


settings = Settings()
