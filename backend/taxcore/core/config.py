from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):

    model_config = SettingsConfigDict(
        env_file = ".env",
        env_file_encoding = "utf-8"
    )

    # Database
    DATABASE_URL: str = "sqlite:///./taxcore.db"

    # Service
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    # Aggregation
    NUMERIC_TOLERANCE: float = 0.01
    RATE_TOLERANCE: float = 0.0001
    REQUIRED_ASPECTS: List[str] = ["brackets", "formulas"]
    STALE_RUN_MINUTES: int = 30

    # Brackets and formulas
    BRACKET_GAP_TOLERANCE: float = 1
    DEFAULT_BRACKET_BASE: str = "taxable_income"

    # Calculation
    CALCULATION_MAX_MAGNITUDE: float = 1e13
    CALCULATION_TIMEOUT_MS: int = 2000
    CALCULATION_MAX_ATTEMPTS: int = 3
    CALCULATION_BACKOFF_SECONDS: float = 0.1

    # Validation gate
    REQUIRE_TEST_CASES_FOR_VALIDATION: bool = False


settings = Settings()
