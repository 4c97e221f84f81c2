from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./pantry_scanner.db"

    # JWT - MUST be set in .env file, no insecure default
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 43200  # 30 days

    # CORS
    FRONTEND_URL: str = "http://localhost:3000"

    # Environment
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # OpenAI API Key (for receipt vision extraction)
    OPENAI_API_KEY: Optional[str] = None
    VISION_MODEL: str = "gpt-4o"
    VISION_MAX_TOKENS: int = 4096
    VISION_TEMPERATURE: float = 0.1
    VISION_TIMEOUT_SECONDS: float = 120.0

    # Cost accounting, USD per 1M tokens
    INPUT_COST_PER_MILLION: float = 2.50
    OUTPUT_COST_PER_MILLION: float = 10.00

    # Extraction pipeline
    CHUNKING_ENABLED: bool = True
    CHUNKING_MIN_ITEMS: int = 30  # Single-pass recall degrades past ~30 lines
    CHUNK_SIZE_ITEMS: int = 15
    CHUNK_OVERLAP_PERCENT: float = 0.15
    CHUNK_MATCH_THRESHOLD: float = 0.75
    VERIFICATION_ENABLED: bool = True
    OCR_ENABLED: bool = False
    CONSOLIDATE_EXACT_REPEATS: bool = True

    # Correction learning
    LEARNING_VENDOR_LIMIT: int = 10
    LEARNING_GENERAL_LIMIT: int = 5
    VENDOR_MATCH_THRESHOLD: float = 0.8

    # Uploads
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024  # 10MB

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    SCAN_RATE_LIMIT: str = "20/minute"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore any extra env vars not defined here


settings = Settings()
