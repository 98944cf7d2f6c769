"""
Configuration settings for the upload server and client
"""
import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    """Application settings"""

    # AWS S3 / MinIO
    AWS_ACCESS_KEY: str = os.getenv("AWS_ACCESS_KEY", "")
    AWS_SECRET_KEY: str = os.getenv("AWS_SECRET_KEY", "")
    AWS_REGION: str = os.getenv("AWS_REGION", "us-east-1")
    S3_ENDPOINT_URL: str = os.getenv("S3_ENDPOINT_URL", "") or None
    BUCKET_NAME: str = os.getenv("BUCKET_NAME", "chunkvault")

    # Redis
    REDIS_HOST: str = os.getenv("REDIS_HOST", "redis")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_PASSWORD: str = os.getenv("REDIS_PASSWORD", "")
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))

    # Upload protocol
    CHUNK_SIZE: int = int(os.getenv("CHUNK_SIZE", str(2 * 1024 * 1024)))
    MAX_FILE_SIZE: int = int(os.getenv("MAX_FILE_SIZE", str(50 * 1024 * 1024 * 1024)))
    SESSION_TTL_SECONDS: int = int(os.getenv("SESSION_TTL_SECONDS", str(24 * 60 * 60)))
    COMPLETED_SESSION_TTL_SECONDS: int = int(os.getenv("COMPLETED_SESSION_TTL_SECONDS", "3600"))
    CREDENTIAL_TTL_SECONDS: int = int(os.getenv("CREDENTIAL_TTL_SECONDS", "3600"))
    COMPLETION_LOCK_SECONDS: int = int(os.getenv("COMPLETION_LOCK_SECONDS", "300"))

    # Cleanup (every 6 hours)
    CLEANUP_INTERVAL_SECONDS: int = int(os.getenv("CLEANUP_INTERVAL_SECONDS", str(6 * 60 * 60)))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Client
    API_BASE_URL: str = os.getenv("API_BASE_URL", "http://localhost:8000")
    REQUEST_TIMEOUT: float = float(os.getenv("REQUEST_TIMEOUT", "30"))

    # Application
    APP_TITLE: str = "Chunked Upload Service"
    APP_VERSION: str = "1.0.0"


settings = Settings()
