import os
from dotenv import load_dotenv

load_dotenv()


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    FHIR_URL: str = os.getenv("FHIR_URL", "http://localhost:8080/fhir")
    FHIR_USERNAME: str = os.getenv("FHIR_USERNAME", "interop-client")
    FHIR_PASSWORD: str = os.getenv("FHIR_PASSWORD", "interop-password")

    CHT_URL: str = os.getenv("CHT_URL", "https://localhost")
    CHT_USERNAME: str = os.getenv("CHT_USERNAME", "admin")
    CHT_PASSWORD: str = os.getenv("CHT_PASSWORD", "password")

    OPENMRS_URL: str = os.getenv("OPENMRS_URL", "http://localhost:8090/openmrs")
    OPENMRS_USERNAME: str = os.getenv("OPENMRS_USERNAME", "admin")
    OPENMRS_PASSWORD: str = os.getenv("OPENMRS_PASSWORD", "Admin123")

    REQUEST_TIMEOUT_SECONDS: float = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "10"))

    SYNC_MAX_CONCURRENCY: int = int(os.getenv("SYNC_MAX_CONCURRENCY", "4"))
    SYNC_RETRY_ENABLED: bool = _bool(os.getenv("SYNC_RETRY_ENABLED", "false"))
    SYNC_MAX_RETRIES: int = int(os.getenv("SYNC_MAX_RETRIES", "3"))
    SYNC_RETRY_BACKOFF_SECONDS: float = float(os.getenv("SYNC_RETRY_BACKOFF_SECONDS", "1.0"))
    SYNC_LOOKBACK_MINUTES: int = int(os.getenv("SYNC_LOOKBACK_MINUTES", "0"))

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./mediator.db")
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
