"""Application configuration management"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional
from urllib.parse import quote_plus

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode

# Base directory: backend/
_BASE_DIR = Path(__file__).resolve().parent.parent

_INSECURE_SECRETS = {
    "",
    "dev-jwt-secret-change-in-production-use-openssl-rand-hex-32",
    "change-me",
}


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Application
    APP_NAME: str = "NutriClinic Backend"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    SITE_DNS: str = "http://localhost:5173"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # Database (PostgreSQL)
    DATABASE_URL: str = ""
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "nutriclinic_db"
    POSTGRES_USER: str = "nutriclinic"
    POSTGRES_PASSWORD: str = "nutriclinic"
    DATABASE_POOL_SIZE: int = 30
    DATABASE_MAX_OVERFLOW: int = 20

    # Access tokens
    JWT_SECRET: str = "dev-jwt-secret-change-in-production-use-openssl-rand-hex-32"
    JWT_EXPIRATION_SEC: int = 3600
    JWT_PRIVATE_KEY_PEM: str = ""
    JWT_PUBLIC_KEY_PEM: str = ""
    JWT_JWKS_KID: str = "k1"
    JWT_ADDITIONAL_PUBLIC_KEYS: Annotated[Dict[str, str], NoDecode] = {}
    JWT_ACCEPT_HS256: bool = False
    JWT_ISSUER: str = ""
    JWT_AUDIENCE: str = ""

    # Refresh sessions
    REFRESH_TOKEN_EXPIRATION_DAYS: int = 30
    REFRESH_TOKEN_BYTES: int = 64
    REFRESH_SLIDING_EXPIRATION: bool = False

    # Login throttling
    LOGIN_MAX_FAILED_ATTEMPTS: int = 5
    LOGIN_ATTEMPT_WINDOW_SECONDS: int = 900
    LOGIN_LOCKOUT_BASE_SECONDS: int = 300
    LOGIN_LOCKOUT_MAX_SECONDS: int = 3600

    # Email verification / password reset artifacts
    VERIFICATION_TTL_MINUTES: int = 15
    VERIFICATION_CODE_DIGITS: int = 6
    VERIFICATION_MAX_CODE_ATTEMPTS: int = 5
    RESEND_COOLDOWN_SECONDS: int = 60

    # Passwords
    BCRYPT_ROUNDS: int = 12

    # Outbound email
    EMAIL_API_URL: str = "https://api.brevo.com/v3/smtp/email"
    EMAIL_API_KEY: str = ""
    EMAIL_FROM: str = "NutriClinic <no-reply@localhost>"
    EMAIL_REPLY_TO: str = ""
    EMAIL_MAX_RETRIES: int = 3
    EMAIL_TIMEOUT_SECONDS: float = 10.0

    # Accounts
    INITIAL_ADMIN_EMAIL: str = ""
    DEFAULT_PHONE_COUNTRY_CODE: str = "55"

    # Admin listing cache
    ADMIN_USER_LIST_CACHE_TTL_SECONDS: int = 30

    # Maintenance
    MAINTENANCE_INTERVAL_SECONDS: int = 3600

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # CORS
    CORS_ORIGINS: Annotated[List[str], NoDecode] = ["http://localhost:5173"]

    # Database initialization discipline
    DB_INIT_MODE: str = "migrate"  # migrate | create_all | off
    DB_REQUIRE_HEAD: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, value: Any) -> Any:
        """
        Accept JSON array or comma-separated origins from env.

        Examples:
            CORS_ORIGINS=["http://localhost:5173","https://clinic.example.com"]
            CORS_ORIGINS=http://localhost:5173,https://clinic.example.com
        """
        if not isinstance(value, str):
            return value

        raw = value.strip()
        if not raw:
            return []

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None

        if isinstance(parsed, str):
            return [parsed]
        if isinstance(parsed, list):
            return [str(origin).strip() for origin in parsed if str(origin).strip()]

        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    @field_validator("JWT_ADDITIONAL_PUBLIC_KEYS", mode="before")
    @classmethod
    def _parse_additional_keys(cls, value: Any) -> Any:
        """Accept a JSON object mapping kid -> public key PEM."""
        if not isinstance(value, str):
            return value
        raw = value.strip()
        if not raw:
            return {}
        parsed = json.loads(raw)
        if not isinstance(parsed, dict):
            raise ValueError("JWT_ADDITIONAL_PUBLIC_KEYS must be a JSON object")
        return {str(kid): str(pem) for kid, pem in parsed.items()}

    def get_log_file(self) -> str:
        p = self.LOG_FILE
        if not p or p.startswith(".."):
            return str(_BASE_DIR.parent / "logs" / "app.log")
        return p

    def get_database_url(self) -> str:
        """
        Resolve database URL.

        Priority:
          1) Explicit DATABASE_URL
          2) Construct from POSTGRES_* parts with safe URL encoding
        """
        if self.DATABASE_URL:
            return self.DATABASE_URL

        user = quote_plus(self.POSTGRES_USER)
        password = quote_plus(self.POSTGRES_PASSWORD)
        return (
            f"postgresql://{user}:{password}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    def get_token_issuer(self) -> Optional[str]:
        return self.JWT_ISSUER or self.SITE_DNS or None

    def get_token_audience(self) -> Optional[str]:
        return self.JWT_AUDIENCE or self.SITE_DNS or None

    def uses_rsa_signing(self) -> bool:
        return bool(self.JWT_PRIVATE_KEY_PEM)

    def validate_security_settings(self) -> None:
        """
        Validate runtime security defaults in production.

        Raises:
            ValueError: If insecure defaults are detected.
        """
        if self.ENVIRONMENT.lower() != "production":
            return

        hs256_in_use = not self.uses_rsa_signing() or self.JWT_ACCEPT_HS256
        if hs256_in_use and (self.JWT_SECRET in _INSECURE_SECRETS or len(self.JWT_SECRET) < 32):
            raise ValueError(
                "Insecure JWT_SECRET for production. Use a strong key (e.g. `openssl rand -hex 32`) "
                "or configure RS256 keys and set JWT_ACCEPT_HS256=false."
            )

        if self.uses_rsa_signing() and not self.JWT_JWKS_KID:
            raise ValueError("JWT_JWKS_KID is required when RS256 signing is enabled.")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
