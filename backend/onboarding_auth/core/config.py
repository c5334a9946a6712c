import os
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


def _get_version() -> str:
    """Read version from pyproject.toml or environment variable."""
    if env_version := os.getenv("ONBOARDING_AUTH_VERSION"):
        return env_version

    try:
        pyproject_path = Path(__file__).parent.parent.parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            content = pyproject_path.read_text()
            for line in content.split("\n"):
                if line.startswith("version"):
                    # Parse: version = "0.1.0"
                    return line.split("=")[1].strip().strip('"').strip("'")
    except OSError:
        pass

    return "0.0.0-dev"


APP_VERSION = _get_version()


class Settings(BaseSettings):
    # Database
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "portal"
    POSTGRES_PASSWORD: str = "devpassword"
    POSTGRES_DB: str = "portal"

    @property
    def DATABASE_URL(self) -> str:
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # App
    APP_NAME: str = "Onboarding Portal Auth"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    # Create missing tables on startup (no migration tool)
    DATABASE_AUTO_CREATE: bool = True

    # Shown in authenticator apps next to the account label
    MFA_ISSUER: str = "Secure2Send Enterprise"

    # New registrations must enrol a second factor before using the portal
    MFA_REQUIRED_FOR_NEW_ACCOUNTS: bool = True

    # Login lockout (per email + origin)
    LOCKOUT_MAX_ATTEMPTS: int = 5
    LOCKOUT_MINUTES: int = 60

    # TOTP
    TOTP_VALID_WINDOW: int = 1  # steps of 30s either side of now
    BACKUP_CODE_COUNT: int = 10

    # Email OTP
    EMAIL_OTP_LENGTH: int = 6
    EMAIL_OTP_EXPIRY_MINUTES: int = 10
    EMAIL_OTP_MAX_ATTEMPTS: int = 5
    EMAIL_OTP_RATE_LIMIT_MAX_SENDS: int = 5
    EMAIL_OTP_RATE_LIMIT_WINDOW_MINUTES: int = 60

    # Hashing cost. Argon2 memory cost is in KiB.
    ARGON2_TIME_COST: int = 3
    ARGON2_MEMORY_COST: int = 65536
    ARGON2_PARALLELISM: int = 4
    CODE_HASH_ROUNDS: int = 12

    # Outbound email
    EMAIL_PROVIDER: str = "log"  # "log" or "mailgun"
    MAILGUN_API_KEY: str | None = None
    MAILGUN_DOMAIN: str | None = None
    MAILGUN_BASE_URL: str = "https://api.mailgun.net"
    MAILGUN_FROM_EMAIL: str = "Secure2Send <noreply@example.com>"
    NOTIFICATION_TIMEOUT_SECONDS: float = 10.0

    @field_validator(
        "LOCKOUT_MAX_ATTEMPTS",
        "LOCKOUT_MINUTES",
        "BACKUP_CODE_COUNT",
        "EMAIL_OTP_EXPIRY_MINUTES",
        "EMAIL_OTP_MAX_ATTEMPTS",
        "EMAIL_OTP_RATE_LIMIT_MAX_SENDS",
        "EMAIL_OTP_RATE_LIMIT_WINDOW_MINUTES",
    )
    @classmethod
    def validate_positive(cls, v: int, info) -> int:
        if v < 1:
            raise ValueError(f"{info.field_name} must be at least 1")
        return v

    @field_validator("EMAIL_OTP_LENGTH")
    @classmethod
    def validate_otp_length(cls, v: int) -> int:
        # Shorter codes make the attempt cap meaningless
        if not 6 <= v <= 10:
            raise ValueError("EMAIL_OTP_LENGTH must be between 6 and 10 digits")
        return v

    @field_validator("CODE_HASH_ROUNDS")
    @classmethod
    def validate_code_hash_rounds(cls, v: int) -> int:
        if not 4 <= v <= 31:
            raise ValueError("CODE_HASH_ROUNDS must be between 4 and 31 (bcrypt cost)")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown LOG_LEVEL: {v}")
        return level

    @model_validator(mode="after")
    def validate_email_provider(self) -> "Settings":
        if self.EMAIL_PROVIDER not in ("log", "mailgun"):
            raise ValueError(f"Unknown EMAIL_PROVIDER: {self.EMAIL_PROVIDER}")
        if self.EMAIL_PROVIDER == "mailgun" and not (self.MAILGUN_API_KEY and self.MAILGUN_DOMAIN):
            raise ValueError("EMAIL_PROVIDER=mailgun requires MAILGUN_API_KEY and MAILGUN_DOMAIN")
        return self

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
