"""Configuration management."""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


@dataclass
class DatabaseConfig:
    """Relational store configuration."""
    db_path: str
    timeout_seconds: float = 10.0  # per data-store call


@dataclass
class AuthConfig:
    """Connection credential verification."""
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    app_env: str = "production"
    dev_token: str = "mock-token"
    dev_user_email: str = "test@example.com"

    @property
    def dev_mode(self) -> bool:
        return self.app_env == "development"


@dataclass
class MailConfig:
    """Outbound e-mail (digest channel) configuration."""
    provider: str  # "smtp", "ses" or "disabled"
    from_email: str
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None  # or app-specific password
    smtp_use_ssl: bool = True
    ses_region: str = "us-east-1"
    app_url: str = "http://localhost:3000"
    timeout_seconds: float = 30.0


@dataclass
class SchedulerConfig:
    """Digest job schedule configuration."""
    timezone: str = "UTC"
    morning_digest_hour: int = 7
    lunch_reminder_hour: int = 12
    end_of_day_hour: int = 17
    working_hours_start: int = 9
    working_hours_end: int = 18
    workers: int = 4  # bounded per-user concurrency inside one job run
    user_timeout_seconds: float = 30.0
    run_deadline_seconds: float = 900.0
    meeting_lookahead_minutes: int = 30
    workload_spike_threshold: int = 5


@dataclass
class GatewayConfig:
    """Live connection gateway configuration."""
    host: str = "0.0.0.0"
    port: int = 5000
    send_timeout_seconds: float = 5.0
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])


@dataclass
class AppConfig:
    """Complete application configuration."""
    database: DatabaseConfig
    auth: AuthConfig
    mail: MailConfig
    scheduler: SchedulerConfig
    gateway: GatewayConfig


def _parse_list_env(key: str, default: List[str]) -> List[str]:
    """Parse comma-separated list from environment variable."""
    value = os.getenv(key, "")
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_bool_env(key: str, default: bool) -> bool:
    return os.getenv(key, str(default)).lower() == "true"


def load_config() -> AppConfig:
    """
    Load configuration from environment variables.

    Raises:
        ValueError: If required configuration values are missing or invalid.
    """
    # Database
    db_path = os.getenv("DB_PATH", "collab_notifier.db")
    db_timeout = float(os.getenv("DB_TIMEOUT_SECONDS", "10"))

    # Auth
    jwt_secret = os.getenv("JWT_SECRET")
    jwt_algorithm = os.getenv("JWT_ALGORITHM", "HS256")
    app_env = os.getenv("APP_ENV", "production").lower()
    dev_token = os.getenv("DEV_TOKEN", "mock-token")
    dev_user_email = os.getenv("DEV_USER_EMAIL", "test@example.com")

    # Mail
    mail_provider = os.getenv("MAIL_PROVIDER", "smtp").lower()
    smtp_host = os.getenv("SMTP_HOST")
    smtp_port = int(os.getenv("SMTP_PORT", "587"))
    smtp_username = os.getenv("SMTP_USERNAME")
    smtp_password = os.getenv("SMTP_PASSWORD")
    # Remove spaces from password (app passwords are often shown grouped)
    if smtp_password:
        smtp_password = smtp_password.replace(" ", "")
    smtp_use_ssl = _parse_bool_env("SMTP_USE_SSL", True)
    mail_from = os.getenv("MAIL_FROM") or smtp_username or ""
    ses_region = os.getenv("SES_REGION") or os.getenv("AWS_REGION", "us-east-1")
    app_url = os.getenv("APP_URL", "http://localhost:3000")
    mail_timeout = float(os.getenv("MAIL_TIMEOUT_SECONDS", "30"))

    # Scheduler
    scheduler = SchedulerConfig(
        timezone=os.getenv("SCHEDULER_TIMEZONE", "UTC"),
        morning_digest_hour=int(os.getenv("MORNING_DIGEST_HOUR", "7")),
        lunch_reminder_hour=int(os.getenv("LUNCH_REMINDER_HOUR", "12")),
        end_of_day_hour=int(os.getenv("END_OF_DAY_HOUR", "17")),
        working_hours_start=int(os.getenv("WORKING_HOURS_START", "9")),
        working_hours_end=int(os.getenv("WORKING_HOURS_END", "18")),
        workers=int(os.getenv("DIGEST_WORKERS", "4")),
        user_timeout_seconds=float(os.getenv("USER_TIMEOUT_SECONDS", "30")),
        run_deadline_seconds=float(os.getenv("RUN_DEADLINE_SECONDS", "900")),
        meeting_lookahead_minutes=int(os.getenv("MEETING_LOOKAHEAD_MINUTES", "30")),
        workload_spike_threshold=int(os.getenv("WORKLOAD_SPIKE_THRESHOLD", "5")),
    )

    # Gateway
    gateway = GatewayConfig(
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "5000")),
        send_timeout_seconds=float(os.getenv("SEND_TIMEOUT_SECONDS", "5")),
        cors_origins=_parse_list_env("CORS_ORIGINS", ["http://localhost:3000"]),
    )

    # Validate required fields
    missing = []
    if not jwt_secret:
        missing.append("JWT_SECRET")
    if mail_provider == "smtp":
        if not smtp_host:
            missing.append("SMTP_HOST")
        if not smtp_username:
            missing.append("SMTP_USERNAME")
        if not smtp_password:
            missing.append("SMTP_PASSWORD")
    elif mail_provider == "ses":
        if not mail_from:
            missing.append("MAIL_FROM")
    elif mail_provider != "disabled":
        raise ValueError(
            f"Invalid MAIL_PROVIDER '{mail_provider}' (expected smtp, ses or disabled)"
        )

    if missing:
        raise ValueError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    if not 0 <= scheduler.working_hours_start <= scheduler.working_hours_end <= 23:
        raise ValueError("WORKING_HOURS_START/WORKING_HOURS_END must be hours within 0-23")

    return AppConfig(
        database=DatabaseConfig(
            db_path=db_path,
            timeout_seconds=db_timeout,
        ),
        auth=AuthConfig(
            jwt_secret=jwt_secret,
            jwt_algorithm=jwt_algorithm,
            app_env=app_env,
            dev_token=dev_token,
            dev_user_email=dev_user_email,
        ),
        mail=MailConfig(
            provider=mail_provider,
            from_email=mail_from,
            smtp_host=smtp_host,
            smtp_port=smtp_port,
            smtp_username=smtp_username,
            smtp_password=smtp_password,
            smtp_use_ssl=smtp_use_ssl,
            ses_region=ses_region,
            app_url=app_url,
            timeout_seconds=mail_timeout,
        ),
        scheduler=scheduler,
        gateway=gateway,
    )
