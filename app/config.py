from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    secret_key: str = "dev-secret-change-me"
    database_path: str = "data/schoolchat.db"

    # JWT settings
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24 * 7  # 7 days
    session_store_check: bool = False

    cookie_name: str = "auth-token"
    cookie_secure: bool = False

    # Rate limiting
    rate_limit_backend: str = "memory"
    rate_limit_grace_seconds: int = 60
    login_max_attempts: int = 5
    login_window_seconds: int = 15 * 60
    message_max_attempts: int = 30
    message_window_seconds: int = 60
    sandbox_start_max_attempts: int = 10
    sandbox_start_window_seconds: int = 60 * 60
    flag_submit_max_attempts: int = 20
    flag_submit_window_seconds: int = 60
    redis_url: str = "redis://localhost:6379/0"

    # MFA
    mfa_issuer: str = "SchoolChat Security"
    mfa_backup_code_count: int = 10
    totp_drift_steps: int = 1

    # Sandbox
    sandbox_base_url: str = "https://sandbox.localhost"
    sandbox_use_docker: bool = False
    sandbox_sweep_seconds: int = 60

    high_risk_threshold: int = 70

    class Config:
        env_file = ".env"


settings = Settings()

# Ensure data directory exists
Path(settings.database_path).parent.mkdir(parents=True, exist_ok=True)
