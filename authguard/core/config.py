# authguard/core/config.py

from typing import List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    PROJECT_NAME: str = "Account Guard"
    LOG_LEVEL: str = "INFO"

    # MongoDB Config
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB_NAME: str = "account_guard"

    # Redis (rate limit counters)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Tokens
    SECRET_KEY: str = "change-me-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    # 32 bytes hex, e.g. `openssl rand -hex 32`
    LINK_TOKEN_SECRET: str = "0" * 64
    # Shared with the OAuth bridge that signs identity assertions
    IDENTITY_ASSERTION_SECRET: str = "change-me-too"

    # Email (Resend)
    RESEND_API_KEY: Optional[str] = None
    EMAIL_FROM: str = "Account Guard <no-reply@example.com>"

    # SMS (Twilio)
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_FROM_NUMBER: Optional[str] = None

    SITE_URL: str = "http://localhost:3000"
    API_URL: str = "http://localhost:8000"
    COOKIE_SECURE: bool = False
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

    SENSITIVE_ACTION_GRACE_PERIOD_MINUTES: Optional[int] = None

    class Config:
        env_file = ".env"


settings = Settings()


# ---------------------------------------------------------------------------
# AUTH CONFIG
# Built once at startup and handed to the scorer, gate and services.
# ---------------------------------------------------------------------------

class _Frozen(BaseModel):
    class Config:
        frozen = True


class DeviceVerificationConfig(_Frozen):
    code_expiration_minutes: int = 10
    code_length: int = 6


class DeviceSessionsConfig(_Frozen):
    # Matches the lifetime of the platform's refresh token
    max_age_days: int = 365


class DeviceTrustConfig(_Frozen):
    trust_threshold: int = 70
    medium_threshold: int = 40


class TwoFactorMethodsConfig(_Frozen):
    authenticator: bool = True
    sms: bool = False
    backup_codes: bool = True


class TwoFactorConfig(_Frozen):
    # Feature flag for the app, not the user's preference
    enabled: bool = True
    methods: TwoFactorMethodsConfig = TwoFactorMethodsConfig()
    issuer: str = "Account Guard"


class BackupCodesConfig(_Frozen):
    format: Literal["numeric", "alphanumeric"] = "numeric"
    count: int = 8
    alphanumeric_length: int = 10


class VerificationMethodsConfig(_Frozen):
    password: bool = True
    email: bool = True


class FreshVerificationConfig(_Frozen):
    change_password: bool = True
    change_email: bool = True
    delete_account: bool = True
    disable_two_factor: bool = True
    device_logout: bool = True
    trust_device: bool = True
    connect_provider: bool = False
    disconnect_provider: bool = True


class SensitiveActionsConfig(_Frozen):
    grace_period_minutes: int = 10
    require_fresh_verification: FreshVerificationConfig = FreshVerificationConfig()


class PasswordResetConfig(_Frozen):
    # User already proved mailbox ownership, so no relogin by default
    require_relogin_after_reset: bool = False
    link_max_age_minutes: int = 60


class PasswordRequirementsConfig(_Frozen):
    min_length: int = 8
    max_length: int = 72
    require_lowercase: bool = True
    require_uppercase: bool = True
    require_numbers: bool = True
    require_symbols: bool = True


class EmailAlertsConfig(_Frozen):
    enabled: bool = True
    alert_mode: Literal["all", "unknown_only", "none"] = "unknown_only"
    confidence_threshold: int = 70
    alert_on_device_revoke: bool = True
    alert_on_provider_connect: bool = True
    alert_on_provider_disconnect: bool = True
    alert_on_two_factor_disable: bool = True
    alert_on_password_change: bool = True
    alert_on_email_change: bool = True
    alert_on_account_delete: bool = True


class DataExportConfig(_Frozen):
    enabled: bool = True
    download_expiration_hours: int = 24


class RateLimitTier(_Frozen):
    limit: int
    window_seconds: int


class RateLimitConfig(_Frozen):
    enabled: bool = True
    auth: RateLimitTier = RateLimitTier(limit=10, window_seconds=10)
    api: RateLimitTier = RateLimitTier(limit=100, window_seconds=60)
    basic: RateLimitTier = RateLimitTier(limit=1000, window_seconds=60)
    sms_ip: RateLimitTier = RateLimitTier(limit=5, window_seconds=60 * 60)
    sms_user: RateLimitTier = RateLimitTier(limit=10, window_seconds=60 * 60 * 24)
    data_export: RateLimitTier = RateLimitTier(limit=3, window_seconds=60 * 60 * 24)


class AuthConfig(_Frozen):
    device_verification: DeviceVerificationConfig = DeviceVerificationConfig()
    device_sessions: DeviceSessionsConfig = DeviceSessionsConfig()
    device_trust: DeviceTrustConfig = DeviceTrustConfig()
    two_factor: TwoFactorConfig = TwoFactorConfig()
    backup_codes: BackupCodesConfig = BackupCodesConfig()
    verification_methods: VerificationMethodsConfig = VerificationMethodsConfig()
    sensitive_actions: SensitiveActionsConfig = SensitiveActionsConfig()
    password_reset: PasswordResetConfig = PasswordResetConfig()
    password_requirements: PasswordRequirementsConfig = PasswordRequirementsConfig()
    email_alerts: EmailAlertsConfig = EmailAlertsConfig()
    data_export: DataExportConfig = DataExportConfig()
    rate_limits: RateLimitConfig = Field(default_factory=RateLimitConfig)


def build_auth_config(source: Settings = settings) -> AuthConfig:
    """Build the auth config, applying env overrides from Settings."""
    config = AuthConfig()
    if source.SENSITIVE_ACTION_GRACE_PERIOD_MINUTES is not None:
        sensitive = config.sensitive_actions.model_copy(
            update={"grace_period_minutes": source.SENSITIVE_ACTION_GRACE_PERIOD_MINUTES}
        )
        config = config.model_copy(update={"sensitive_actions": sensitive})
    return config
