import base64
import binascii

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"

    mysql_host: str = "127.0.0.1"
    mysql_port: int = 3306
    mysql_database: str = "kindling"
    mysql_user: str = "kindling"
    mysql_password: str = "change_me_mysql_app"
    database_dsn: str | None = None

    jwt_private_key: str
    jwt_public_key: str
    jwt_issuer: str = "kindling"
    jwt_access_ttl_minutes: int = 15
    jwt_refresh_ttl_days: int = 30

    mfa_encryption_key: str
    recovery_code_pepper: str = Field(min_length=16)
    recovery_code_count: int = 10
    recovery_code_bcrypt_rounds: int = Field(default=10, ge=4, le=16)
    mfa_challenge_ttl_minutes: int = 5
    mfa_challenge_max_attempts: int = 5
    totp_issuer: str = "Kindling"

    password_hash_iterations: int = Field(default=310_000, ge=1_000)

    login_rate_limit: int = 12
    login_rate_window_seconds: int = 600
    mfa_rate_limit: int = 12
    mfa_rate_window_seconds: int = 600
    register_rate_limit: int = 10
    register_rate_window_seconds: int = 3600

    access_cookie_name: str = "kindling_at"
    refresh_cookie_name: str = "kindling_rt"
    csrf_cookie_name: str = "kindling_csrf"
    csrf_header_name: str = "X-CSRF-Token"
    refresh_cookie_path: str = "/api/v1/auth"
    trust_forwarded_for: bool = False

    invite_ttl_days: int = 14
    invite_max_uses_limit: int = 100
    activity_feed_default_limit: int = 20

    @field_validator("mfa_encryption_key")
    @classmethod
    def _check_mfa_encryption_key(cls, value: str) -> str:
        try:
            raw = base64.b64decode(value.strip(), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("mfa_encryption_key must be base64") from exc
        if len(raw) != 32:
            raise ValueError("mfa_encryption_key must decode to exactly 32 bytes")
        return value.strip()

    @property
    def database_url(self) -> str:
        if self.database_dsn:
            return self.database_dsn
        return (
            f"mysql+aiomysql://{self.mysql_user}:{self.mysql_password}"
            f"@{self.mysql_host}:{self.mysql_port}/{self.mysql_database}"
        )

    @property
    def is_production(self) -> bool:
        return self.app_env.strip().lower() == "production"

    @property
    def normalized_jwt_private_key(self) -> str:
        return self.jwt_private_key.replace("\\n", "\n")

    @property
    def normalized_jwt_public_key(self) -> str:
        return self.jwt_public_key.replace("\\n", "\n")

    @property
    def mfa_encryption_key_bytes(self) -> bytes:
        return base64.b64decode(self.mfa_encryption_key)


settings = Settings()
