from __future__ import annotations

import functools

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class RevenueCatProduct(BaseModel):
    plan_code: str
    billing_cycle: str = "monthly"


@functools.lru_cache(maxsize=1)
def _ephemeral_jwt_keypair() -> tuple[str, str]:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return private_pem, public_pem


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
    frontend_base_url: str = "http://localhost:3000"

    mysql_host: str = "127.0.0.1"
    mysql_port: int = 3306
    mysql_database: str = "passwall"
    mysql_user: str = "passwall"
    mysql_password: str = "change_me_mysql_app"

    jwt_issuer: str = "passwall"
    jwt_private_key: str = ""
    jwt_public_key: str = ""
    jwt_access_ttl_minutes: int = 15

    encryption_passphrase: str = "change_me_encryption_passphrase"

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_timeout_seconds: float = 10.0
    stripe_prices: dict[str, str] = {}

    revenuecat_webhook_secret: str = ""
    revenuecat_products: dict[str, RevenueCatProduct] = {}

    subscription_grace_period_days: int = 14
    subscription_check_interval_hours: float = 6.0
    subscription_worker_enabled: bool = True
    manual_expiry_warning_days: int = 7
    seat_plan_codes: list[str] = ["family", "team", "business"]

    mail_from_address: str = "no-reply@passwall.io"
    mail_from_name: str = "Passwall"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_timeout_seconds: float = 15.0
    bulk_email_batch_size: int = 10
    bulk_email_batch_delay_seconds: float = 1.1
    bulk_email_max_attempts: int = 3
    bulk_email_initial_backoff_seconds: float = 0.7
    bulk_email_job_retention_seconds: float = 86400

    @property
    def database_url(self) -> str:
        return (
            f"mysql+aiomysql://{self.mysql_user}:{self.mysql_password}"
            f"@{self.mysql_host}:{self.mysql_port}/{self.mysql_database}"
        )

    @property
    def normalized_jwt_private_key(self) -> str:
        if self.jwt_private_key.strip():
            return self.jwt_private_key.replace("\\n", "\n")
        return _ephemeral_jwt_keypair()[0]

    @property
    def normalized_jwt_public_key(self) -> str:
        if self.jwt_public_key.strip():
            return self.jwt_public_key.replace("\\n", "\n")
        return _ephemeral_jwt_keypair()[1]


settings = Settings()
