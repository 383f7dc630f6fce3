# Central place for all configurable settings. We use Pydantic's
# BaseSettings so values can be read from env vars or a .env file.
# Runtime overrides for the tenancy policy go through
# tenant_isolation.tenancy.registry.configure() at startup.

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # DB connection string used by the optional session helpers in core.db.
    # Host applications that build their own engine can ignore it.
    DATABASE_URL: str = "sqlite:///./tenant_isolation.db"

    # Toggle SQLAlchemy echo logs. Useful for debugging injected filters.
    DB_ECHO: bool = False

    # Tenancy: what happens when a scoped model is touched with no tenant.
    # False keeps the legacy fail-open behaviour (unfiltered reads).
    # True rejects the operation with NoTenantSet (fail-closed).
    REQUIRE_TENANT: bool = False

    # Discriminator column defaults to "<tenant association><suffix>",
    # e.g. "account" + "_id" -> "account_id".
    TENANT_DISCRIMINATOR_SUFFIX: str = "_id"

    # Attribute on the tenant object holding its identity value.
    TENANT_KEY: str = "id"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    @field_validator("TENANT_DISCRIMINATOR_SUFFIX", "TENANT_KEY")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be blank")
        return value.strip()

    @field_validator("LOG_LEVEL")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()


# Instantiate a single settings object for package-wide import.
# Any module can just `from tenant_isolation.core.config import settings`.
settings = Settings()
