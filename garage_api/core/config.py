import os
from enum import Enum
from functools import lru_cache
from typing import List, Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, EnvSettingsSource, SettingsConfigDict, PydanticBaseSettingsSource


class StorageMode(str, Enum):
    HYBRID = "hybrid"  # MongoDB first, local JSON file as fallback
    LOCAL = "local"  # local JSON file only
    REMOTE = "remote"  # MongoDB only, startup fails without it


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(".env.production", ".env"),
        case_sensitive=False,
        extra="allow",
    )

    port: int = int(os.getenv("PORT", 5000))
    api_prefix: str = "/api"
    log_level: str = "INFO"

    # Persistence
    storage_mode: StorageMode = StorageMode.HYBRID
    data_file: str = "data.json"
    strict_validation: bool = True

    # MongoDB
    mongodb_uri: Optional[str] = None
    mongodb_db: str = "garage"
    connect_timeout_seconds: float = 5.0
    operation_timeout_seconds: float = 3.0
    remote_failure_threshold: int = 3
    reconnect_interval_seconds: float = 30.0

    # CORS
    cors_origins: List[str] = ["*"]

    @model_validator(mode="after")
    def _check_storage_mode(self) -> "Settings":
        if self.storage_mode is not StorageMode.LOCAL and not self.mongodb_uri:
            raise ValueError(
                f"MONGODB_URI is required when STORAGE_MODE is '{self.storage_mode.value}'. "
                "Set STORAGE_MODE=local to run on the local data file only."
            )
        if self.connect_timeout_seconds <= 0 or self.operation_timeout_seconds <= 0:
            raise ValueError("MongoDB timeouts must be positive")
        return self

    def safe_mongodb_uri(self) -> str:
        """Connection string with the password masked, for logging."""
        if not self.mongodb_uri:
            return "-"
        try:
            scheme, rest = self.mongodb_uri.split("://", 1)
            credentials, host = rest.rsplit("@", 1)
            user = credentials.split(":", 1)[0]
            return f"{scheme}://{user}:****@{host}"
        except ValueError:
            return self.mongodb_uri.split("?", 1)[0]

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customize settings sources to parse CORS origins from comma-separated string."""

        class CustomEnvSettings(EnvSettingsSource):
            def prepare_field_value(self, field_name, field, value, value_is_complex):
                # Parse cors_origins if it's a comma-separated string
                if field_name == "cors_origins" and isinstance(value, str) and not value.lstrip().startswith("["):
                    return [v.strip() for v in value.split(",") if v.strip()]

                return super().prepare_field_value(field_name, field, value, value_is_complex)

        return (
            init_settings,
            CustomEnvSettings(settings_cls),
            dotenv_settings,
            file_secret_settings,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
