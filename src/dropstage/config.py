"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Settings live in dropstage.toml. Environment variables override it using the
``DROPSTAGE_`` prefix and ``__`` as the nested delimiter (e.g.
``DROPSTAGE_ENGINE__HOST=tcp://127.0.0.1:2375``).

Priority (highest wins): init args > env vars > .env > dropstage.toml

Usage::

    from dropstage.config import get_settings

    s = get_settings()
    print(s.stager.image)
    print(s.engine.host)
"""

from __future__ import annotations

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in dropstage.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models: reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class StagerConfig(_StrictModel):
    """Pinned versions of the components baked into the staging image."""

    diego_version: str = "1.10.1"
    go_version: str = "1.8.3"
    stack_version: str = "latest"
    update_rootfs: bool = False  # pull the newest base layer on every build
    image: str = "cflocal"


class EngineConfig(_StrictModel):
    host: str = "unix:///var/run/docker.sock"  # or tcp://host:port
    api_version: str | None = None  # e.g. "1.41"; None = daemon default
    connect_timeout: float = 30.0

    @field_validator("host")
    @classmethod
    def check_scheme(cls, v: str) -> str:
        if not v.startswith(("unix://", "tcp://", "http://")):
            raise ValueError(f"unsupported engine host: {v!r}")
        return v


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="dropstage.toml",
        env_file=".env",
        env_prefix="DROPSTAGE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    stager: StagerConfig = StagerConfig()
    engine: EngineConfig = EngineConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > dropstage.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
