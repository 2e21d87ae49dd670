import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, Tuple, Type

from pydantic import Field, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

DEFAULT_CONFIG_FILE = "config.toml"


def is_memory_sqlite(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in database_url


def config_file_path() -> Path:
    """
    Location of the TOML config file. AGGREGATOR_CONFIG overrides the default.
    """
    return Path(os.getenv("AGGREGATOR_CONFIG", DEFAULT_CONFIG_FILE))


class Settings(BaseSettings):
    """
    Process-wide configuration, read once at startup.

    Sources, highest priority first: constructor kwargs, environment,
    .env file, config.toml.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    rpc_url: str = "https://api.mainnet-beta.solana.com"
    retry_attempts: int = Field(default=3, ge=1)
    server_address: str = "127.0.0.1:3000"

    database_url: str = "sqlite:///./solana.db"
    rpc_timeout: float = Field(default=30.0, gt=0, description="Per-request RPC timeout, in seconds.")
    retry_initial_delay: float = Field(default=2.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    cooldown_seconds: float = Field(
        default=5.0, ge=0, description="Pause before retrying a slot whose fetch or commit failed."
    )
    poll_interval: float = Field(
        default=1.0, ge=0, description="Pause while the walker waits at the finalized chain tip."
    )
    ingest_on_startup: bool = True

    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "json"

    @field_validator("server_address")
    @classmethod
    def _check_server_address(cls, value: str) -> str:
        host, sep, port = value.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError(f"server_address must look like host:port, got {value!r}")
        return value

    @model_validator(mode="after")
    def _check_ingest_database(self) -> "Settings":
        # An in-memory SQLite database is a single shared connection, so API
        # reads would run inside the walker's open slot transaction.
        if self.ingest_on_startup and is_memory_sqlite(self.database_url):
            raise ValueError("ingest_on_startup needs a file-backed database, not in-memory SQLite")
        return self

    @property
    def server_host(self) -> str:
        return self.server_address.rpartition(":")[0]

    @property
    def server_port(self) -> int:
        return int(self.server_address.rpartition(":")[2])

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=config_file_path()),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
