"""Configuration settings for SlippiSheet."""

import re
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from src.core.errors import ConfigurationError

USER_CONFIG_FILE = Path("user-config.json")
CONNECT_CODE_PATTERN = re.compile(r"^[A-Z0-9]{4,}#[0-9]{1,3}$")
DEFAULT_API_URL = "https://gql-gateway-2-dot-slippi.uc.r.appspot.com/graphql"


class Settings(BaseSettings):
    """Application settings with environment variable support.

    Values are read, in order of precedence, from constructor arguments,
    ``SLIPPI_*`` environment variables, ``.env`` and ``user-config.json``.
    The instance is immutable; components receive the values they need at
    construction time instead of holding on to it.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SLIPPI_",
        json_file=USER_CONFIG_FILE,
        json_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Replay directory (one YYYY-MM subfolder per month)
    replay_dir: Path = Field(default_factory=lambda: Path.home() / "Documents" / "Slippi")
    artifact_extension: str = ".slp"

    # Live stream (Dolphin relay)
    use_live_stream: bool = True
    dolphin_host: str = "127.0.0.1"
    dolphin_port: int = 51441
    connect_timeout: float = 5.0
    reconnect_attempts: int = 3

    # Polling strategy
    poll_interval: float = 5.0
    unchanged_poll_threshold: int = 3
    session_ceiling: float = 30 * 60
    recent_window: float = 5 * 60

    # Dual-watch strategy
    stabilization_window: float = 2.0
    stabilization_poll_interval: float = 0.1

    # Post-game settle delay before querying the rating
    settle_delay: float = 5.0

    # Rating API
    connect_code: str | None = None
    api_url: str = DEFAULT_API_URL
    api_timeout: float = 30.0

    # Record keeping
    record_backend: Literal["ledger", "sheets"] = "ledger"
    ledger_path: Path = Field(default_factory=lambda: Path("data") / "ratings.jsonl")
    spreadsheet_id: str | None = None
    sheet_name: str = "Sheet1"
    sheets_access_token: str | None = None

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "console"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("connect_code")
    @classmethod
    def _normalize_connect_code(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip().upper()

    @field_validator("artifact_extension")
    @classmethod
    def _normalize_extension(cls, value: str) -> str:
        value = value.strip().lower()
        return value if value.startswith(".") else f".{value}"

    def validate_required(self) -> None:
        """Raise ConfigurationError if anything needed to run is missing or malformed."""
        if not self.connect_code:
            raise ConfigurationError(
                'Connect code not configured. Run "slippi-sheet setup" first.'
            )
        if not is_valid_connect_code(self.connect_code):
            raise ConfigurationError(
                f'Invalid connect code format: "{self.connect_code}". Expected format: ABCD#123'
            )
        if self.record_backend == "sheets":
            if not self.spreadsheet_id:
                raise ConfigurationError(
                    "Spreadsheet ID not configured. Please check your configuration."
                )
            if not self.sheets_access_token:
                raise ConfigurationError(
                    "Sheets access token not configured (SLIPPI_SHEETS_ACCESS_TOKEN)."
                )


def is_valid_connect_code(code: str) -> bool:
    return bool(CONNECT_CODE_PATTERN.match(code.strip().upper()))


settings = Settings()
