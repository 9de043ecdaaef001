"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (NOTIONPROXY__UPSTREAM__ROOT_URL=https://...)
  2. notionproxy.yaml       (searched in cwd, then platform config dir)
  3. Hardcoded defaults

The config file is optional; every field has a default.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_DATA_DIR = platformdirs.user_data_dir("notionproxy")
_DEFAULT_DB_PATH = str(Path(_DEFAULT_DATA_DIR) / "notionproxy.db")


def _find_config_file() -> str | None:
    """Return the path of the first notionproxy.yaml found, or None."""
    candidates = [
        Path("notionproxy.yaml"),
        Path(platformdirs.user_config_dir("notionproxy")) / "notionproxy.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000
    # Used to build absolute proxy URLs; derived from the request when unset.
    public_base_url: str = ""
    admin_key: str = ""


class SeedPage(BaseModel):
    """A page registered at startup."""

    url: str
    id: str | None = None
    path: str | None = None


class UpstreamSettings(BaseModel):
    base_url: str = "https://www.notion.so"
    page_domains: list[str] = ["notion.so", "notion.site"]
    cdn_host_suffixes: list[str] = [
        "amazonaws.com",
        "notion-static.com",
        "notionusercontent.com",
        "cloudfront.net",
        "unsplash.com",
    ]
    root_url: str = ""
    pages: list[str | SeedPage] = []
    auto_discover_links: bool = False
    timeout_seconds: float = 30.0

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    def seed_pages(self) -> list[SeedPage]:
        return [SeedPage(url=p) if isinstance(p, str) else p for p in self.pages]


class StoreSettings(BaseModel):
    # Disabled or unreachable store → in-memory fallback for the process lifetime
    enabled: bool = True
    db_path: str = _DEFAULT_DB_PATH


class HeadSettings(BaseModel):
    global_snippets: list[str] = []
    # Keyed by mapping id or mapping path
    page_snippets: dict[str, list[str]] = {}


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: NOTIONPROXY__SERVER__PORT=9090
        env_prefix="NOTIONPROXY__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    server: ServerSettings = ServerSettings()
    upstream: UpstreamSettings = UpstreamSettings()
    store: StoreSettings = StoreSettings()
    head: HeadSettings = HeadSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
            # dotenv and file secrets intentionally excluded
        )
