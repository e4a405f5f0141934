"""Configuration for the session daemon."""

from __future__ import annotations

import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Annotated, Any, Literal, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_HOME = Path("~/.agent-browser")
DEFAULT_MCP_ARGS = ["@playwright/mcp@latest", "--extension"]


class DaemonSettings(BaseSettings):
    """Environment-driven settings consumed by the daemon and the CLI."""

    model_config = SettingsConfigDict(
        env_prefix="AGENT_BROWSER_",
        env_file=(".env",),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    session: str = Field(default="default")
    home: Path = Field(default=DEFAULT_HOME)
    headed: bool = False
    executable_path: Optional[str] = None
    args: Annotated[list[str], NoDecode] = Field(default_factory=list)
    extensions: Annotated[list[str], NoDecode] = Field(default_factory=list)
    profile: Optional[str] = None
    ignore_https_errors: bool = False
    user_agent: Optional[str] = None
    state: Optional[Path] = Field(
        default=None,
        description="Explicit path for the persisted auth state file.",
    )
    persist: bool = False
    stream_port: int = Field(default=0, ge=0, le=65535)
    stream_host: str = "127.0.0.1"
    backend: Literal["native", "playwright-mcp"] = "native"
    mcp_command: str = Field(
        default="npx",
        validation_alias=AliasChoices(
            "mcp_command", "PLAYWRIGHT_MCP_COMMAND", "AGENT_BROWSER_MCP_COMMAND"
        ),
    )
    mcp_args: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_MCP_ARGS),
        validation_alias=AliasChoices("mcp_args", "PLAYWRIGHT_MCP_ARGS", "AGENT_BROWSER_MCP_ARGS"),
    )
    mcp_timeout: float = Field(default=60.0, gt=0)
    use_tcp: bool = Field(default_factory=lambda: sys.platform == "win32")
    shutdown_grace: float = Field(
        default=0.1,
        ge=0,
        description="Delay (in seconds) between answering close and exiting.",
    )

    @field_validator("args", "extensions", mode="before")
    @classmethod
    def _split_commas(cls, value: object) -> object:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("mcp_args", mode="before")
    @classmethod
    def _split_spaces(cls, value: object) -> object:
        if isinstance(value, str):
            return value.split()
        return value

    @field_validator("home", "state", mode="after")
    @classmethod
    def _expand_user(cls, value: Optional[Path]) -> Optional[Path]:
        if value is None:
            return None
        return value.expanduser()


def load_settings(
    path: Path | None = None,
    *,
    env_file: Path | None = None,
    **overrides: object,
) -> DaemonSettings:
    """Load settings from the environment, an optional YAML file and overrides."""

    data: dict[str, Any] = {}
    if path:
        import yaml

        data = yaml.safe_load(path.read_text()) or {}
    if overrides:
        _deep_update(data, {key: value for key, value in overrides.items() if value is not None})
    settings_kwargs: dict[str, object] = {}
    if env_file is not None:
        settings_kwargs["_env_file"] = env_file
    settings = DaemonSettings(**settings_kwargs)
    if not data:
        return settings

    merged = settings.model_dump(mode="python")
    _deep_update(merged, data)
    return DaemonSettings.model_validate(merged)


def _deep_update(target: dict[str, Any], updates: Mapping[str, Any]) -> None:
    """Recursively merge ``updates`` into ``target`` in-place."""

    for key, value in updates.items():
        if (
            isinstance(value, Mapping)
            and isinstance(existing := target.get(key), Mapping)
        ):
            nested: dict[str, Any]
            if isinstance(existing, dict):
                nested = existing
            else:
                nested = dict(existing)
            _deep_update(nested, value)
            target[key] = nested
        else:
            target[key] = value
