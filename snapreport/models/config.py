"""Configuration models for snapreport."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

DEFAULT_CONFIG_FILE = "snapreport.config.json"


class ConfigurationError(ValueError):
    """Raised when configuration is invalid for the requested operation."""


class TargetConfig(BaseModel):
    """A remote browser target. Serialized to the remote service in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    browser_type: str = Field(alias="type")
    viewport: str = "1024x768"
    chunks: int = Field(default=1, ge=1)
    max_height: Optional[int] = None
    max_width: Optional[int] = None
    hide_behavior: Optional[Literal["ignore"]] = None
    apply_pseudo_classes: Optional[bool] = None
    prefers_color_scheme: Optional[Literal["light", "dark"]] = None
    allow_pointer_events: Optional[bool] = None
    freeze_animations: Optional[Literal["last-frame", "first-frame"]] = None
    prefers_reduced_motion: Optional[bool] = None
    outgoing_request_headers: Optional[list[dict[str, str]]] = None

    def render_options(self) -> dict:
        """Options passed through to the remote worker as-is."""
        return self.model_dump(
            by_alias=True,
            exclude_none=True,
            exclude={"browser_type", "viewport", "chunks", "max_height"},
        )


class Page(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    url: str
    title: str
    wait_for_content: Optional[str] = None
    wait_for_selector: Optional[str] = None
    extends: Optional[str] = None  # sha of a shared baseline report


class StaticIntegration(BaseModel):
    type: Literal["static"] = "static"
    directory: str

    def static_package_dir(self) -> Path:
        return Path(self.directory)


class CustomIntegration(BaseModel):
    type: Literal["custom"] = "custom"
    root_dir: str
    entry_point: str

    def static_package_dir(self) -> Path:
        return Path(self.root_dir)


class PagesIntegration(BaseModel):
    type: Literal["pages"] = "pages"
    pages: list[Page] = Field(default_factory=list)


class E2EIntegration(BaseModel):
    type: Literal["e2e"] = "e2e"
    runner: str = "playwright"
    allow_failures: bool = False
    download_all_assets: bool = False


Integration = Annotated[
    Union[StaticIntegration, CustomIntegration, PagesIntegration, E2EIntegration],
    Field(discriminator="type"),
]


def _resolve_env_value(v):
    if isinstance(v, str) and v.startswith("env:"):
        env_var = v[4:]
        resolved = os.environ.get(env_var)
        if resolved is None:
            raise ValueError(f"Environment variable '{env_var}' not set")
        return resolved
    return v


class SnapConfig(BaseModel):
    # Credentials
    api_key: str
    api_secret: str

    # Remote service
    endpoint: str = "https://happo.io"
    project: Optional[str] = None
    github_api_url: str = "https://api.github.com"

    # Browsers
    targets: dict[str, TargetConfig] = Field(default_factory=dict)

    # How snapshots are produced
    integration: Integration = Field(default_factory=E2EIntegration)

    # Upload assets through a pre-signed URL instead of the API
    signed_url_upload: bool = False

    @field_validator("api_key", "api_secret", mode="before")
    @classmethod
    def resolve_env_credentials(cls, v: str) -> str:
        return _resolve_env_value(v)

    @property
    def produces_static_package(self) -> bool:
        return isinstance(self.integration, (StaticIntegration, CustomIntegration))

    @property
    def produces_pages(self) -> bool:
        return isinstance(self.integration, PagesIntegration)

    @property
    def produces_snapshots(self) -> bool:
        return isinstance(self.integration, E2EIntegration)

    @classmethod
    def load(cls, path: str | Path) -> "SnapConfig":
        """Load config from a JSON file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = json.load(f)
        return cls(**data)

    def save(self, path: str | Path) -> None:
        """Save config to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.model_dump(by_alias=True, exclude_none=True), f, indent=2)


def find_config_file(explicit: str | None = None) -> Path:
    if explicit:
        return Path(explicit).resolve()
    from_env = os.environ.get("SNAPREPORT_CONFIG_FILE")
    if from_env:
        return Path(from_env)
    return Path(DEFAULT_CONFIG_FILE).resolve()
