"""Snapshot, asset and stylesheet data structures collected during a test run."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Snapshot(BaseModel):
    """A serialized DOM snapshot. Identity is (component, variant)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    component: str
    variant: str
    html: str
    targets: Optional[list[str]] = None
    stylesheets: list[str] = Field(default_factory=list)  # CSSBlock keys
    html_element_attrs: Optional[dict[str, str]] = None
    body_element_attrs: Optional[dict[str, str]] = None
    timestamp: Optional[float] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.component, self.variant)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class LocalSnapshot(BaseModel):
    """A pre-rendered screenshot uploaded as an image."""

    component: str
    variant: str
    url: str
    targets: Optional[list[str]] = None
    target: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


class AssetUrl(BaseModel):
    """An external resource referenced from HTML/CSS. Identity is (url, base_url)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    url: str
    base_url: Optional[str] = None
    name: Optional[str] = None  # packaged path, set once the asset is archived

    @property
    def key(self) -> tuple[str, str]:
        return (self.url, self.base_url or "")


class CSSBlock(BaseModel):
    """A stylesheet, either inline (content) or linked (href)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    key: str
    content: Optional[str] = None
    href: Optional[str] = None
    base_url: Optional[str] = None
    assets_base_url: Optional[str] = None


class DynamicTarget(BaseModel):
    """A browser target declared at snapshot-registration time."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str
    viewport: str
    browser_type: str
