"""
Core data models.

Users and sessions are identity; chains, artists and inspirations are the
owning resources whose image fields are asset references. Records are
stored snake_case and rendered camelCase over the API.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from promptstudio.core.utils import epoch_ms, generate_id


# =============================================================================
# Identity
# =============================================================================


class Role(str, Enum):
    """Platform-wide role of a user."""

    ADMIN = "admin"    # Everything, exempt from quota
    USER = "user"      # Owns what they create
    GUEST = "guest"    # Read-only


class User(BaseModel):
    """User stored in the credential store."""

    id: str = Field(default_factory=lambda: generate_id("user"))
    username: str
    password_hash: str
    role: Role = Role.USER
    storage_usage: int = 0
    created_at: int = Field(default_factory=epoch_ms)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_guest(self) -> bool:
        return self.role == Role.GUEST


class Session(BaseModel):
    """An issued session token. Never renewed; dies at `expires_at`."""

    id: str
    user_id: str
    expires_at: datetime
    created_at: datetime


# =============================================================================
# Ownership
# =============================================================================


@dataclass(frozen=True)
class Owned:
    """Resource belongs to a specific user."""

    user_id: str


@dataclass(frozen=True)
class Unowned:
    """Legacy or globally shared resource (no owner column set)."""


Ownership = Union[Owned, Unowned]


def ownership_of(user_id: str | None) -> Ownership:
    """Map a nullable owner column to the ownership variant."""
    return Owned(user_id) if user_id else Unowned()


# =============================================================================
# Owning resources
# =============================================================================


class CamelModel(BaseModel):
    """Accepts and renders the camelCase field names the web client uses."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Record(CamelModel):
    """Base for stored records."""

    def to_api(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class Chain(Record):
    """A prompt chain. `preview_image` is an asset reference."""

    id: str
    user_id: str | None = None
    username: str | None = None
    name: str
    description: str = ""
    tags: list[str] = Field(default_factory=list)
    preview_image: str | None = None
    base_prompt: str = "masterpiece, best quality, {character}"
    negative_prompt: str = "lowres, bad anatomy"
    modules: list[dict[str, Any]] = Field(default_factory=list)
    params: dict[str, Any] = Field(default_factory=lambda: {
        "width": 832,
        "height": 1216,
        "steps": 28,
        "scale": 5,
        "sampler": "k_euler_ancestral",
    })
    variable_values: dict[str, Any] = Field(default_factory=dict)
    created_at: int = Field(default_factory=epoch_ms)
    updated_at: int = Field(default_factory=epoch_ms)


class Artist(Record):
    """A shared artist entry with an avatar and benchmark images."""

    id: str
    name: str
    image_url: str | None = None
    benchmarks: list[str] = Field(default_factory=list)


class Inspiration(Record):
    """A gallery item. `image_url` is an asset reference."""

    id: str
    user_id: str | None = None
    username: str | None = None
    title: str
    image_url: str | None = None
    prompt: str = ""
    created_at: int = Field(default_factory=epoch_ms)
