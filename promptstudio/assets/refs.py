"""
Asset references.

A record's image field is a plain string. It is classified exactly once,
where it enters the system, into one of:

    Empty              no image
    External(url)      hosted elsewhere; never uploaded, never deleted
    Managed(key)       an object in our bucket, served at /api/assets/<key>
    InlineImage        an incoming data:image/...;base64 payload (not yet stored)

Everything past the boundary works with these tags, never with prefixes.
"""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Union

from promptstudio.core.errors import InvalidFormat


# Public path objects are served from; the rest of the string is the key
MANAGED_PREFIX = "/api/assets/"

_DATA_URI = re.compile(r"^data:image/([a-zA-Z]+);base64,(.+)$", re.DOTALL)


@dataclass(frozen=True)
class Empty:
    def to_value(self) -> str | None:
        return None


@dataclass(frozen=True)
class External:
    url: str

    def to_value(self) -> str:
        return self.url


@dataclass(frozen=True)
class Managed:
    key: str

    def to_value(self) -> str:
        return f"{MANAGED_PREFIX}{self.key}"


AssetRef = Union[Empty, External, Managed]


@dataclass(frozen=True)
class InlineImage:
    """A decoded data URI."""

    data: bytes
    ext: str

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def content_type(self) -> str:
        return f"image/{self.ext}"


def is_inline(value: str | None) -> bool:
    return bool(value) and value.startswith("data:")


def decode_inline(data_uri: str) -> InlineImage:
    """
    Decode `data:image/<ext>;base64,<payload>`.

    Raises InvalidFormat for anything else, including bad base64.
    """
    match = _DATA_URI.match(data_uri or "")
    if not match:
        raise InvalidFormat("Invalid image data format")

    ext = match.group(1).lower()
    try:
        data = base64.b64decode(match.group(2), validate=True)
    except (binascii.Error, ValueError):
        raise InvalidFormat("Invalid image data format")
    return InlineImage(data=data, ext=ext)


def parse_ref(value: str | None) -> AssetRef:
    """
    Classify a stored (non-inline) reference string.

    Managed paths become keys; anything else non-empty is external.
    """
    if not value:
        return Empty()
    if value.startswith(MANAGED_PREFIX) and len(value) > len(MANAGED_PREFIX):
        return Managed(value[len(MANAGED_PREFIX):])
    return External(value)


def classify(value: str | None) -> AssetRef | InlineImage:
    """Classify an incoming value; inline payloads are decoded."""
    if is_inline(value):
        return decode_inline(value)
    return parse_ref(value)
