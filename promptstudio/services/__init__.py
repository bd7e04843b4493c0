"""Services - the record operations behind the HTTP routes."""

from promptstudio.services.resources import (
    ArtistService,
    ChainService,
    InspirationService,
    ReferenceIndex,
)
from promptstudio.services.container import Services, build_services

__all__ = [
    "ArtistService",
    "ChainService",
    "InspirationService",
    "ReferenceIndex",
    "Services",
    "build_services",
]
