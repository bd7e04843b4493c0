# =============================================================================
# Resource API Routes
# =============================================================================
#
# Chains:
#   GET    /api/chains                    - List (newest update first)
#   POST   /api/chains                    - Create (not guests)
#   PUT    /api/chains/{id}               - Update (owner or admin)
#   DELETE /api/chains/{id}               - Delete (owner or admin)
#
# Artists (shared library):
#   GET    /api/artists                   - List
#   POST   /api/artists                   - Create or replace (admin)
#   DELETE /api/artists/{id}              - Delete (admin)
#
# Inspirations:
#   GET    /api/inspirations              - List (newest first)
#   POST   /api/inspirations              - Create (not guests)
#   PUT    /api/inspirations/{id}         - Update (owner or admin)
#   DELETE /api/inspirations/{id}         - Delete (owner or admin)
#   POST   /api/inspirations/bulk-delete  - Delete many, skipping others' items
#
# Image fields accept an external URL, a managed /api/assets/ path, or an
# inline data:image/...;base64 payload that gets uploaded on the way in.
#
# =============================================================================

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from promptstudio.auth.capabilities import Action
from promptstudio.auth.context import AuthContext
from promptstudio.auth.policies import get_services, require, require_admin, require_auth
from promptstudio.core.models import CamelModel
from promptstudio.services.container import Services

chains_router = APIRouter(prefix="/api/chains", tags=["chains"])
artists_router = APIRouter(prefix="/api/artists", tags=["artists"])
inspirations_router = APIRouter(prefix="/api/inspirations", tags=["inspirations"])


# =============================================================================
# Request Models
# =============================================================================


class ChainCreateRequest(CamelModel):
    name: str
    description: str = ""
    tags: list[str] = []
    preview_image: str | None = None
    base_prompt: str | None = None
    negative_prompt: str | None = None
    modules: list[dict[str, Any]] | None = None
    params: dict[str, Any] | None = None
    variable_values: dict[str, Any] | None = None


class ChainUpdateRequest(CamelModel):
    name: str | None = None
    description: str | None = None
    tags: list[str] | None = None
    preview_image: str | None = None
    base_prompt: str | None = None
    negative_prompt: str | None = None
    modules: list[dict[str, Any]] | None = None
    params: dict[str, Any] | None = None
    variable_values: dict[str, Any] | None = None


class ArtistRequest(CamelModel):
    id: str | None = None
    name: str
    image_url: str | None = None
    benchmarks: list[str] = []


class InspirationCreateRequest(CamelModel):
    id: str | None = None
    title: str
    image_url: str | None = None
    prompt: str = ""
    created_at: int | None = None


class InspirationUpdateRequest(CamelModel):
    title: str | None = None
    prompt: str | None = None
    image_url: str | None = None


class BulkDeleteRequest(CamelModel):
    ids: list[str] = []


def changes_from(data: CamelModel, nullable: tuple[str, ...]) -> dict[str, Any]:
    """Fields the client sent. Only asset fields may be cleared with null."""
    return {
        k: v
        for k, v in data.model_dump(exclude_unset=True).items()
        if v is not None or k in nullable
    }


# =============================================================================
# Chains
# =============================================================================


@chains_router.get("")
async def list_chains(
    ctx: AuthContext = Depends(require(Action.READ)),
    services: Services = Depends(get_services),
):
    return [c.to_api() for c in await services.chains.list()]


@chains_router.post("")
async def create_chain(
    data: ChainCreateRequest,
    ctx: AuthContext = Depends(require(Action.CREATE)),
    services: Services = Depends(get_services),
):
    chain = await services.chains.create(ctx.user, data.model_dump())
    return {"id": chain.id}


@chains_router.put("/{chain_id}")
async def update_chain(
    chain_id: str,
    data: ChainUpdateRequest,
    ctx: AuthContext = Depends(require_auth()),
    services: Services = Depends(get_services),
):
    chain = await services.chains.update(
        ctx.user, chain_id, changes_from(data, nullable=("preview_image",))
    )
    return {"success": True, "previewImage": chain.preview_image}


@chains_router.delete("/{chain_id}")
async def delete_chain(
    chain_id: str,
    ctx: AuthContext = Depends(require_auth()),
    services: Services = Depends(get_services),
):
    await services.chains.delete(ctx.user, chain_id)
    return {"success": True}


# =============================================================================
# Artists
# =============================================================================


@artists_router.get("")
async def list_artists(
    ctx: AuthContext = Depends(require(Action.READ)),
    services: Services = Depends(get_services),
):
    return [a.to_api() for a in await services.artists.list()]


@artists_router.post("")
async def save_artist(
    data: ArtistRequest,
    ctx: AuthContext = Depends(require_admin()),
    services: Services = Depends(get_services),
):
    artist = await services.artists.save(
        ctx.user,
        name=data.name,
        image_url=data.image_url,
        benchmarks=data.benchmarks,
        artist_id=data.id,
    )
    return {"success": True, "artist": artist.to_api()}


@artists_router.delete("/{artist_id}")
async def delete_artist(
    artist_id: str,
    ctx: AuthContext = Depends(require_admin()),
    services: Services = Depends(get_services),
):
    await services.artists.delete(ctx.user, artist_id)
    return {"success": True}


# =============================================================================
# Inspirations
# =============================================================================


@inspirations_router.get("")
async def list_inspirations(
    ctx: AuthContext = Depends(require(Action.READ)),
    services: Services = Depends(get_services),
):
    return [i.to_api() for i in await services.inspirations.list()]


@inspirations_router.post("")
async def create_inspiration(
    data: InspirationCreateRequest,
    ctx: AuthContext = Depends(require(Action.CREATE)),
    services: Services = Depends(get_services),
):
    item = await services.inspirations.save(
        ctx.user,
        title=data.title,
        image_url=data.image_url,
        prompt=data.prompt,
        inspiration_id=data.id,
        created_at=data.created_at,
    )
    return {"success": True, "inspiration": item.to_api()}


@inspirations_router.post("/bulk-delete")
async def bulk_delete_inspirations(
    data: BulkDeleteRequest,
    ctx: AuthContext = Depends(require_auth()),
    services: Services = Depends(get_services),
):
    deleted = await services.inspirations.bulk_delete(ctx.user, data.ids)
    return {"success": True, "deleted": deleted}


@inspirations_router.put("/{inspiration_id}")
async def update_inspiration(
    inspiration_id: str,
    data: InspirationUpdateRequest,
    ctx: AuthContext = Depends(require_auth()),
    services: Services = Depends(get_services),
):
    item = await services.inspirations.update(
        ctx.user, inspiration_id, changes_from(data, nullable=("image_url",))
    )
    return {"success": True, "inspiration": item.to_api()}


@inspirations_router.delete("/{inspiration_id}")
async def delete_inspiration(
    inspiration_id: str,
    ctx: AuthContext = Depends(require_auth()),
    services: Services = Depends(get_services),
):
    await services.inspirations.delete(ctx.user, inspiration_id)
    return {"success": True}
