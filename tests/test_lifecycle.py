"""
Tests for the asset lifecycle and the resource services built on it.

New objects exist before a record points at them; superseded ones are
reclaimed only after the record commits.
"""

import pytest

from promptstudio.assets.lifecycle import AssetLifecycle
from promptstudio.assets.quota import QuotaLedger, QuotaPolicy
from promptstudio.assets.refs import Managed, parse_ref
from promptstudio.core.errors import InvalidFormat, PermissionDenied, QuotaExceeded
from promptstudio.services.resources import ReferenceIndex
from promptstudio.storage.base import Collections, Queues

from conftest import KIB, data_uri, png_payload


def managed_key(value: str) -> str:
    ref = parse_ref(value)
    assert isinstance(ref, Managed), value
    return ref.key


async def exists(services, value: str) -> bool:
    return await services.assets.head(managed_key(value)) is not None


async def upload_as(services, user) -> Managed:
    return await services.lifecycle.upload(
        user,
        png_payload(KIB),
        KIB,
        ext="png",
        content_type="image/png",
        folder="uploads",
        entity_id=user.id,
    )


class FlakyDeletes:
    """Wraps a content store so the next N deletes fail."""

    def __init__(self, inner, failures: int = 1):
        self.inner = inner
        self.failures = failures

    def __getattr__(self, name):
        return getattr(self.inner, name)

    async def delete(self, key):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("bucket unreachable")
        return await self.inner.delete(key)


@pytest.fixture
def credit_services(services):
    """Same wiring, but reclaimed bytes are credited back."""
    services.ledger = QuotaLedger(
        services.storage.metadata,
        ceiling=services.ledger.ceiling,
        policy=QuotaPolicy.CREDIT_ON_RECLAIM,
    )
    services.lifecycle.ledger = services.ledger
    return services


# =============================================================================
# Chains
# =============================================================================


class TestChainAssets:
    @pytest.mark.asyncio
    async def test_create_with_inline_cover(self, services, alice):
        chain = await services.chains.create(
            alice, {"name": "Portrait", "preview_image": data_uri(10 * KIB)}
        )

        assert chain.preview_image.startswith("/api/assets/covers/")
        assert chain.user_id == alice.id
        assert await exists(services, chain.preview_image)
        assert await services.ledger.usage(alice.id) == 10 * KIB

    @pytest.mark.asyncio
    async def test_create_defaults(self, services, alice):
        chain = await services.chains.create(alice, {"name": "Plain"})

        assert chain.preview_image is None
        assert chain.params["sampler"] == "k_euler_ancestral"
        assert chain.modules[0]["content"] == "cinematic lighting"

    @pytest.mark.asyncio
    async def test_replace_cover_reclaims_old(self, services, alice):
        chain = await services.chains.create(
            alice, {"name": "c", "preview_image": data_uri(10 * KIB)}
        )
        old = chain.preview_image

        updated = await services.chains.update(
            alice, chain.id, {"preview_image": data_uri(1 * KIB)}
        )

        assert updated.preview_image != old
        assert not await exists(services, old)
        assert await exists(services, updated.preview_image)
        # Grow-only: replaced bytes stay counted
        assert await services.ledger.usage(alice.id) == 11 * KIB

    @pytest.mark.asyncio
    async def test_external_cover_untouched(self, services, alice):
        chain = await services.chains.create(
            alice, {"name": "c", "preview_image": "https://cdn.example.com/a.png"}
        )
        updated = await services.chains.update(
            alice, chain.id, {"preview_image": data_uri(KIB)}
        )

        assert updated.preview_image.startswith("/api/assets/")
        assert await services.lifecycle.queue.dequeue(Queues.ASSET_RECLAIM) is None

    @pytest.mark.asyncio
    async def test_clearing_cover_reclaims(self, services, alice):
        chain = await services.chains.create(
            alice, {"name": "c", "preview_image": data_uri(KIB)}
        )
        updated = await services.chains.update(alice, chain.id, {"preview_image": None})

        assert updated.preview_image is None
        assert not await exists(services, chain.preview_image)

    @pytest.mark.asyncio
    async def test_unrelated_update_keeps_cover(self, services, alice):
        chain = await services.chains.create(
            alice, {"name": "c", "preview_image": data_uri(KIB)}
        )
        updated = await services.chains.update(alice, chain.id, {"name": "renamed"})

        assert updated.name == "renamed"
        assert updated.preview_image == chain.preview_image
        assert await exists(services, chain.preview_image)

    @pytest.mark.asyncio
    async def test_delete_reclaims(self, services, alice):
        chain = await services.chains.create(
            alice, {"name": "c", "preview_image": data_uri(KIB)}
        )
        assert await services.chains.delete(alice, chain.id)

        assert not await exists(services, chain.preview_image)
        assert await services.storage.metadata.get(Collections.CHAINS, chain.id) is None

    @pytest.mark.asyncio
    async def test_other_user_cannot_update(self, services, alice, bob):
        chain = await services.chains.create(
            alice, {"name": "c", "preview_image": data_uri(KIB)}
        )

        with pytest.raises(PermissionDenied):
            await services.chains.update(bob, chain.id, {"preview_image": data_uri(KIB)})

        # Nothing was uploaded or charged for the refused request
        assert await services.ledger.usage(bob.id) == 0
        assert await exists(services, chain.preview_image)

    @pytest.mark.asyncio
    async def test_admin_can_delete_any(self, services, alice, admin):
        chain = await services.chains.create(alice, {"name": "c"})
        assert await services.chains.delete(admin, chain.id)

    @pytest.mark.asyncio
    async def test_guest_cannot_create(self, services, guest):
        with pytest.raises(PermissionDenied):
            await services.chains.create(guest, {"name": "c"})


# =============================================================================
# Admission and Rollback
# =============================================================================


class TestAdmission:
    @pytest.mark.asyncio
    async def test_over_quota_writes_nothing(self, services, alice):
        services.ledger.ceiling = 20 * KIB
        content = services.storage.content

        await services.chains.create(alice, {"name": "a", "preview_image": data_uri(15 * KIB)})
        alice = await services.credentials.get_user(alice.id)
        keys_before = [k async for k in content.list_keys()]

        with pytest.raises(QuotaExceeded):
            await services.chains.create(alice, {"name": "b", "preview_image": data_uri(10 * KIB)})

        assert [k async for k in content.list_keys()] == keys_before
        assert await services.ledger.usage(alice.id) == 15 * KIB
        assert len(await services.chains.list()) == 1

    @pytest.mark.asyncio
    async def test_multi_asset_is_all_or_nothing(self, services, alice):
        """Admission is judged on the total of every inline payload."""
        services.ledger.ceiling = 20 * KIB

        with pytest.raises(QuotaExceeded):
            async with services.lifecycle.mutation(alice) as change:
                change.stage("a", data_uri(8 * KIB), folder="t", entity_id="e1")
                change.stage("b", data_uri(8 * KIB), folder="t", entity_id="e2")
                change.stage("c", data_uri(8 * KIB), folder="t", entity_id="e3")
                await change.apply()

        assert [k async for k in services.storage.content.list_keys()] == []
        assert await services.ledger.usage(alice.id) == 0

    @pytest.mark.asyncio
    async def test_failed_commit_rolls_back_uploads(self, services, alice):
        with pytest.raises(RuntimeError):
            async with services.lifecycle.mutation(alice) as change:
                change.stage("img", data_uri(4 * KIB), folder="t", entity_id="e1")
                values = await change.apply()
                assert await exists(services, values["img"])
                raise RuntimeError("record write failed")

        assert [k async for k in services.storage.content.list_keys()] == []
        assert await services.ledger.usage(alice.id) == 0

    @pytest.mark.asyncio
    async def test_failed_commit_keeps_previous(self, services, alice):
        chain = await services.chains.create(
            alice, {"name": "c", "preview_image": data_uri(KIB)}
        )

        with pytest.raises(RuntimeError):
            async with services.lifecycle.mutation(alice) as change:
                change.stage(
                    "preview_image", data_uri(KIB),
                    folder="covers", entity_id=chain.id, previous=chain.preview_image,
                )
                await change.apply()
                raise RuntimeError("record write failed")

        assert await exists(services, chain.preview_image)

    @pytest.mark.asyncio
    async def test_malformed_inline_aborts_early(self, services, alice):
        with pytest.raises(InvalidFormat):
            await services.chains.create(
                alice, {"name": "c", "preview_image": "data:image/png;base64,@@@"}
            )
        assert await services.chains.list() == []

    @pytest.mark.asyncio
    async def test_guest_cannot_upload(self, services, guest):
        with pytest.raises(PermissionDenied):
            await services.lifecycle.upload(
                guest, b"x", 1, ext="png", content_type="image/png",
                folder="uploads", entity_id="e",
            )


# =============================================================================
# Artists
# =============================================================================


class TestArtistAssets:
    @pytest.mark.asyncio
    async def test_benchmarks_uploaded_per_slot(self, services, admin):
        artist = await services.artists.save(
            admin,
            name="Painter",
            image_url=data_uri(KIB),
            benchmarks=[data_uri(KIB), "https://example.com/b.png", data_uri(KIB)],
        )

        assert artist.image_url.startswith("/api/assets/artists/")
        assert artist.benchmarks[0].startswith("/api/assets/artists/benchmarks_0/")
        assert artist.benchmarks[1] == "https://example.com/b.png"
        assert artist.benchmarks[2].startswith("/api/assets/artists/benchmarks_2/")
        # Admin usage is counted even though the ceiling does not apply
        assert await services.ledger.usage(admin.id) == 3 * KIB

    @pytest.mark.asyncio
    async def test_replacing_benchmarks_reclaims_dropped(self, services, admin):
        artist = await services.artists.save(
            admin, name="P", benchmarks=[data_uri(KIB), data_uri(KIB)]
        )
        kept, dropped = artist.benchmarks

        updated = await services.artists.save(
            admin, name="P", benchmarks=[kept], artist_id=artist.id
        )

        assert updated.benchmarks == [kept]
        assert await exists(services, kept)
        assert not await exists(services, dropped)

    @pytest.mark.asyncio
    async def test_delete_reclaims_all(self, services, admin):
        artist = await services.artists.save(
            admin,
            name="P",
            image_url=data_uri(KIB),
            benchmarks=[data_uri(KIB), data_uri(KIB), data_uri(KIB)],
        )

        assert await services.artists.delete(admin, artist.id)
        for value in [artist.image_url, *artist.benchmarks]:
            assert not await exists(services, value)

    @pytest.mark.asyncio
    async def test_users_cannot_manage(self, services, alice):
        with pytest.raises(PermissionDenied):
            await services.artists.save(alice, name="P")


# =============================================================================
# Inspirations
# =============================================================================


class TestInspirations:
    @pytest.mark.asyncio
    async def test_update_image(self, services, alice):
        item = await services.inspirations.save(alice, title="t", image_url=data_uri(KIB))
        updated = await services.inspirations.update(
            alice, item.id, {"title": "new", "image_url": data_uri(2 * KIB)}
        )

        assert updated.title == "new"
        assert not await exists(services, item.image_url)
        assert await exists(services, updated.image_url)

    @pytest.mark.asyncio
    async def test_bulk_delete_skips_others(self, services, alice, bob):
        mine = await services.inspirations.save(alice, title="mine", image_url=data_uri(KIB))
        theirs = await services.inspirations.save(bob, title="theirs", image_url=data_uri(KIB))

        deleted = await services.inspirations.bulk_delete(
            alice, [mine.id, theirs.id, "missing"]
        )

        assert deleted == 1
        assert [i.id for i in await services.inspirations.list()] == [theirs.id]
        assert not await exists(services, mine.image_url)
        assert await exists(services, theirs.image_url)

    @pytest.mark.asyncio
    async def test_unowned_editable_by_users(self, services, alice, bob):
        item = await services.inspirations.save(alice, title="legacy")
        await services.storage.metadata.update(
            Collections.INSPIRATIONS, item.id, {"user_id": None}
        )

        updated = await services.inspirations.update(bob, item.id, {"title": "adopted"})
        assert updated.title == "adopted"


# =============================================================================
# Reclaim Safety
# =============================================================================


class TestReclaim:
    @pytest.mark.asyncio
    async def test_shared_reference_is_kept(self, services, alice):
        first = await services.chains.create(
            alice, {"name": "a", "preview_image": data_uri(KIB)}
        )
        second = await services.chains.create(
            alice, {"name": "copy", "preview_image": first.preview_image}
        )

        await services.chains.delete(alice, first.id)
        assert await exists(services, second.preview_image)

        await services.chains.delete(alice, second.id)
        assert not await exists(services, second.preview_image)

    @pytest.mark.asyncio
    async def test_others_upload_cannot_be_attached(self, services, alice, bob):
        ref = await upload_as(services, bob)

        with pytest.raises(PermissionDenied):
            await services.chains.create(alice, {"name": "c", "preview_image": ref.to_value()})

        assert await services.chains.list() == []
        assert await services.assets.head(ref.key) is not None

    @pytest.mark.asyncio
    async def test_others_upload_cannot_replace_cover(self, services, alice, bob):
        chain = await services.chains.create(alice, {"name": "c"})
        ref = await upload_as(services, bob)

        with pytest.raises(PermissionDenied):
            await services.chains.update(alice, chain.id, {"preview_image": ref.to_value()})

        await services.chains.delete(alice, chain.id)
        assert await services.assets.head(ref.key) is not None

    @pytest.mark.asyncio
    async def test_admin_may_attach_any_upload(self, services, admin, bob):
        ref = await upload_as(services, bob)

        chain = await services.chains.create(admin, {"name": "c", "preview_image": ref.to_value()})
        assert chain.preview_image == ref.to_value()

    @pytest.mark.asyncio
    async def test_reference_index(self, services, admin):
        index = ReferenceIndex(services.storage.metadata)
        artist = await services.artists.save(admin, name="P", benchmarks=[data_uri(KIB)])

        assert await index(parse_ref(artist.benchmarks[0]))
        assert not await index(Managed("covers/unknown.png"))

    @pytest.mark.asyncio
    async def test_failed_reclaim_is_queued_and_retried(self, services, alice):
        chain = await services.chains.create(
            alice, {"name": "c", "preview_image": data_uri(KIB)}
        )
        flaky = FlakyDeletes(services.storage.content, failures=1)
        services.assets._content = flaky

        # The record change still succeeds
        updated = await services.chains.update(alice, chain.id, {"preview_image": None})
        assert updated.preview_image is None
        assert await exists(services, chain.preview_image)

        result = await services.lifecycle.retry_pending_reclaims()

        assert result == {"reclaimed": 1, "failed": 0}
        assert not await exists(services, chain.preview_image)

    @pytest.mark.asyncio
    async def test_retry_requeues_on_failure(self, services, alice):
        chain = await services.chains.create(
            alice, {"name": "c", "preview_image": data_uri(KIB)}
        )
        services.assets._content = FlakyDeletes(services.storage.content, failures=2)

        await services.chains.delete(alice, chain.id)
        assert await services.lifecycle.retry_pending_reclaims() == {"reclaimed": 0, "failed": 1}
        assert await services.lifecycle.retry_pending_reclaims() == {"reclaimed": 1, "failed": 0}

    @pytest.mark.asyncio
    async def test_credit_policy_tracks_live_bytes(self, credit_services, alice):
        services = credit_services
        chain = await services.chains.create(
            alice, {"name": "c", "preview_image": data_uri(10 * KIB)}
        )
        await services.chains.update(alice, chain.id, {"preview_image": data_uri(KIB)})
        assert await services.ledger.usage(alice.id) == KIB

        await services.chains.delete(alice, chain.id)
        assert await services.ledger.usage(alice.id) == 0

    @pytest.mark.asyncio
    async def test_reclaim_without_queue(self, services):
        lifecycle = AssetLifecycle(services.assets, services.ledger)
        assert await lifecycle.retry_pending_reclaims() == {"reclaimed": 0, "failed": 0}
