"""
Tests for the quota ledger.
"""

import asyncio

import pytest

from promptstudio.assets.quota import QuotaLedger, QuotaPolicy, format_mib
from promptstudio.core.errors import NotFound, QuotaExceeded
from promptstudio.core.models import User

from conftest import MIB


async def refreshed(services, user: User) -> User:
    return await services.credentials.get_user(user.id)


# =============================================================================
# Admission
# =============================================================================


class TestAdmission:
    def test_boundary(self, services, alice):
        ledger = services.ledger
        alice.storage_usage = 10 * MIB

        assert ledger.admits(alice, 290 * MIB)
        assert not ledger.admits(alice, 290 * MIB + 1)
        assert not ledger.admits(alice, 295 * MIB)

    def test_admin_exempt(self, services, admin):
        admin.storage_usage = 10_000 * MIB
        assert services.ledger.admits(admin, 500 * MIB)

    def test_exceeded_message(self, services, alice):
        alice.storage_usage = 10 * MIB
        with pytest.raises(QuotaExceeded) as exc:
            services.ledger.check_admission(alice, 295 * MIB)

        assert exc.value.status_code == 413
        assert exc.value.message == (
            "Storage quota exceeded (300.0MB limit). Current: 10.0MB"
        )

    def test_format_mib(self):
        assert format_mib(0) == "0.0MB"
        assert format_mib(1536 * 1024) == "1.5MB"


# =============================================================================
# Reservation
# =============================================================================


class TestReserve:
    @pytest.mark.asyncio
    async def test_reserve_accumulates(self, services, alice):
        await services.ledger.reserve(alice, 10 * MIB)
        await services.ledger.reserve(alice, 5 * MIB)

        assert await services.ledger.usage(alice.id) == 15 * MIB

    @pytest.mark.asyncio
    async def test_refusal_leaves_usage_unchanged(self, services, alice):
        await services.ledger.reserve(alice, 10 * MIB)

        with pytest.raises(QuotaExceeded):
            await services.ledger.reserve(alice, 295 * MIB)

        assert await services.ledger.usage(alice.id) == 10 * MIB

    @pytest.mark.asyncio
    async def test_stale_snapshot_cannot_overshoot(self, services, alice):
        """The ceiling is enforced against the stored value, not the caller's copy."""
        stale = alice.model_copy()
        await services.ledger.reserve(alice, 200 * MIB)

        assert services.ledger.admits(stale, 200 * MIB)
        with pytest.raises(QuotaExceeded):
            await services.ledger.reserve(stale, 200 * MIB)
        assert await services.ledger.usage(alice.id) == 200 * MIB

    @pytest.mark.asyncio
    async def test_concurrent_reservations(self, services, alice):
        results = await asyncio.gather(
            *(services.ledger.reserve(alice, 100 * MIB) for _ in range(5)),
            return_exceptions=True,
        )

        accepted = [r for r in results if not isinstance(r, Exception)]
        assert len(accepted) == 3
        assert await services.ledger.usage(alice.id) == 300 * MIB

    @pytest.mark.asyncio
    async def test_admin_counted_without_ceiling(self, services, admin):
        await services.ledger.reserve(admin, 400 * MIB)
        assert await services.ledger.usage(admin.id) == 400 * MIB

    @pytest.mark.asyncio
    async def test_unknown_user(self, services):
        ghost = User(id="user_ghost", username="ghost", password_hash="x")
        with pytest.raises(NotFound):
            await services.ledger.reserve(ghost, 1)

    @pytest.mark.asyncio
    async def test_release_never_goes_negative(self, services, alice):
        await services.ledger.reserve(alice, 1 * MIB)
        await services.ledger.release(alice.id, 5 * MIB)

        assert await services.ledger.usage(alice.id) == 0


# =============================================================================
# Credit Policy
# =============================================================================


class TestCreditPolicy:
    @pytest.mark.asyncio
    async def test_grow_only_ignores_credit(self, services, alice):
        assert services.ledger.policy == QuotaPolicy.GROW_ONLY
        await services.ledger.reserve(alice, 10 * MIB)

        assert not await services.ledger.credit(alice.id, 10 * MIB)
        assert await services.ledger.usage(alice.id) == 10 * MIB

    @pytest.mark.asyncio
    async def test_credit_on_reclaim(self, services, alice):
        ledger = QuotaLedger(
            services.storage.metadata, policy=QuotaPolicy.CREDIT_ON_RECLAIM
        )
        await ledger.reserve(alice, 10 * MIB)

        assert await ledger.credit(alice.id, 4 * MIB)
        assert await ledger.usage(alice.id) == 6 * MIB

    @pytest.mark.asyncio
    async def test_credit_without_payer(self, services):
        ledger = QuotaLedger(
            services.storage.metadata, policy=QuotaPolicy.CREDIT_ON_RECLAIM
        )
        assert not await ledger.credit(None, 10)

    @pytest.mark.asyncio
    async def test_usage_visible_on_user(self, services, alice):
        await services.ledger.reserve(alice, 3 * MIB)
        assert (await refreshed(services, alice)).storage_usage == 3 * MIB
