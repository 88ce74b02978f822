"""
Tests for ChallengeStore.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from passkey_auth.db.challenges import ChallengeKind, ChallengeStore
from passkey_auth.errors import StorageUnavailable


class TestMint:
    async def test_mint_returns_random_challenge_and_token(self, challenges: ChallengeStore):
        """Should mint at least 32 random bytes and an independent token."""
        first = await challenges.mint(ChallengeKind.REGISTRATION)
        second = await challenges.mint(ChallengeKind.REGISTRATION)

        assert len(first.challenge) >= 32
        assert len(first.token) >= 22
        assert first.token != second.token
        assert first.challenge != second.challenge
        assert first.token.encode() != first.challenge

    async def test_mint_sets_expiry_from_ttl(self, challenges: ChallengeStore, clock):
        record = await challenges.mint(ChallengeKind.AUTHENTICATION)

        assert record.created_at == clock.now
        assert (record.expires_at - record.created_at).total_seconds() == 300

    async def test_mint_binds_user(self, challenges: ChallengeStore):
        record = await challenges.mint(ChallengeKind.REGISTRATION, user_id=7)

        consumed = await challenges.consume(record.token)

        assert consumed.user_id == 7


class TestConsume:
    async def test_consume_is_single_use(self, challenges: ChallengeStore):
        """Second consume of the same token yields nothing."""
        record = await challenges.mint(ChallengeKind.REGISTRATION)

        first = await challenges.consume(record.token)
        second = await challenges.consume(record.token)

        assert first.challenge == record.challenge
        assert first.kind == ChallengeKind.REGISTRATION
        assert second is None

    async def test_consume_after_ttl_yields_nothing(self, challenges: ChallengeStore, clock):
        """An expired challenge is absent even if never consumed."""
        record = await challenges.mint(ChallengeKind.AUTHENTICATION)

        clock.advance(seconds=301)

        assert await challenges.consume(record.token) is None

    async def test_consume_just_before_expiry(self, challenges: ChallengeStore, clock):
        record = await challenges.mint(ChallengeKind.AUTHENTICATION)

        clock.advance(seconds=299)

        assert await challenges.consume(record.token) is not None

    async def test_consume_unknown_token(self, challenges: ChallengeStore):
        assert await challenges.consume("never-minted") is None
        assert await challenges.consume("") is None

    async def test_consume_wrong_kind_burns_the_challenge(self, challenges: ChallengeStore):
        """A registration challenge cannot complete an authentication."""
        record = await challenges.mint(ChallengeKind.REGISTRATION)

        assert await challenges.consume(record.token, ChallengeKind.AUTHENTICATION) is None
        assert await challenges.consume(record.token, ChallengeKind.REGISTRATION) is None

    async def test_concurrent_consume_has_one_winner(self, challenges: ChallengeStore):
        """N simultaneous consumes of one token produce exactly one record."""
        record = await challenges.mint(ChallengeKind.AUTHENTICATION)

        results = await asyncio.gather(*(challenges.consume(record.token) for _ in range(20)))

        assert sum(result is not None for result in results) == 1


class TestStorageFailures:
    async def test_mint_surfaces_storage_unavailable(self, clock):
        kv = AsyncMock()
        kv.add.side_effect = StorageUnavailable()
        store = ChallengeStore(kv, clock=clock)

        with pytest.raises(StorageUnavailable):
            await store.mint(ChallengeKind.REGISTRATION)

    async def test_consume_surfaces_storage_unavailable(self, clock):
        """Storage outages must not masquerade as an invalid challenge."""
        kv = AsyncMock()
        kv.pop.side_effect = StorageUnavailable()
        store = ChallengeStore(kv, clock=clock)

        with pytest.raises(StorageUnavailable):
            await store.consume("some-token")
