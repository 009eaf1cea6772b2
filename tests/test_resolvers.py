# tests/test_resolvers.py
"""Tests for the audience and token resolvers"""
import pytest

from chatpush.core.audience import AudienceResolver
from chatpush.core.domain import Community
from chatpush.core.errors import ErrorCode
from chatpush.core.tokens import TokenResolver, chunked

from tests.fakes import InMemoryCommunityStore, InMemoryUserTokenStore


class TestAudienceResolver:
    @pytest.mark.asyncio
    async def test_sender_excluded(self, communities):
        result = await AudienceResolver(communities).resolve("c1", "u1")

        assert result.success
        assert result.data.user_ids == frozenset({"u2", "u3"})
        assert result.data.community_name == "Hikers"
        assert "u1" not in result.data.user_ids

    @pytest.mark.asyncio
    async def test_sender_not_a_member(self, communities):
        result = await AudienceResolver(communities).resolve("c1", "outsider")
        assert result.data.user_ids == frozenset({"u1", "u2", "u3"})

    @pytest.mark.asyncio
    async def test_sender_only_member_gives_empty_audience(self):
        store = InMemoryCommunityStore([Community(id="solo", name="Solo", members=["u1"])])
        result = await AudienceResolver(store).resolve("solo", "u1")

        assert result.success
        assert result.data.is_empty()

    @pytest.mark.asyncio
    async def test_duplicate_and_blank_members_collapsed(self):
        store = InMemoryCommunityStore([
            Community(id="c9", name="Dupes", members=["u2", "u2", "", "u1", "u3"]),
        ])
        result = await AudienceResolver(store).resolve("c9", "u1")
        assert result.data.user_ids == frozenset({"u2", "u3"})

    @pytest.mark.asyncio
    async def test_missing_community_is_not_found(self):
        result = await AudienceResolver(InMemoryCommunityStore()).resolve("nope", "u1")

        assert not result.success
        assert result.error_code == ErrorCode.NOT_FOUND
        assert result.data is None


class TestChunked:
    def test_splits_evenly_and_remainder(self):
        assert list(chunked(["a", "b", "c", "d", "e"], 2)) == [["a", "b"], ["c", "d"], ["e"]]

    def test_empty(self):
        assert list(chunked([], 3)) == []


class TestTokenResolver:
    @pytest.mark.asyncio
    async def test_only_users_with_tokens(self, users):
        tokens = await TokenResolver(users).resolve({"u2", "u3", "ghost"})
        assert tokens == {"u2": "tok-u2"}

    @pytest.mark.asyncio
    async def test_empty_input_skips_store(self, users):
        tokens = await TokenResolver(users).resolve(set())

        assert tokens == {}
        assert users.calls == []

    @pytest.mark.asyncio
    async def test_lookup_is_batched(self):
        store = InMemoryUserTokenStore({f"u{i}": f"tok-{i}" for i in range(25)})
        resolver = TokenResolver(store, batch_size=10)

        tokens = await resolver.resolve({f"u{i}" for i in range(25)})

        assert len(tokens) == 25
        assert [len(batch) for batch in store.calls] == [10, 10, 5]

    @pytest.mark.asyncio
    async def test_batches_are_sorted_and_deduplicated(self):
        store = InMemoryUserTokenStore({"a": "tok-a", "b": "tok-b", "c": "tok-c"})
        resolver = TokenResolver(store, batch_size=2)

        await resolver.resolve(["c", "a", "c", "", "b"])

        assert store.calls == [["a", "b"], ["c"]]

    @pytest.mark.asyncio
    async def test_unrequested_ids_from_store_ignored(self):
        class LeakyStore:
            async def get_tokens(self, user_ids):
                return {"u1": "tok-1", "intruder": "tok-x"}

        tokens = await TokenResolver(LeakyStore()).resolve(["u1"])
        assert tokens == {"u1": "tok-1"}

    @pytest.mark.asyncio
    async def test_blank_and_non_string_tokens_dropped(self):
        store = InMemoryUserTokenStore({"a": "  ", "b": None, "c": 123, "d": "tok-d"})
        tokens = await TokenResolver(store).resolve(["a", "b", "c", "d"])
        assert tokens == {"d": "tok-d"}

    @pytest.mark.asyncio
    async def test_shared_token_kept_per_user(self):
        store = InMemoryUserTokenStore({"a": "same", "b": "same"})
        tokens = await TokenResolver(store).resolve(["a", "b"])
        assert tokens == {"a": "same", "b": "same"}

    def test_non_positive_batch_size_falls_back(self, users):
        resolver = TokenResolver(users, batch_size=0)
        assert resolver._batch_size == 500

    @pytest.mark.asyncio
    async def test_store_errors_propagate(self):
        class BrokenStore:
            async def get_tokens(self, user_ids):
                raise ConnectionError("db down")

        with pytest.raises(ConnectionError):
            await TokenResolver(BrokenStore()).resolve(["u1"])
