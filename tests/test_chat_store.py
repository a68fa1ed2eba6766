"""
Chat threads: one per (post, participant pair), per-role unread counters.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.core.errors import NotFound, PermissionDenied, ValidationError
from app.schemas.posts import PostStatus
from app.services.chat_store import THREADS, thread_key

from .fixtures import CONTRIBUTOR, plastic


class TestGetOrCreate:
    def test_new_thread_starts_with_zero_counters(self, services):
        thread = asyncio.run(services.chats.get_or_create_thread("p1", "C", "V"))

        assert thread.post_id == "p1"
        assert thread.contributor_id == "C"
        assert thread.collector_id == "V"
        assert thread.unread_contributor == 0
        assert thread.unread_collector == 0
        assert thread.last_message is None

    def test_lookup_is_idempotent(self, services):
        async def go():
            first = await services.chats.get_or_create_thread("p1", "C", "V")
            second = await services.chats.get_or_create_thread("p1", "C", "V")
            swapped = await services.chats.get_or_create_thread("p1", "V", "C")
            return first, second, swapped

        first, second, swapped = asyncio.run(go())
        assert first.id == second.id == swapped.id

    def test_concurrent_calls_create_one_thread(self, services):
        async def go():
            a, b = await asyncio.gather(
                services.chats.get_or_create_thread("p1", "C", "V"),
                services.chats.get_or_create_thread("p1", "C", "V"),
            )
            return a, b, await services.chats.list_threads_for_post("p1")

        a, b, threads = asyncio.run(go())
        assert a.id == b.id
        assert len(threads) == 1

    def test_other_pairs_get_their_own_thread(self, services):
        async def go():
            a = await services.chats.get_or_create_thread("p1", "C", "V")
            b = await services.chats.get_or_create_thread("p1", "C", "V2")
            c = await services.chats.get_or_create_thread("p2", "C", "V")
            return a, b, c

        a, b, c = asyncio.run(go())
        assert len({a.id, b.id, c.id}) == 3

    def test_existing_duplicates_resolve_to_earliest(self, services, store):
        t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)

        async def go():
            later = await store.add(THREADS, {"postId": "p1", "contributorId": "C", "collectorId": "V", "createdAt": t0 + timedelta(minutes=5)})
            earlier = await store.add(THREADS, {"postId": "p1", "contributorId": "C", "collectorId": "V", "createdAt": t0})
            found = await services.chats.get_or_create_thread("p1", "C", "V")
            return later, earlier, found

        later, earlier, found = asyncio.run(go())
        assert found.id == earlier["id"]

    @pytest.mark.parametrize("args", [("", "C", "V"), ("p1", "C", "C"), ("p1", "", "V")])
    def test_bad_triples_are_rejected(self, services, args):
        with pytest.raises(ValidationError):
            asyncio.run(services.chats.get_or_create_thread(*args))

    def test_thread_key_ignores_pair_order(self):
        assert thread_key("p1", "C", "V") == thread_key("p1", "V", "C")


class TestCounters:
    def test_outgoing_message_bumps_recipient_only(self, services):
        async def go():
            thread = await services.chats.get_or_create_thread("p1", "C", "V")
            await services.chats.record_outgoing_message(thread.id, "V", "On my way")
            return await services.chats.get_thread(thread.id)

        thread = asyncio.run(go())
        assert thread.unread_contributor == 1
        assert thread.unread_collector == 0
        assert thread.last_message == "On my way"
        assert thread.last_message_time is not None

    def test_concurrent_increments_are_not_lost(self, services):
        async def go():
            thread = await services.chats.get_or_create_thread("p1", "C", "V")
            await asyncio.gather(*[
                services.chats.record_outgoing_message(thread.id, "C", f"msg {i}") for i in range(10)
            ])
            return await services.chats.get_thread(thread.id)

        thread = asyncio.run(go())
        assert thread.unread_collector == 10
        assert thread.unread_contributor == 0

    def test_reset_is_idempotent(self, services):
        async def go():
            thread = await services.chats.get_or_create_thread("p1", "C", "V")
            await services.chats.record_outgoing_message(thread.id, "C", "hello")
            await services.chats.record_outgoing_message(thread.id, "V", "hi")
            await services.chats.reset_unread(thread.id, "V")
            await services.chats.reset_unread(thread.id, "V")
            return await services.chats.get_thread(thread.id)

        thread = asyncio.run(go())
        assert thread.unread_collector == 0
        assert thread.unread_contributor == 1

    def test_reset_keeps_an_increment_it_did_not_see(self, services):
        async def go():
            thread = await services.chats.get_or_create_thread("p1", "C", "V")
            await services.chats.record_outgoing_message(thread.id, "V", "one")
            await services.chats.record_outgoing_message(thread.id, "V", "two")
            reset = await services.chats.reset_unread(thread.id, "C", expected=1)
            return reset, await services.chats.get_thread(thread.id)

        reset, thread = asyncio.run(go())
        assert reset is False
        assert thread.unread_contributor == 2

    def test_outsiders_are_refused(self, services):
        thread = asyncio.run(services.chats.get_or_create_thread("p1", "C", "V"))

        with pytest.raises(PermissionDenied):
            asyncio.run(services.chats.record_outgoing_message(thread.id, "X", "hey"))
        with pytest.raises(PermissionDenied):
            asyncio.run(services.chats.reset_unread(thread.id, "X"))

    def test_missing_thread(self, services):
        with pytest.raises(NotFound):
            asyncio.run(services.chats.get_thread("nope"))


class TestListing:
    def test_threads_are_tagged_with_caller_role(self, services):
        async def go():
            a = await services.chats.get_or_create_thread("p1", "C", "V")
            b = await services.chats.get_or_create_thread("p2", "V2", "C")
            await services.chats.record_outgoing_message(a.id, "V", "x")
            return await services.chats.list_threads_for_user("C")

        views = {v.post_id: v for v in asyncio.run(go())}
        assert views["p1"].user_role == "contributor"
        assert views["p1"].unread_count == 1
        assert views["p1"].other_user_id == "V"
        assert views["p2"].user_role == "collector"
        assert views["p2"].other_user_id == "V2"


class TestStartThread:
    """Starting a chat from a post: only its contributor and current acceptor."""

    async def _accepted(self, services):
        post = await services.posts.create_post(CONTRIBUTOR, plastic())
        return await services.posts.accept_or_release(post.id, "V", PostStatus.ACCEPTED)

    def test_contributor_and_acceptor_share_the_thread(self, services):
        async def go():
            post = await self._accepted(services)
            a = await services.chats.start_thread(post.id, "C", "V")
            b = await services.chats.start_thread(post.id, "C", "V")
            return a, b

        a, b = asyncio.run(go())
        assert a.id == b.id
        assert (a.contributor_id, a.collector_id) == ("C", "V")

    @pytest.mark.parametrize("pair", [("C", "V2"), ("V2", "X"), ("V", "C")])
    def test_pairs_not_matching_the_post_are_refused(self, services, pair):
        async def go():
            post = await self._accepted(services)
            await services.chats.start_thread(post.id, *pair)

        with pytest.raises(PermissionDenied):
            asyncio.run(go())

    def test_nothing_is_created_for_a_refused_pair(self, services):
        async def go():
            post = await self._accepted(services)
            with pytest.raises(PermissionDenied):
                await services.chats.start_thread(post.id, "C", "V2")
            return await services.chats.list_threads_for_post(post.id)

        assert asyncio.run(go()) == []

    def test_pending_post_has_no_collector_yet(self, services):
        async def go():
            post = await services.posts.create_post(CONTRIBUTOR, plastic())
            await services.chats.start_thread(post.id, "C", "V")

        with pytest.raises(PermissionDenied):
            asyncio.run(go())

    def test_unknown_post(self, services):
        with pytest.raises(NotFound):
            asyncio.run(services.chats.start_thread("missing", "C", "V"))

    def test_existing_thread_survives_release(self, services):
        async def go():
            post = await self._accepted(services)
            first = await services.chats.start_thread(post.id, "C", "V")
            await services.posts.accept_or_release(post.id, "V", PostStatus.PENDING)
            return first, await services.chats.start_thread(post.id, "C", "V")

        first, again = asyncio.run(go())
        assert again.id == first.id
