"""
Post lifecycle: pending -> accepted -> collected, with cancel and undo.
"""

import asyncio
import random

import pytest
from pydantic import ValidationError as PydanticValidationError

from app.core.errors import AppError, InvalidTransition, NotFound, PermissionDenied, ValidationError
from app.schemas.posts import GeoPoint, PostCreate, PostStatus, PostUpdate
from app.services.post_store import haversine_km, within_radius

from .fixtures import CONTRIBUTOR, plastic


class TestCreate:
    def test_new_post_is_pending_and_unassigned(self, services):
        post = asyncio.run(services.posts.create_post(CONTRIBUTOR, plastic()))

        assert post.status == PostStatus.PENDING
        assert post.accepted_by is None
        assert post.contributor_id == "C"
        assert post.created_at is not None

    @pytest.mark.parametrize("quantity", [0, -2])
    def test_non_positive_quantity_is_rejected(self, services, quantity):
        with pytest.raises(ValidationError):
            asyncio.run(services.posts.create_post(CONTRIBUTOR, plastic(quantity)))

    def test_blank_waste_type_is_rejected(self, services):
        with pytest.raises(ValidationError):
            asyncio.run(services.posts.create_post(CONTRIBUTOR, PostCreate(waste_type="  ", quantity=1)))

    def test_contributor_email_falls_back_to_session(self, services):
        post = asyncio.run(services.posts.create_post(CONTRIBUTOR, PostCreate(waste_type="glass", quantity=2)))
        assert post.contributor_email == "carla@example.org"


class TestTransitions:
    def _accepted(self, services):
        async def go():
            post = await services.posts.create_post(CONTRIBUTOR, plastic())
            return await services.posts.accept_or_release(post.id, "V", PostStatus.ACCEPTED)

        return asyncio.run(go())

    def test_accept_sets_acceptor(self, services):
        post = self._accepted(services)
        assert post.status == PostStatus.ACCEPTED
        assert post.accepted_by == "V"

    def test_second_volunteer_cannot_take_accepted_post(self, services):
        post = self._accepted(services)

        with pytest.raises(PermissionDenied):
            asyncio.run(services.posts.accept_or_release(post.id, "V2", PostStatus.ACCEPTED))

        current = asyncio.run(services.posts.get_post(post.id))
        assert current.accepted_by == "V"
        assert current.status == PostStatus.ACCEPTED

    def test_only_acceptor_can_release(self, services):
        post = self._accepted(services)

        with pytest.raises(PermissionDenied):
            asyncio.run(services.posts.accept_or_release(post.id, "V2", PostStatus.PENDING))

        released = asyncio.run(services.posts.accept_or_release(post.id, "V", PostStatus.PENDING))
        assert released.status == PostStatus.PENDING
        assert released.accepted_by is None

    def test_collect_pending_post_is_invalid(self, services):
        post = asyncio.run(services.posts.create_post(CONTRIBUTOR, plastic()))

        with pytest.raises(InvalidTransition):
            asyncio.run(services.posts.mark_collected(post.id, "V"))

    def test_collect_and_undo(self, services):
        post = self._accepted(services)

        collected = asyncio.run(services.posts.mark_collected(post.id, "V"))
        assert collected.status == PostStatus.COLLECTED
        assert collected.accepted_by == "V"

        with pytest.raises(PermissionDenied):
            asyncio.run(services.posts.revert_to_accepted(post.id, "V2"))

        reverted = asyncio.run(services.posts.revert_to_accepted(post.id, "V"))
        assert reverted.status == PostStatus.ACCEPTED
        assert reverted.accepted_by == "V"

    def test_no_state_is_skipped(self, services):
        post = self._accepted(services)
        asyncio.run(services.posts.mark_collected(post.id, "V"))

        with pytest.raises(InvalidTransition):
            asyncio.run(services.posts.accept_or_release(post.id, "V", PostStatus.PENDING))
        with pytest.raises(InvalidTransition):
            asyncio.run(services.posts.mark_collected(post.id, "V"))

    def test_contributor_cannot_accept_own_post(self, services):
        post = asyncio.run(services.posts.create_post(CONTRIBUTOR, plastic()))
        with pytest.raises(PermissionDenied):
            asyncio.run(services.posts.accept_or_release(post.id, "C", PostStatus.ACCEPTED))

    def test_unknown_post(self, services):
        with pytest.raises(NotFound):
            asyncio.run(services.posts.mark_collected("missing", "V"))

    def test_concurrent_accepts_have_one_winner(self, services):
        async def go():
            post = await services.posts.create_post(CONTRIBUTOR, plastic())
            results = await asyncio.gather(
                services.posts.accept_or_release(post.id, "V", PostStatus.ACCEPTED),
                services.posts.accept_or_release(post.id, "V2", PostStatus.ACCEPTED),
                return_exceptions=True,
            )
            return post.id, results

        post_id, results = asyncio.run(go())
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]

        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], PermissionDenied)
        current = asyncio.run(services.posts.get_post(post_id))
        assert current.accepted_by == winners[0].accepted_by

    def test_random_sequences_keep_acceptor_invariant(self, services):
        """acceptedBy is set exactly when the post is off pending."""
        rng = random.Random(7)
        actors = ["V", "V2"]

        async def go():
            post = await services.posts.create_post(CONTRIBUTOR, plastic())
            for _ in range(200):
                before = await services.posts.get_post(post.id)
                actor = rng.choice(actors)
                op = rng.choice(["accept", "cancel", "collect", "undo"])
                try:
                    if op == "accept":
                        await services.posts.accept_or_release(post.id, actor, PostStatus.ACCEPTED)
                    elif op == "cancel":
                        await services.posts.accept_or_release(post.id, actor, PostStatus.PENDING)
                    elif op == "collect":
                        await services.posts.mark_collected(post.id, actor)
                    else:
                        await services.posts.revert_to_accepted(post.id, actor)
                    succeeded = True
                except AppError:
                    succeeded = False

                after = await services.posts.get_post(post.id)
                assert (after.accepted_by is not None) == (after.status != PostStatus.PENDING)
                if succeeded and before.status != PostStatus.PENDING:
                    assert before.accepted_by == actor
                if not succeeded:
                    assert after.status == before.status
                    assert after.accepted_by == before.accepted_by

        asyncio.run(go())


class TestDeleteAndEdit:
    def test_contributor_deletes_pending_post(self, services):
        async def go():
            post = await services.posts.create_post(CONTRIBUTOR, plastic())
            await services.posts.delete_post(post.id, "C")
            return await services.posts.find_post(post.id)

        assert asyncio.run(go()) is None

    def test_accepted_post_cannot_be_deleted(self, services):
        async def go():
            post = await services.posts.create_post(CONTRIBUTOR, plastic())
            await services.posts.accept_or_release(post.id, "V", PostStatus.ACCEPTED)
            await services.posts.delete_post(post.id, "C")

        with pytest.raises(InvalidTransition):
            asyncio.run(go())

    def test_others_cannot_delete(self, services):
        post = asyncio.run(services.posts.create_post(CONTRIBUTOR, plastic()))
        with pytest.raises(PermissionDenied):
            asyncio.run(services.posts.delete_post(post.id, "V"))

    def test_edit_leaves_status_alone(self, services):
        async def go():
            post = await services.posts.create_post(CONTRIBUTOR, plastic())
            return await services.posts.update_post(CONTRIBUTOR, post.id, PostUpdate(quantity=8, address="Main St"))

        post = asyncio.run(go())
        assert post.quantity == 8
        assert post.address == "Main St"
        assert post.status == PostStatus.PENDING

    @pytest.mark.parametrize("field", ["wasteType", "quantity", "sellForFree"])
    def test_required_fields_cannot_be_nulled(self, field):
        with pytest.raises(PydanticValidationError):
            PostUpdate.model_validate({field: None})

    def test_optional_fields_can_be_cleared(self):
        changes = PostUpdate.model_validate({"address": None, "imageUrl": None})
        assert changes.model_dump(by_alias=True, exclude_unset=True) == {"address": None, "imageUrl": None}

    def test_invalid_edit_writes_nothing(self, services):
        """An edit that would leave an unreadable post is refused before the write."""
        broken = PostUpdate.model_construct(_fields_set={"quantity"}, quantity=None)

        async def go():
            post = await services.posts.create_post(CONTRIBUTOR, plastic())
            with pytest.raises(ValidationError):
                await services.posts.update_post(CONTRIBUTOR, post.id, broken)
            return await services.posts.get_post(post.id), await services.posts.list_posts()

        post, listed = asyncio.run(go())
        assert post.quantity == 5
        assert [p.id for p in listed] == [post.id]


class TestListing:
    def test_filters_by_status_and_distance(self, services):
        async def go():
            near = await services.posts.create_post(
                CONTRIBUTOR, PostCreate(waste_type="paper", quantity=1, location=GeoPoint(lat=12.97, lng=77.59))
            )
            far = await services.posts.create_post(
                CONTRIBUTOR, PostCreate(waste_type="metal", quantity=1, location=GeoPoint(lat=19.07, lng=72.87))
            )
            await services.posts.create_post(CONTRIBUTOR, PostCreate(waste_type="glass", quantity=1))
            await services.posts.accept_or_release(far.id, "V", PostStatus.ACCEPTED)

            pending = await services.posts.list_posts(status=PostStatus.PENDING)
            nearby = await services.posts.list_posts(near=within_radius(GeoPoint(lat=12.98, lng=77.60), 10))
            mine = await services.posts.list_posts(accepted_by="V")
            return near, far, pending, nearby, mine

        near, far, pending, nearby, mine = asyncio.run(go())
        assert {p.waste_type for p in pending} == {"paper", "glass"}
        assert [p.id for p in nearby] == [near.id]
        assert [p.id for p in mine] == [far.id]

    def test_haversine_distance(self):
        bengaluru = GeoPoint(lat=12.9716, lng=77.5946)
        mumbai = GeoPoint(lat=19.0760, lng=72.8777)
        assert 830 < haversine_km(bengaluru, mumbai) < 850
        assert haversine_km(bengaluru, bengaluru) == 0
