# app/services/post_store.py
import logging
import math
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends
from pydantic import ValidationError as PydanticValidationError

from app.core.errors import InvalidTransition, NotFound, PermissionDenied, ValidationError
from app.core.session import Session
from app.schemas.posts import GeoPoint, PostCreate, PostStatus, PostUpdate, WastePost
from app.services.document_store import (
    SERVER_TIMESTAMP,
    DocumentStore,
    PreconditionFailed,
    created_at_key,
    get_document_store,
)

logger = logging.getLogger(__name__)

POSTS = "waste_posts"
EARTH_RADIUS_KM = 6371.0

# Concurrent transitions re-evaluate against the fresh document this many times
_MAX_ATTEMPTS = 3

PostPredicate = Callable[[WastePost], bool]


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    dlat = lat2 - lat1
    dlng = math.radians(b.lng - a.lng)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def within_radius(origin: GeoPoint, radius_km: float) -> PostPredicate:
    """Distance predicate for `list_posts`; posts without a location never match."""

    def predicate(post: WastePost) -> bool:
        return post.location is not None and haversine_km(origin, post.location) <= radius_km

    return predicate


def _validate_fields(waste_type: Optional[str], quantity: Optional[float]) -> None:
    if waste_type is not None and not waste_type.strip():
        raise ValidationError("wasteType is required")
    if quantity is not None and not quantity > 0:
        raise ValidationError("quantity must be a positive number")


class PostStore:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def create_post(self, session: Session, data: PostCreate) -> WastePost:
        if not session.user_id:
            raise ValidationError("contributorId is required")
        _validate_fields(data.waste_type, data.quantity)

        doc = data.model_dump(by_alias=True)
        doc.update(
            {
                "wasteType": data.waste_type.strip(),
                "contributorId": session.user_id,
                "contributorEmail": data.contributor_email or session.email,
                "status": PostStatus.PENDING.value,
                "acceptedBy": None,
                "createdAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            }
        )
        created = await self.store.add(POSTS, doc)
        logger.info("Post %s created by %s (%s, %s kg)", created["id"], session.user_id, data.waste_type, data.quantity)
        return WastePost.model_validate(created)

    async def find_post(self, post_id: str) -> Optional[WastePost]:
        doc = await self.store.get(POSTS, post_id)
        return WastePost.model_validate(doc) if doc else None

    async def get_post(self, post_id: str) -> WastePost:
        post = await self.find_post(post_id)
        if post is None:
            raise NotFound(f"Post {post_id} not found")
        return post

    async def list_posts(
        self,
        status: Optional[PostStatus] = None,
        contributor_id: Optional[str] = None,
        accepted_by: Optional[str] = None,
        near: Optional[PostPredicate] = None,
    ) -> List[WastePost]:
        filters: Dict[str, Any] = {}
        if status is not None:
            filters["status"] = PostStatus(status).value
        if contributor_id:
            filters["contributorId"] = contributor_id
        if accepted_by:
            filters["acceptedBy"] = accepted_by
        docs = await self.store.query(POSTS, filters)
        docs.sort(key=created_at_key, reverse=True)
        posts = [WastePost.model_validate(d) for d in docs]
        if near is not None:
            posts = [p for p in posts if near(p)]
        return posts

    async def update_post(self, session: Session, post_id: str, changes: PostUpdate) -> WastePost:
        """Edit descriptive fields. Status fields only move through transitions."""
        fields = changes.model_dump(by_alias=True, exclude_unset=True)
        _validate_fields(changes.waste_type, changes.quantity)
        if changes.waste_type is not None:
            fields["wasteType"] = changes.waste_type.strip()

        def decide(post: WastePost) -> Dict[str, Any]:
            if post.contributor_id != session.user_id:
                raise PermissionDenied("Only the contributor can edit this post")
            if post.status != PostStatus.PENDING:
                raise InvalidTransition("Only pending posts can be edited")
            # The edited document must still load before anything is written
            try:
                WastePost.model_validate({**post.model_dump(by_alias=True), **fields})
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid post update: {exc.errors()[0]['msg']}")
            return fields

        return await self._transition(post_id, decide)

    # ------------------------------------------------------------------
    # State machine
    #   pending --accept--> accepted --cancel--> pending
    #   accepted --collect--> collected --undo--> accepted
    # ------------------------------------------------------------------

    async def accept_or_release(self, post_id: str, user_id: str, target_status: PostStatus) -> WastePost:
        target_status = PostStatus(target_status)
        if target_status == PostStatus.ACCEPTED:
            decide = self._accept_rule(user_id)
        elif target_status == PostStatus.PENDING:
            decide = self._release_rule(user_id)
        else:
            raise InvalidTransition("Use mark_collected to collect a post")
        post = await self._transition(post_id, decide)
        logger.info("Post %s -> %s by %s", post_id, post.status.value, user_id)
        return post

    async def mark_collected(self, post_id: str, user_id: str) -> WastePost:
        def decide(post: WastePost) -> Dict[str, Any]:
            if post.status != PostStatus.ACCEPTED:
                raise InvalidTransition(f"Cannot collect a {post.status.value} post")
            if post.accepted_by != user_id:
                raise PermissionDenied("Only the current acceptor can collect this post")
            return {"status": PostStatus.COLLECTED.value}

        post = await self._transition(post_id, decide)
        logger.info("Post %s collected by %s", post_id, user_id)
        return post

    async def revert_to_accepted(self, post_id: str, user_id: str) -> WastePost:
        def decide(post: WastePost) -> Dict[str, Any]:
            if post.status != PostStatus.COLLECTED:
                raise InvalidTransition(f"Cannot undo collection of a {post.status.value} post")
            if post.accepted_by != user_id:
                raise PermissionDenied("Only the current acceptor can undo collection")
            return {"status": PostStatus.ACCEPTED.value}

        post = await self._transition(post_id, decide)
        logger.info("Post %s reverted to accepted by %s", post_id, user_id)
        return post

    async def delete_post(self, post_id: str, user_id: str) -> None:
        post = await self.get_post(post_id)
        if post.contributor_id != user_id:
            raise PermissionDenied("Only the contributor can delete this post")
        if post.status != PostStatus.PENDING:
            raise InvalidTransition(f"Cannot delete a {post.status.value} post")
        try:
            await self.store.delete(POSTS, post_id, expected={"status": PostStatus.PENDING.value})
        except PreconditionFailed:
            raise InvalidTransition("Post was accepted while deleting")
        logger.info("Post %s deleted by %s", post_id, user_id)

    @staticmethod
    def _accept_rule(user_id: str) -> Callable[[WastePost], Dict[str, Any]]:
        def decide(post: WastePost) -> Dict[str, Any]:
            if post.accepted_by and post.accepted_by != user_id:
                raise PermissionDenied("Post is already accepted by another collector")
            if post.status != PostStatus.PENDING:
                raise InvalidTransition(f"Cannot accept a {post.status.value} post")
            if post.contributor_id == user_id:
                raise PermissionDenied("Contributors cannot accept their own post")
            return {"status": PostStatus.ACCEPTED.value, "acceptedBy": user_id}

        return decide

    @staticmethod
    def _release_rule(user_id: str) -> Callable[[WastePost], Dict[str, Any]]:
        def decide(post: WastePost) -> Dict[str, Any]:
            if post.status == PostStatus.PENDING:
                raise InvalidTransition("Post is not accepted")
            if post.accepted_by != user_id:
                raise PermissionDenied("Only the current acceptor can release this post")
            if post.status != PostStatus.ACCEPTED:
                raise InvalidTransition(f"Cannot release a {post.status.value} post")
            return {"status": PostStatus.PENDING.value, "acceptedBy": None}

        return decide

    async def _transition(
        self,
        post_id: str,
        decide: Callable[[WastePost], Dict[str, Any]],
    ) -> WastePost:
        """
        Compare-and-set update: `decide` inspects the current post and returns
        the changes (or raises). The write only lands if status and acceptor
        are unchanged since the read; otherwise the rule runs again on the
        fresh document.
        """
        post = await self.get_post(post_id)
        for _ in range(_MAX_ATTEMPTS):
            changes = dict(decide(post))
            changes["updatedAt"] = SERVER_TIMESTAMP
            expected = {"status": post.status.value, "acceptedBy": post.accepted_by}
            try:
                doc = await self.store.update(POSTS, post_id, changes, expected=expected)
                return WastePost.model_validate(doc)
            except PreconditionFailed as exc:
                logger.warning("Post %s changed concurrently, re-evaluating", post_id)
                post = WastePost.model_validate(exc.current)
        decide(post)
        raise InvalidTransition("Post is changing too quickly, try again")


def get_post_store(store: DocumentStore = Depends(get_document_store)) -> PostStore:
    return PostStore(store)
