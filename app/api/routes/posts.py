from typing import Optional

from fastapi import APIRouter, Depends, Query, Response

from app.core.errors import ValidationError
from app.core.session import Session, get_session
from app.schemas.messages import UnreadForPost
from app.schemas.otp import OtpIssued
from app.schemas.posts import (
    GeoPoint,
    PostCreate,
    PostList,
    PostStatus,
    PostUpdate,
    TransitionRequest,
    WastePost,
)
from app.services.collection_otp import CollectionConfirmation, get_collection_confirmation
from app.services.post_store import PostStore, get_post_store, within_radius
from app.services.unread import UnreadAggregator, get_unread_aggregator

router = APIRouter()


def _empty_reason(status: Optional[PostStatus], near: bool, radius_km: Optional[float]) -> str:
    parts = []
    if status is not None:
        parts.append(f"no {status.value} posts")
    else:
        parts.append("no posts")
    if near:
        parts.append(f"within {radius_km:g} km of the given location")
    return " ".join(parts) + " match the current filters"


@router.post("", response_model=WastePost, status_code=201)
async def create_post(
    payload: PostCreate,
    session: Session = Depends(get_session),
    posts: PostStore = Depends(get_post_store),
):
    return await posts.create_post(session, payload)


@router.get("", response_model=PostList)
async def list_posts(
    status: Optional[PostStatus] = None,
    contributor_id: Optional[str] = None,
    accepted_by: Optional[str] = None,
    lat: Optional[float] = Query(default=None, ge=-90, le=90),
    lng: Optional[float] = Query(default=None, ge=-180, le=180),
    radius_km: Optional[float] = Query(default=None, gt=0),
    posts: PostStore = Depends(get_post_store),
):
    """Lists posts; an empty result always says which filter excluded everything."""
    near = None
    if lat is not None or lng is not None or radius_km is not None:
        if lat is None or lng is None or radius_km is None:
            raise ValidationError("lat, lng and radius_km must be given together")
        near = within_radius(GeoPoint(lat=lat, lng=lng), radius_km)

    items = await posts.list_posts(status=status, contributor_id=contributor_id, accepted_by=accepted_by, near=near)
    reason = None if items else _empty_reason(status, near is not None, radius_km)
    return PostList(posts=items, empty_reason=reason)


@router.get("/{post_id}", response_model=WastePost)
async def get_post(post_id: str, posts: PostStore = Depends(get_post_store)):
    return await posts.get_post(post_id)


@router.patch("/{post_id}", response_model=WastePost)
async def update_post(
    post_id: str,
    payload: PostUpdate,
    session: Session = Depends(get_session),
    posts: PostStore = Depends(get_post_store),
):
    return await posts.update_post(session, post_id, payload)


@router.delete("/{post_id}", status_code=204)
async def delete_post(
    post_id: str,
    session: Session = Depends(get_session),
    posts: PostStore = Depends(get_post_store),
):
    await posts.delete_post(post_id, session.user_id)
    return Response(status_code=204)


@router.post("/{post_id}/accept", response_model=WastePost)
async def accept_post(
    post_id: str,
    session: Session = Depends(get_session),
    posts: PostStore = Depends(get_post_store),
):
    return await posts.accept_or_release(post_id, session.user_id, PostStatus.ACCEPTED)


@router.post("/{post_id}/release", response_model=WastePost)
async def release_post(
    post_id: str,
    session: Session = Depends(get_session),
    posts: PostStore = Depends(get_post_store),
):
    return await posts.accept_or_release(post_id, session.user_id, PostStatus.PENDING)


@router.post("/{post_id}/otp", response_model=OtpIssued)
async def request_collection_code(
    post_id: str,
    session: Session = Depends(get_session),
    confirmation: CollectionConfirmation = Depends(get_collection_confirmation),
):
    return await confirmation.issue(session, post_id)


@router.post("/{post_id}/collect", response_model=WastePost)
async def collect_post(
    post_id: str,
    payload: Optional[TransitionRequest] = None,
    session: Session = Depends(get_session),
    confirmation: CollectionConfirmation = Depends(get_collection_confirmation),
):
    otp = payload.otp if payload else None
    return await confirmation.confirm_collection(session, post_id, otp)


@router.post("/{post_id}/revert", response_model=WastePost)
async def revert_post(
    post_id: str,
    session: Session = Depends(get_session),
    posts: PostStore = Depends(get_post_store),
):
    return await posts.revert_to_accepted(post_id, session.user_id)


@router.get("/{post_id}/unread", response_model=Optional[UnreadForPost])
async def post_unread(
    post_id: str,
    session: Session = Depends(get_session),
    unread: UnreadAggregator = Depends(get_unread_aggregator),
):
    return await unread.unread_for_post(post_id, session.user_id)
