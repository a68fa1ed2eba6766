# app/services/collection_otp.py
import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from fastapi import Depends

from app.core.config import settings
from app.core.errors import InvalidTransition, NotFound, PermissionDenied, RelayError, ValidationError
from app.core.session import Session
from app.schemas.otp import OtpIssued
from app.schemas.posts import PostStatus, WastePost
from app.services.directory import get_user_directory
from app.services.document_store import (
    DocumentStore,
    DuplicateKeyError,
    Increment,
    PreconditionFailed,
    get_document_store,
)
from app.services.post_store import PostStore, get_post_store

logger = logging.getLogger(__name__)

OTPS = "collection_otps"
OTP_PATTERN = re.compile(r"^\d{6}$")


def generate_otp() -> str:
    return f"{secrets.randbelow(10 ** 6):06d}"


def _digest(post_id: str, otp: str) -> str:
    return hashlib.sha256(f"{post_id}:{otp}".encode()).hexdigest()


class OtpRelayClient:
    """Posts {email, otp} to the mail relay."""

    def __init__(self, base_url: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def send_otp(self, email: str, otp: str) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                r = await client.post(f"{self.base_url}/send-otp", json={"email": email, "otp": otp})
            except httpx.HTTPError as e:
                logger.error("OTP relay unreachable: %s", e)
                raise RelayError("Could not reach the OTP mail relay")
        if r.status_code != 200:
            logger.error("OTP relay error (%s): %s", r.status_code, r.text[:200])
            raise RelayError("The OTP mail relay rejected the request")


class CollectionConfirmation:
    """
    Gate in front of `mark_collected`: the acceptor requests a code, which is
    mailed to the contributor, and must present it to confirm collection.
    Only a digest of the code is stored; codes are single use.
    """

    def __init__(self, store: DocumentStore, posts: PostStore, relay: OtpRelayClient, directory=None):
        self.store = store
        self.posts = posts
        self.relay = relay
        self.directory = directory

    async def _contributor_email(self, post: WastePost) -> str:
        if post.contributor_email:
            return post.contributor_email
        if self.directory is not None:
            try:
                profile = await self.directory.get_user_by_id(post.contributor_id)
            except Exception as e:
                logger.warning("Profile lookup for %s failed: %s", post.contributor_id, e)
                profile = None
            if profile and profile.get("email"):
                return profile["email"]
        raise NotFound("The contributor has no email address on file")

    async def issue(self, session: Session, post_id: str) -> OtpIssued:
        post = await self.posts.get_post(post_id)
        if post.status != PostStatus.ACCEPTED:
            raise InvalidTransition(f"Cannot confirm collection of a {post.status.value} post")
        if post.accepted_by != session.user_id:
            raise PermissionDenied("Only the current acceptor can request a collection code")

        email = await self._contributor_email(post)
        otp = generate_otp()
        expires = datetime.now(timezone.utc) + timedelta(seconds=settings.OTP_TTL_SECONDS)
        record = {
            "postId": post_id,
            "digest": _digest(post_id, otp),
            "expiresAt": expires,
            "attempts": 0,
            "issuedTo": session.user_id,
        }
        try:
            await self.store.create_if_absent(OTPS, post_id, record)
        except DuplicateKeyError:
            # A newer code replaces the outstanding one
            await self.store.update(OTPS, post_id, record)

        try:
            await self.relay.send_otp(email, otp)
        except RelayError:
            await self._discard(post_id)
            raise
        logger.info("Collection code for post %s sent to contributor", post_id)
        return OtpIssued(sent_to=email, expires_in=settings.OTP_TTL_SECONDS)

    async def verify(self, session: Session, post_id: str, otp: Optional[str]) -> None:
        if not otp or not OTP_PATTERN.match(otp):
            raise ValidationError("A 6-digit code is required")
        record = await self.store.get(OTPS, post_id)
        if record is None or record.get("issuedTo") != session.user_id:
            raise ValidationError("No collection code was requested for this post")
        if record["expiresAt"] < datetime.now(timezone.utc):
            await self._discard(post_id)
            raise ValidationError("The collection code has expired")
        if record["attempts"] >= settings.OTP_MAX_ATTEMPTS:
            await self._discard(post_id)
            raise ValidationError("Too many wrong codes, request a new one")

        # Every check consumes an attempt before the code is compared
        try:
            record = await self.store.update(
                OTPS, post_id, {"attempts": Increment(1)}, expected={"digest": record["digest"]}
            )
        except (NotFound, PreconditionFailed):
            raise ValidationError("The collection code was replaced or used, request a new one")
        if record["attempts"] > settings.OTP_MAX_ATTEMPTS:
            await self._discard(post_id)
            raise ValidationError("Too many wrong codes, request a new one")

        if not hmac.compare_digest(record["digest"], _digest(post_id, otp)):
            raise ValidationError("Incorrect collection code")
        try:
            await self.store.delete(OTPS, post_id, expected={"digest": record["digest"]})
        except (NotFound, PreconditionFailed):
            raise ValidationError("The collection code was already used")

    async def _discard(self, post_id: str) -> None:
        try:
            await self.store.delete(OTPS, post_id)
        except NotFound:
            logger.debug("Collection code for post %s already gone", post_id)

    async def confirm_collection(self, session: Session, post_id: str, otp: Optional[str]) -> WastePost:
        if settings.OTP_REQUIRED:
            # Preconditions first so a pending post reports InvalidTransition
            post = await self.posts.get_post(post_id)
            if post.status == PostStatus.ACCEPTED and post.accepted_by == session.user_id:
                await self.verify(session, post_id, otp)
        return await self.posts.mark_collected(post_id, session.user_id)


_relay: Optional[OtpRelayClient] = None


def get_otp_relay() -> OtpRelayClient:
    global _relay
    if _relay is None:
        _relay = OtpRelayClient(settings.OTP_RELAY_URL)
    return _relay


def get_collection_confirmation(
    store: DocumentStore = Depends(get_document_store),
    posts: PostStore = Depends(get_post_store),
    relay: OtpRelayClient = Depends(get_otp_relay),
    directory=Depends(get_user_directory),
) -> CollectionConfirmation:
    return CollectionConfirmation(store, posts, relay, directory)
