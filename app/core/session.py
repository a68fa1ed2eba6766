from dataclasses import dataclass
from typing import Optional

from fastapi import Header

from app.core.errors import Unauthenticated, ValidationError

ROLES = ("contributor", "volunteer", "recycler", "ngo")


@dataclass(frozen=True)
class Session:
    """Identity of the caller, built once per request and passed explicitly."""

    user_id: str
    role: str
    email: Optional[str] = None

    @property
    def is_collector(self) -> bool:
        return self.role in ("volunteer", "recycler")


def build_session(user_id: Optional[str], role: Optional[str], email: Optional[str] = None) -> Session:
    if not user_id:
        raise Unauthenticated()
    role = (role or "contributor").lower()
    if role not in ROLES:
        raise ValidationError(f"Unknown role: {role}")
    return Session(user_id=user_id, role=role, email=email)


async def get_session(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
) -> Session:
    return build_session(x_user_id, x_user_role, x_user_email)
