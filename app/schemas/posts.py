from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class PostStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    COLLECTED = "collected"


class GeoPoint(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class _CamelModel(BaseModel):
    # Documents are stored with camelCase keys, as the web client writes them
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PostCreate(_CamelModel):
    waste_type: str
    quantity: float
    contributor_email: Optional[str] = None
    address: Optional[str] = None
    location: Optional[GeoPoint] = None
    available_date: Optional[str] = None
    available_from: Optional[str] = None
    available_to: Optional[str] = None
    sell_for_free: bool = True
    image_url: Optional[str] = None


class PostUpdate(_CamelModel):
    waste_type: Optional[str] = None
    quantity: Optional[float] = None
    contributor_email: Optional[str] = None
    address: Optional[str] = None
    location: Optional[GeoPoint] = None
    available_date: Optional[str] = None
    available_from: Optional[str] = None
    available_to: Optional[str] = None
    sell_for_free: Optional[bool] = None
    image_url: Optional[str] = None

    @model_validator(mode="after")
    def _required_fields_stay_set(self) -> "PostUpdate":
        # Omitting a field leaves it alone; null would blank a required field
        for name in ("waste_type", "quantity", "sell_for_free"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{to_camel(name)} cannot be null")
        return self


class WastePost(_CamelModel):
    id: str
    contributor_id: str
    contributor_email: Optional[str] = None
    waste_type: str
    quantity: float
    location: Optional[GeoPoint] = None
    address: Optional[str] = None
    available_date: Optional[str] = None
    available_from: Optional[str] = None
    available_to: Optional[str] = None
    sell_for_free: bool = True
    image_url: Optional[str] = None
    status: PostStatus = PostStatus.PENDING
    accepted_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def summary(self) -> str:
        qty = int(self.quantity) if float(self.quantity).is_integer() else self.quantity
        return f"Re: {self.waste_type} ({qty} kg)"


class TransitionRequest(BaseModel):
    otp: Optional[str] = None


class PostList(BaseModel):
    posts: List[WastePost]
    empty_reason: Optional[str] = None
