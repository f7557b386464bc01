from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Any, Dict, List, Optional
from datetime import datetime
from catalog.config import settings
import hashlib
import json

ALL_STATUSES = "all"

PROPERTY_CREATED = "property_created"
PROPERTY_UPDATED = "property_updated"
PROPERTY_DELETED = "property_deleted"
EVENT_TYPES = (PROPERTY_CREATED, PROPERTY_UPDATED, PROPERTY_DELETED)

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class Coordinates(BaseModel):
    lat: float
    lng: float

class PropertyCreate(CamelModel):
    title: str = Field(min_length=1)
    slug: Optional[str] = None
    description: str = ""
    location: str = ""
    property_type: str
    status: str = "active"
    price: float = Field(ge=0)
    bedrooms: Optional[int] = Field(default=None, ge=0)
    bathrooms: Optional[int] = Field(default=None, ge=0)
    size_sqm: Optional[float] = Field(default=None, ge=0)
    amenities: List[str] = []
    images: List[str] = []
    coordinates: Optional[Coordinates] = None
    featured: bool = False

class PropertyUpdate(CamelModel):
    title: Optional[str] = Field(default=None, min_length=1)
    slug: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    property_type: Optional[str] = None
    status: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    bedrooms: Optional[int] = Field(default=None, ge=0)
    bathrooms: Optional[int] = Field(default=None, ge=0)
    size_sqm: Optional[float] = Field(default=None, ge=0)
    amenities: Optional[List[str]] = None
    images: Optional[List[str]] = None
    coordinates: Optional[Coordinates] = None
    featured: Optional[bool] = None

class PropertyResponse(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    title: str
    slug: str
    description: str
    location: str
    property_type: str
    status: str
    price: float
    bedrooms: Optional[int] = None
    bathrooms: Optional[int] = None
    size_sqm: Optional[float] = None
    amenities: List[str] = []
    images: List[str] = []
    coordinates: Optional[Coordinates] = None
    featured: bool
    created_at: datetime
    updated_at: datetime

class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int

class PropertyListResponse(BaseModel):
    properties: List[PropertyResponse]
    pagination: Pagination

class FilterSpec(CamelModel):
    """Query parameters selecting one page of properties.

    Two specs that select the same page produce the same ``cache_key()``
    regardless of field order, letter case of ``location`` or whether a
    default was spelled out.
    """

    page: int = 1
    limit: int = Field(default_factory=lambda: settings.QUERY_DEFAULT_LIMIT)
    status: str = "active"
    property_type: Optional[str] = None
    location: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    featured: Optional[bool] = None
    bedrooms: Optional[int] = None

    @field_validator("status", mode="before")
    @classmethod
    def _status_sentinel(cls, v):
        if v is None:
            return "active"
        v = str(v).strip()
        return ALL_STATUSES if v in ("", ALL_STATUSES) else v

    @field_validator("location", "property_type", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    def normalized(self) -> Dict[str, Any]:
        data = {
            "page": self.page,
            "limit": self.limit,
            "status": self.status,
            "propertyType": self.property_type,
            "location": self.location.strip().lower() if self.location else None,
            "minPrice": float(self.min_price) if self.min_price is not None else None,
            "maxPrice": float(self.max_price) if self.max_price is not None else None,
            "featured": self.featured,
            "bedrooms": self.bedrooms,
        }
        return {k: v for k, v in sorted(data.items()) if v is not None}

    def cache_key(self) -> str:
        payload = json.dumps(self.normalized(), sort_keys=True, separators=(",", ":"))
        return "properties:" + hashlib.sha1(payload.encode("utf-8")).hexdigest()

class ChangeEvent(CamelModel):
    type: str
    record_id: str
    affected_fields: Optional[List[str]] = None
    timestamp: datetime
    data: Optional[Dict[str, Any]] = None

    @property
    def kind(self) -> str:
        return self.type.removeprefix("property_")

    def to_message(self) -> str:
        return self.model_dump_json(by_alias=True)
