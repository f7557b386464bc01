from sqlalchemy import Column, String, Text, Float, Integer, Boolean, JSON, DateTime, Index
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase
from datetime import datetime, timezone
import uuid

def utcnow() -> datetime:
    # Naive UTC so values compare the same on SQLite and Postgres
    return datetime.now(timezone.utc).replace(tzinfo=None)

def new_id() -> str:
    return uuid.uuid4().hex

class Base(AsyncAttrs, DeclarativeBase):
    pass

class Property(Base):
    __tablename__ = "properties"
    id = Column(String(32), primary_key=True, default=new_id)
    title = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, unique=True)
    description = Column(Text, nullable=False, default="")
    location = Column(String(255), nullable=False, default="")
    property_type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    price = Column(Float, nullable=False, default=0)
    bedrooms = Column(Integer)
    bathrooms = Column(Integer)
    size_sqm = Column(Float)
    amenities = Column(JSON, nullable=False, default=list)
    images = Column(JSON, nullable=False, default=list)
    coordinates = Column(JSON)
    featured = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_properties_created", "created_at", "id"),
        Index("idx_properties_status_created", "status", "created_at"),
        Index("idx_properties_featured_status", "featured", "status"),
    )

# Columns a caller may write; everything else is server-assigned
WRITABLE_FIELDS = (
    "title", "slug", "description", "location", "property_type", "status", "price",
    "bedrooms", "bathrooms", "size_sqm", "amenities", "images", "coordinates", "featured",
)
