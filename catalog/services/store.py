from contextlib import asynccontextmanager
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, OperationalError, InterfaceError
from sqlalchemy.ext.asyncio import async_sessionmaker
from structlog import get_logger
from catalog.exceptions import StoreUnavailable
from catalog.models.property import Property, WRITABLE_FIELDS, new_id, utcnow
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple
from datetime import datetime
import re

logger = get_logger()

# Fixed listing order; never client-configurable so pages stay stable
ORDER = (Property.created_at.desc(), Property.id.desc())

# Attempts at claiming a slug that a concurrent write took first
SLUG_ATTEMPTS = 5

def slugify(text: str) -> str:
    """Lowercase, hyphen-separated, only [a-z0-9-], no stray hyphens."""
    slug = str(text).lower().strip()
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"[^a-z0-9-]+", "", slug)
    slug = re.sub(r"-{2,}", "-", slug)
    return slug.strip("-") or "property"

def _clean(data: Dict[str, Any]) -> Dict[str, Any]:
    values = {k: v for k, v in data.items() if k in WRITABLE_FIELDS}
    if values.get("amenities") is not None:
        values["amenities"] = list(dict.fromkeys(values["amenities"]))
    return values

class PropertyStore:
    """Durable holder of property records.

    Owns identifiers, timestamps and slugs. Every database failure that means
    the store cannot be reached surfaces as StoreUnavailable; other errors
    propagate unchanged. Concurrent writes to the same record are
    last-writer-wins.
    """

    def __init__(self, session_factory: async_sessionmaker, clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    @asynccontextmanager
    async def _session(self):
        try:
            async with self._session_factory() as session:
                yield session
        except (OperationalError, InterfaceError, OSError) as e:
            logger.error("Record store unavailable", error=str(e))
            raise StoreUnavailable(str(e)) from e

    async def _unique_slug(self, session, base: str, exclude_id: Optional[str] = None) -> str:
        candidate, n = base, 1
        while True:
            stmt = select(Property.id).where(Property.slug == candidate)
            if exclude_id is not None:
                stmt = stmt.where(Property.id != exclude_id)
            if (await session.execute(stmt.limit(1))).first() is None:
                return candidate
            n += 1
            candidate = f"{base}-{n}"

    async def insert(self, data: Dict[str, Any]) -> Property:
        values = _clean(data)
        base = slugify(values.get("slug") or values["title"])
        now = self._clock()
        for attempt in range(1, SLUG_ATTEMPTS + 1):
            try:
                async with self._session() as session:
                    values["slug"] = await self._unique_slug(session, base)
                    record = Property(id=new_id(), created_at=now, updated_at=now, **values)
                    session.add(record)
                    await session.commit()
                    await session.refresh(record)
                break
            except IntegrityError as e:
                if attempt == SLUG_ATTEMPTS:
                    raise
                logger.warning("Slug taken by a concurrent insert, retrying", slug=values["slug"], attempt=attempt, error=str(e.orig))
        logger.info("Inserted property", property_id=record.id, slug=record.slug)
        return record

    async def update(self, record_id: str, patch: Dict[str, Any]) -> Optional[Tuple[Property, List[str]]]:
        """Apply ``patch`` and refresh updated_at.

        Returns the record and the names of fields whose value changed, or
        None when no record has ``record_id``. An explicitly empty slug is
        regenerated from the (possibly new) title.
        """
        values = _clean(patch)
        async with self._session() as session:
            record = await session.get(Property, record_id)
            if record is None:
                return None
            if "slug" in values:
                base = slugify(values["slug"] or values.get("title") or record.title)
                values["slug"] = await self._unique_slug(session, base, exclude_id=record.id)
            changed = []
            for field, value in values.items():
                if getattr(record, field) != value:
                    setattr(record, field, value)
                    changed.append(field)
            # updated_at never moves backwards even if the clock does
            record.updated_at = max(self._clock(), record.updated_at)
            await session.commit()
            await session.refresh(record)
        logger.info("Updated property", property_id=record_id, changed=changed)
        return record, changed

    async def delete(self, record_id: str) -> Optional[Property]:
        async with self._session() as session:
            record = await session.get(Property, record_id)
            if record is None:
                return None
            await session.delete(record)
            await session.commit()
        logger.info("Deleted property", property_id=record_id)
        return record

    async def get(self, record_id: str) -> Optional[Property]:
        async with self._session() as session:
            return await session.get(Property, record_id)

    async def get_by_slug(self, slug: str) -> Optional[Property]:
        async with self._session() as session:
            result = await session.execute(select(Property).where(Property.slug == slug).limit(1))
            return result.scalars().first()

    async def select(self, conditions: Sequence = (), offset: int = 0, limit: Optional[int] = None) -> List[Property]:
        stmt = select(Property)
        if conditions:
            stmt = stmt.where(*conditions)
        stmt = stmt.order_by(*ORDER).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count(self, conditions: Sequence = ()) -> int:
        async with self._session() as session:
            return await self._count(session, conditions)

    async def _count(self, session, conditions: Sequence) -> int:
        stmt = select(func.count()).select_from(Property)
        if conditions:
            stmt = stmt.where(*conditions)
        return int((await session.execute(stmt)).scalar_one())

    async def page(self, conditions: Sequence, offset: int, limit: int) -> Tuple[int, List[Property]]:
        """One page of matches and the total match count, read by a single statement.

        The total rides along as a window count so it always agrees with the
        rows returned; past the last page it is counted separately.
        """
        stmt = select(Property, func.count().over().label("total"))
        if conditions:
            stmt = stmt.where(*conditions)
        stmt = stmt.order_by(*ORDER).offset(offset).limit(limit)
        async with self._session() as session:
            rows = (await session.execute(stmt)).all()
            if not rows:
                return await self._count(session, conditions), []
            return int(rows[0].total), [row[0] for row in rows]

    async def distinct(self, column) -> Set[Any]:
        async with self._session() as session:
            result = await session.execute(select(column).distinct())
            return {value for value in result.scalars().all() if value is not None}
