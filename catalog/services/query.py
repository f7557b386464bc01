from sqlalchemy import or_
from pydantic import ValidationError
from structlog import get_logger
from catalog.config import settings
from catalog.exceptions import InvalidFilter
from catalog.models.property import Property
from catalog.schemas.property import (
    ALL_STATUSES,
    FilterSpec,
    Pagination,
    PropertyCreate,
    PropertyListResponse,
    PropertyResponse,
    PropertyUpdate,
)
from catalog.services.notifier import ChangeNotifier
from catalog.services.store import PropertyStore
from typing import Any, Dict, List, Optional, Set, Union
import math

logger = get_logger()

# An explicit null clears these; for other fields it means "leave as is".
# A null slug asks for regeneration from the title.
NULLABLE_FIELDS = {"slug", "bedrooms", "bathrooms", "size_sqm", "coordinates"}

class QueryEngine:
    """Filtered, paginated reads over the record store, and the write path
    that feeds the change notifier.

    Writes follow "mutation succeeds, then best-effort notify": a store error
    propagates and no event is emitted; a notification error is logged by the
    notifier and never undoes the mutation.
    """

    def __init__(self, store: PropertyStore, notifier: Optional[ChangeNotifier] = None, max_limit: Optional[int] = None):
        self.store = store
        self.notifier = notifier
        self.max_limit = max_limit or settings.QUERY_MAX_LIMIT

    def validate(self, spec: FilterSpec) -> None:
        if spec.page < 1:
            raise InvalidFilter(f"page must be a positive integer, got {spec.page}")
        if spec.limit < 1:
            raise InvalidFilter(f"limit must be a positive integer, got {spec.limit}")
        if spec.limit > self.max_limit:
            raise InvalidFilter(f"limit must not exceed {self.max_limit}, got {spec.limit}")
        if spec.min_price is not None and spec.max_price is not None and spec.min_price > spec.max_price:
            raise InvalidFilter(f"minPrice ({spec.min_price}) is greater than maxPrice ({spec.max_price})")

    def conditions(self, spec: FilterSpec) -> List:
        conds = []
        if spec.status != ALL_STATUSES:
            conds.append(Property.status == spec.status)
        if spec.property_type:
            conds.append(Property.property_type == spec.property_type)
        if spec.location:
            conds.append(Property.location.icontains(spec.location.strip(), autoescape=True))
        if spec.min_price is not None:
            conds.append(Property.price >= spec.min_price)
        if spec.max_price is not None:
            conds.append(Property.price <= spec.max_price)
        if spec.featured is not None:
            conds.append(Property.featured == spec.featured)
        if spec.bedrooms is not None:
            conds.append(Property.bedrooms >= spec.bedrooms)
        return conds

    async def query(self, spec: Union[FilterSpec, Dict[str, Any], None] = None) -> PropertyListResponse:
        if not isinstance(spec, FilterSpec):
            try:
                spec = FilterSpec(**(spec or {}))
            except ValidationError as e:
                raise InvalidFilter(f"malformed filter: {e}") from e
        self.validate(spec)
        conds = self.conditions(spec)
        total, records = await self.store.page(conds, offset=(spec.page - 1) * spec.limit, limit=spec.limit)
        pages = math.ceil(total / spec.limit)
        logger.info("Queried properties", filters=spec.normalized(), total=total, returned=len(records))
        return PropertyListResponse(
            properties=[PropertyResponse.model_validate(r) for r in records],
            pagination=Pagination(page=spec.page, limit=spec.limit, total=total, pages=pages),
        )

    async def find_by_id(self, record_id: str) -> Optional[PropertyResponse]:
        record = await self.store.get(record_id)
        return PropertyResponse.model_validate(record) if record is not None else None

    async def find_by_slug(self, slug: str) -> Optional[PropertyResponse]:
        record = await self.store.get_by_slug(slug)
        return PropertyResponse.model_validate(record) if record is not None else None

    async def find_featured(self, limit: Optional[int] = None) -> List[PropertyResponse]:
        if limit is None:
            limit = settings.FEATURED_DEFAULT_LIMIT
        if limit < 1 or limit > self.max_limit:
            raise InvalidFilter(f"limit must be between 1 and {self.max_limit}, got {limit}")
        records = await self.store.select([Property.status == "active", Property.featured.is_(True)], limit=limit)
        return [PropertyResponse.model_validate(r) for r in records]

    async def search(self, text: str) -> List[PropertyResponse]:
        """Active properties whose title, description or location contains ``text``.

        Unbounded; callers paginate the result themselves.
        """
        text = (text or "").strip()
        conds = [Property.status == "active"]
        if text:
            conds.append(or_(
                Property.title.icontains(text, autoescape=True),
                Property.description.icontains(text, autoescape=True),
                Property.location.icontains(text, autoescape=True),
            ))
        records = await self.store.select(conds)
        logger.info("Searched properties", text=text, returned=len(records))
        return [PropertyResponse.model_validate(r) for r in records]

    async def list_distinct_property_types(self) -> Set[str]:
        return await self.store.distinct(Property.property_type)

    async def list_distinct_locations(self) -> Set[str]:
        return await self.store.distinct(Property.location)

    async def create(self, data: Union[PropertyCreate, Dict[str, Any]]) -> PropertyResponse:
        if not isinstance(data, PropertyCreate):
            data = PropertyCreate.model_validate(data)
        record = await self.store.insert(data.model_dump())
        self._notify("created", record)
        return PropertyResponse.model_validate(record)

    async def update_by_id(self, record_id: str, patch: Union[PropertyUpdate, Dict[str, Any]]) -> bool:
        if not isinstance(patch, PropertyUpdate):
            patch = PropertyUpdate.model_validate(patch)
        values = {
            k: v for k, v in patch.model_dump(exclude_unset=True).items()
            if v is not None or k in NULLABLE_FIELDS
        }
        result = await self.store.update(record_id, values)
        if result is None:
            return False
        record, changed = result
        self._notify("updated", record, changed)
        return True

    async def delete_by_id(self, record_id: str) -> bool:
        record = await self.store.delete(record_id)
        if record is None:
            return False
        self._notify("deleted", record)
        return True

    def _notify(self, kind: str, record, changed: Optional[List[str]] = None) -> None:
        if self.notifier is None:
            return
        try:
            if kind == "created":
                event = self.notifier.created(record)
            elif kind == "updated":
                event = self.notifier.updated(record, changed or [])
            else:
                event = self.notifier.deleted(record.id, record.slug)
        except Exception as e:
            logger.error("Could not build change event", kind=kind, record_id=record.id, error=str(e))
            return
        self.notifier.notify(event)
