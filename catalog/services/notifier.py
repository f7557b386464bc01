from structlog import get_logger
from catalog.models.property import utcnow
from catalog.schemas.property import ChangeEvent, PropertyResponse, PROPERTY_CREATED, PROPERTY_UPDATED, PROPERTY_DELETED
from catalog.services.hub import SubscriptionHub
from typing import List

logger = get_logger()

class ChangeNotifier:
    """Turns accepted store mutations into change events on the hub.

    Called only after the store has committed. Never buffers or retries, and
    never raises: a failed broadcast leaves listeners stale until their next
    query, the mutation itself stands.
    """

    def __init__(self, hub: SubscriptionHub):
        self._hub = hub

    def notify(self, event: ChangeEvent) -> None:
        try:
            delivered = self._hub.broadcast(event)
            logger.info("Change event broadcast", event_type=event.type, record_id=event.record_id, listeners=delivered)
        except Exception as e:
            logger.error("Change notification failed", event_type=event.type, record_id=event.record_id, error=str(e))

    def created(self, record) -> ChangeEvent:
        return ChangeEvent(
            type=PROPERTY_CREATED,
            record_id=record.id,
            timestamp=utcnow(),
            data=PropertyResponse.model_validate(record).model_dump(mode="json", by_alias=True),
        )

    def updated(self, record, affected_fields: List[str]) -> ChangeEvent:
        return ChangeEvent(
            type=PROPERTY_UPDATED,
            record_id=record.id,
            affected_fields=sorted(affected_fields),
            timestamp=utcnow(),
            data=PropertyResponse.model_validate(record).model_dump(mode="json", by_alias=True),
        )

    def deleted(self, record_id: str, slug: str | None = None) -> ChangeEvent:
        return ChangeEvent(
            type=PROPERTY_DELETED,
            record_id=record_id,
            timestamp=utcnow(),
            data={"id": record_id, "slug": slug},
        )
