class CatalogError(Exception):
    """Base class for errors raised by the catalog core."""


class InvalidFilter(CatalogError):
    """Bad pagination or price-range input. Rejected before touching the store."""


class NotFound(CatalogError):
    """A single-record lookup by id or slug found nothing."""


class StoreUnavailable(CatalogError):
    """The record store could not be reached. Not retried inside the engine."""


class NotificationFailure(CatalogError):
    """Delivering a change event to one listener failed."""

    def __init__(self, subscription_id: str, reason: str):
        super().__init__(f"delivery to {subscription_id} failed: {reason}")
        self.subscription_id = subscription_id
        self.reason = reason
