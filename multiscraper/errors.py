"""Exception types shared by the fetch, reconcile and delivery stages."""

from typing import Optional


class MultiScraperError(Exception):
    """Base class for application errors."""


class FetchError(MultiScraperError):
    """A retailer search could not produce a result set.

    Never raised for an empty result; zero listings is a valid answer.
    """

    def __init__(self, retailer: str, message: str):
        self.retailer = retailer
        super().__init__(f"{retailer}: {message}")


class UpstreamUnavailableError(FetchError):
    """Upstream unreachable, timing out, rate-limiting or answering with an error status."""

    def __init__(self, retailer: str, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(retailer, message)

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429


class ResponseShapeError(FetchError):
    """Upstream answered but the payload has no structure we recognize."""


class ReconciliationError(MultiScraperError):
    """A single listing could not be reconciled against stored products."""

    def __init__(self, external_id: Optional[str], message: str):
        self.external_id = external_id
        super().__init__(f"listing {external_id or '<unknown>'}: {message}")


class PersistenceError(MultiScraperError):
    """The entity store is unavailable or rejected a write."""


class DeliveryError(MultiScraperError):
    """The delivery transport could not hand a message to the recipient."""

    def __init__(self, recipient: Optional[int], message: str):
        self.recipient = recipient
        super().__init__(f"recipient {recipient}: {message}")
