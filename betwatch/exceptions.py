"""Error taxonomy for the market-data synchronization engine."""

from __future__ import annotations


class BetWatchError(Exception):
    """Base exception for all betwatch errors."""

    pass


class TransientFetchError(BetWatchError):
    """Network, timeout or HTTP status failure on a snapshot or history fetch."""

    pass


class MalformedPayloadError(BetWatchError):
    """Provider responded with a payload of unexpected shape."""

    pass


class ValidationError(BetWatchError):
    """User-supplied market reference is unusable.

    Raised before any optimistic mutation is applied.
    """

    pass


class PersistenceError(BetWatchError):
    """Durable store write or delete failed."""

    pass


class SubscriptionError(BetWatchError):
    """Change-event channel rejected the subscription."""

    pass
