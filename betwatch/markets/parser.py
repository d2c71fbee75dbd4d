import re
from typing import Any

import msgspec
import structlog

from betwatch.core.logging import Logger
from betwatch.exceptions import MalformedPayloadError, ValidationError
from betwatch.markets.protocol import (
    PERCENT_SCALE,
    BetRow,
    GammaEvent,
    MarketRef,
    PriceHistory,
    PricePoint,
    RawRecord,
    TrackedItem,
)

logger: Logger = structlog.getLogger(__name__)

# Pre-compiled decoders for provider responses
_events_decoder = msgspec.json.Decoder(list[GammaEvent])
_history_decoder = msgspec.json.Decoder(PriceHistory)

_EVENT_URL_PATTERN = re.compile(r"event/([^/?#]+)")
_BARE_SLUG_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]*$")


def extract_slug(reference: str) -> str:
    """
    Extract an event slug from a market URL or accept a bare slug.

    Raises:
        ValidationError: If the reference matches neither form
    """
    reference = reference.strip()

    match = _EVENT_URL_PATTERN.search(reference)
    if match:
        return match.group(1)

    if _BARE_SLUG_PATTERN.match(reference):
        return reference

    raise ValidationError(f"Invalid market reference: {reference!r}")


def decode_events(data: bytes) -> list[GammaEvent]:
    try:
        return _events_decoder.decode(data)
    except (msgspec.DecodeError, msgspec.ValidationError) as e:
        raise MalformedPayloadError(f"Unable to decode Gamma events: {e}") from e


def decode_history(data: bytes) -> list[PricePoint]:
    """Decode a prices-history response into raw-probability points."""
    try:
        history = _history_decoder.decode(data)
        return [
            PricePoint(timestamp=sample.t, price=float(sample.p))
            for sample in history.history
        ]
    except (msgspec.DecodeError, msgspec.ValidationError, ValueError) as e:
        raise MalformedPayloadError(f"Unable to decode price history: {e}") from e


def parse_liquidity(value: str | float | None) -> float:
    if value is None or value == "":
        return 0.0

    try:
        liquidity = float(value)
    except ValueError as e:
        raise MalformedPayloadError(f"Invalid liquidity: {value!r}") from e

    return max(liquidity, 0.0)


def _first_market(event: GammaEvent) -> MarketRef:
    if not event.markets:
        raise MalformedPayloadError(f"Event {event.slug or event.id} has no markets")

    return event.markets[0]


def snapshot_price(event: GammaEvent) -> float:
    """YES price of the first market as a percentage."""
    yes_price = _first_market(event).yes_price
    if yes_price is None:
        raise MalformedPayloadError(
            f"Event {event.slug or event.id} has no decodable outcome prices"
        )

    return yes_price * PERCENT_SCALE


def apply_snapshot(item: TrackedItem, event: GammaEvent, now: float) -> TrackedItem:
    """Return item with price, liquidity and markets replaced from a snapshot."""
    current_price = snapshot_price(event)
    markets = tuple(event.markets or ())

    return msgspec.structs.replace(
        item,
        current_price=current_price,
        liquidity=parse_liquidity(event.liquidity),
        markets=markets,
        yes_token_id=markets[0].yes_token_id or item.yes_token_id,
        last_updated=now,
    )


def item_from_event(event: GammaEvent, now: float) -> TrackedItem:
    """
    Build a new TrackedItem from a freshly fetched event.

    Raises:
        ValidationError: If the event has no decodable YES token
        MalformedPayloadError: If prices or markets cannot be decoded
    """
    market = _first_market(event)

    yes_token_id = market.yes_token_id
    if yes_token_id is None:
        raise ValidationError(f"No YES token id found for event {event.slug}")

    item = TrackedItem(
        id=str(event.id),
        title=event.title,
        image=event.image,
        slug=event.slug,
        yes_token_id=yes_token_id,
    )

    return apply_snapshot(item, event, now)


################
# DURABLE ROWS
# ##############


def item_from_row(row: RawRecord) -> TrackedItem:
    """Map a bets table row (or realtime record) into a TrackedItem."""
    try:
        bet = msgspec.convert(row, BetRow, strict=False)
        liquidity = parse_liquidity(bet.liquidity)
    except msgspec.ValidationError as e:
        raise MalformedPayloadError(f"Invalid bet row: {e}") from e

    markets = tuple(bet.markets or ())
    yes_token_id = bet.yes_token_id
    if yes_token_id is None and markets:
        yes_token_id = markets[0].yes_token_id

    return TrackedItem(
        id=str(bet.id),
        title=bet.title or "",
        image=bet.image or "",
        slug=bet.slug or "",
        current_price=bet.current_price,
        liquidity=liquidity,
        yes_token_id=yes_token_id,
        markets=markets,
    )


def item_to_row(item: TrackedItem, created_at: str | None = None) -> dict[str, Any]:
    """Map a TrackedItem into a bets table row."""
    row: dict[str, Any] = {
        "id": item.id,
        "title": item.title,
        "image": item.image,
        "current_price": item.current_price,
        "liquidity": item.liquidity,
        "markets": msgspec.to_builtins(item.markets),
        "slug": item.slug or None,
        "yes_token_id": item.yes_token_id,
    }

    if created_at is not None:
        row["created_at"] = created_at

    return row
