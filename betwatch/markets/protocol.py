"""
Market data definitions using msgspec structs.

Key patterns:
- Domain values are frozen structs, updates go through msgspec.structs.replace
- Provider payload structs mirror the wire shape, unknown fields are ignored
- Prices arrive as raw probabilities in [0, 1], tracked items store percentages
"""

from typing import Any, Final

import msgspec

# Final indicates that it should not be reassigned, redefined or overridden
PERCENT_SCALE: Final[float] = 100.0

_string_list_decoder = msgspec.json.Decoder(list[str | float])


def _decode_string_list(raw: str | None) -> list[str] | None:
    if not raw:
        return None

    try:
        values = _string_list_decoder.decode(raw)
    except (msgspec.DecodeError, msgspec.ValidationError):
        return None

    return [str(value) for value in values]


class MarketRef(msgspec.Struct, frozen=True, rename="camel"):
    """
    Outcome prices and token ids of one market inside an event

    Both fields are JSON-encoded arrays of strings, exactly as the Gamma API
    returns them. rename="camel" keeps the wire/row names (outcomePrices,
    clobTokenIds).
    """

    outcome_prices: str | None = None
    clob_token_ids: str | None = None

    @property
    def yes_token_id(self) -> str | None:
        """First token id, which by convention is the YES outcome"""
        token_ids = _decode_string_list(self.clob_token_ids)
        if not token_ids or not token_ids[0]:
            return None

        return token_ids[0]

    @property
    def yes_price(self) -> float | None:
        """Raw YES probability in [0, 1]"""
        prices = _decode_string_list(self.outcome_prices)
        if not prices:
            return None

        try:
            return float(prices[0])
        except ValueError:
            return None


class TrackedItem(msgspec.Struct, frozen=True, kw_only=True):
    """A tracked bet and its latest snapshot"""

    id: str
    title: str = ""
    image: str = ""
    slug: str = ""
    current_price: float | None = None  # percentage, 0-100
    liquidity: float = 0.0
    yes_token_id: str | None = None
    markets: tuple[MarketRef, ...] = ()
    last_updated: float | None = None  # epoch seconds


class PricePoint(msgspec.Struct, frozen=True, array_like=True):
    """
    Single price sample

    array_like=True encodes as JSON array [timestamp, price]
    """

    timestamp: int  # epoch seconds
    price: float  # raw probability, 0-1


class PriceChangeSet(msgspec.Struct, frozen=True):
    """
    Signed percentage deltas per window

    None means insufficient data, which is distinct from a computed 0.0
    """

    one_hour: float | None = None
    one_day: float | None = None
    seven_days: float | None = None

    @property
    def has_data(self) -> bool:
        return any(
            change is not None
            for change in (self.one_hour, self.one_day, self.seven_days)
        )


EMPTY_CHANGES: Final[PriceChangeSet] = PriceChangeSet()


################
# GAMMA PAYLOADS
# ##############


class GammaEvent(msgspec.Struct):
    """Event returned by GET /events?slug=..."""

    id: str | int
    title: str = ""
    image: str = ""
    slug: str = ""
    liquidity: str | float | None = None
    markets: list[MarketRef] | None = None


################
# CLOB PAYLOADS
# ##############


class HistorySample(msgspec.Struct):
    t: int
    p: str | float


class PriceHistory(msgspec.Struct):
    """Response of GET /prices-history"""

    history: list[HistorySample] = msgspec.field(default_factory=list)


################
# DURABLE ROWS
# ##############


class BetRow(msgspec.Struct):
    """Row of the bets table as returned by the durable store"""

    id: str | int
    title: str | None = None
    image: str | None = None
    slug: str | None = None
    current_price: float | None = None
    liquidity: float | str | None = None
    markets: list[MarketRef] | None = None
    yes_token_id: str | None = None
    created_at: str | None = None


RawRecord = dict[str, Any]
