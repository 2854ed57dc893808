import json
import logging
import math
from dataclasses import dataclass

from ..settings import settings

logger = logging.getLogger(__name__)

TOPIC = "clob_market"
TYPE_LAST_TRADE = "last_trade_price"
TYPE_PRICE_CHANGE = "price_change"


@dataclass(frozen=True)
class Tick:
    token_id: str
    price: float
    best_bid: float | None = None
    best_ask: float | None = None

    @property
    def has_book(self) -> bool:
        return self.best_bid is not None and self.best_ask is not None


def build_subscribe_message(token_ids: list[str]) -> str:
    token_filter = json.dumps([{"token_id": token_id} for token_id in token_ids])
    return json.dumps(
        {
            "action": "subscribe",
            "subscriptions": [
                {"topic": TOPIC, "type": TYPE_LAST_TRADE, "filters": token_filter},
                {"topic": TOPIC, "type": TYPE_PRICE_CHANGE, "filters": token_filter},
            ],
        }
    )


def decode_frame(raw) -> dict | None:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        message = json.loads(raw)
    except ValueError:
        return None
    return message if isinstance(message, dict) else None


def parse_message(message: dict, max_spread: float | None = None) -> list[Tick]:
    """
    Ticks carried by one feed message; an empty list for anything else.

    A price change with both best bid and best ask yields the mid price only
    when the spread is within `max_spread`; wider books are dropped here.
    """
    if not isinstance(message, dict) or message.get("topic") != TOPIC:
        return []
    payload = message.get("payload")
    if not isinstance(payload, dict):
        return []
    kind = message.get("type")
    if kind == TYPE_LAST_TRADE:
        tick = _parse_trade(payload)
        return [tick] if tick else []
    if kind == TYPE_PRICE_CHANGE:
        limit = settings.MAX_ALLOWED_SPREAD if max_spread is None else max_spread
        return _parse_price_changes(payload, limit)
    return []


def _parse_trade(payload: dict) -> Tick | None:
    token_id = payload.get("asset_id")
    price = _finite(payload.get("price"))
    if not token_id or price is None:
        return None
    return Tick(token_id=str(token_id), price=price)


def _parse_price_changes(payload: dict, max_spread: float) -> list[Tick]:
    changes = payload.get("pc")
    if not isinstance(changes, list):
        return []
    ticks = []
    for change in changes:
        if not isinstance(change, dict) or not change.get("a"):
            continue
        token_id = str(change["a"])
        bid = _finite(change.get("bb"))
        ask = _finite(change.get("ba"))
        if bid is not None and ask is not None:
            if ask - bid > max_spread:
                logger.debug("tick_wide_spread_dropped token_id=%s bid=%s ask=%s", token_id, bid, ask)
                continue
            ticks.append(Tick(token_id=token_id, price=(bid + ask) / 2, best_bid=bid, best_ask=ask))
            continue
        price = _finite(change.get("p"))
        if price is None:
            continue
        ticks.append(Tick(token_id=token_id, price=price))
    return ticks


def _finite(value) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None
