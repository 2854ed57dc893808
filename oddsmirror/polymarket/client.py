import logging
from datetime import datetime, timezone

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..external import POLYMARKET_BREAKER, async_limited, polymarket_semaphore
from ..settings import settings
from .schemas import ClosedEvent, ClosedMarket, PricePoint, decode_json_list

logger = logging.getLogger(__name__)

_RETRYABLE = (httpx.TransportError, httpx.HTTPStatusError)


class PolymarketClient:
    """Async reads against the Gamma (events) and CLOB (prices, books) APIs."""

    def __init__(self):
        self.gamma_url = settings.POLYMARKET_GAMMA_URL.rstrip("/")
        self.clob_url = settings.POLYMARKET_CLOB_URL.rstrip("/")
        self.timeout = settings.POLY_HTTP_TIMEOUT_SECONDS

    async def fetch_price_history(
        self,
        token_id: str,
        fidelity_minutes: int | None = None,
        start_ts: int | None = None,
        end_ts: int | None = None,
    ) -> list[PricePoint]:
        """
        GET /prices-history for one token.
        Without an explicit window the venue's `interval=max` range is requested.
        Prices are returned raw; callers normalize them.
        """
        params: dict[str, str] = {
            "market": token_id,
            "fidelity": str(fidelity_minutes or settings.BACKFILL_FIDELITY_MINUTES),
        }
        if start_ts is not None and end_ts is not None:
            params["startTs"] = str(int(start_ts))
            params["endTs"] = str(int(end_ts))
        else:
            params["interval"] = "max"
        data = await self._get_json(f"{self.clob_url}/prices-history", params)
        return parse_history(data)

    async def fetch_closed_events(self, limit: int | None = None) -> list[ClosedEvent]:
        params = {
            "closed": "true",
            "active": "false",
            "limit": str(limit or settings.RESOLUTION_LISTING_LIMIT),
            "order": "endDate",
            "ascending": "false",
        }
        data = await self._get_json(f"{self.gamma_url}/events", params)
        if not isinstance(data, list):
            return []
        events = []
        for raw in data:
            event = parse_event(raw)
            if event is not None:
                events.append(event)
        logger.info("polymarket_closed_events_fetched count=%s", len(events))
        return events

    async def fetch_event(self, event_id: str) -> ClosedEvent | None:
        data = await self._get_json(f"{self.gamma_url}/events", {"id": str(event_id), "limit": "1"})
        if isinstance(data, list):
            data = data[0] if data else None
        return parse_event(data) if isinstance(data, dict) else None

    async def fetch_book_mid(self, token_id: str) -> float | None:
        data = await self._get_json(f"{self.clob_url}/book", {"token_id": token_id})
        if not isinstance(data, dict):
            return None
        best_bid = _first_level_price(data.get("bids"))
        best_ask = _first_level_price(data.get("asks"))
        if best_bid is not None and best_ask is not None:
            return (best_bid + best_ask) / 2
        return best_bid if best_bid is not None else best_ask

    async def _get_json(self, url: str, params: dict[str, str]):
        POLYMARKET_BREAKER.guard()
        try:
            async with async_limited(polymarket_semaphore()):
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    data = await self._fetch(client, url, params)
        except Exception:
            POLYMARKET_BREAKER.record_failure()
            raise
        POLYMARKET_BREAKER.record_success()
        return data

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(_RETRYABLE),
        reraise=True,
    )
    async def _fetch(self, client: httpx.AsyncClient, url: str, params: dict[str, str]):
        r = await client.get(url, params=params)
        r.raise_for_status()
        return r.json()


def parse_history(data) -> list[PricePoint]:
    if isinstance(data, dict):
        raw_points = data.get("history") or data.get("prices") or []
    elif isinstance(data, list):
        raw_points = data
    else:
        raw_points = []

    points: list[PricePoint] = []
    for raw in raw_points:
        if not isinstance(raw, dict):
            continue
        ts = parse_ts(_first_present(raw, ("timestamp", "time", "ts", "t")))
        price = _parse_optional_float(_first_present(raw, ("price", "probability", "p", "value")))
        if ts is None or price is None:
            continue
        points.append(PricePoint(ts=ts, price=price))
    return points


def parse_event(raw) -> ClosedEvent | None:
    if not isinstance(raw, dict) or raw.get("id") is None:
        return None
    markets = []
    for market in decode_json_list(raw.get("markets")):
        if not isinstance(market, dict):
            continue
        markets.append(
            ClosedMarket(
                market_id=str(market.get("id") or market.get("conditionId") or ""),
                question=market.get("question"),
                slug=market.get("slug"),
                group_item_title=market.get("groupItemTitle"),
                closed=bool(market.get("closed")),
                active=bool(market.get("active", True)),
                winning_outcome=market.get("winningOutcome"),
                outcomes=market.get("outcomes"),
                outcome_prices=market.get("outcomePrices"),
                tokens=market.get("tokens"),
            )
        )
    return ClosedEvent(
        event_id=str(raw["id"]),
        title=raw.get("title"),
        slug=raw.get("slug"),
        closed=bool(raw.get("closed")),
        active=bool(raw.get("active", True)),
        markets=markets,
    )


def parse_ts(value) -> datetime | None:
    """Seconds or milliseconds since epoch, or an ISO-8601 string."""
    if value is None or isinstance(value, bool):
        return None
    numeric = _parse_optional_float(value)
    if numeric is None:
        if not isinstance(value, str):
            return None
        try:
            return _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    if numeric > 1e12:
        numeric /= 1000.0
    try:
        return datetime.fromtimestamp(numeric, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _first_present(raw: dict, keys: tuple[str, ...]):
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _first_level_price(levels) -> float | None:
    if not isinstance(levels, list) or not levels:
        return None
    level = levels[0]
    if isinstance(level, dict):
        return _parse_optional_float(level.get("price"))
    if isinstance(level, (list, tuple)) and level:
        return _parse_optional_float(level[0])
    return None


def _parse_optional_float(value) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
