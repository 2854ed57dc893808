import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import EVENT_STATUS_ACTIVE, SOURCE_POLYMARKET, Event, MarketMapping
from ..settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutcomeToken:
    internal_id: str
    token_id: str
    name: str | None = None


@dataclass(frozen=True)
class MappedMarket:
    mapping_id: str
    event_id: str
    external_market_id: str
    event_type: str
    liquidity_parameter: float
    yes_token_id: str | None = None
    no_token_id: str | None = None
    outcome_tokens: tuple[OutcomeToken, ...] = ()

    @property
    def is_binary(self) -> bool:
        return self.event_type == "BINARY"

    def opposite_token(self, token_id: str) -> str | None:
        if token_id == self.yes_token_id:
            return self.no_token_id
        if token_id == self.no_token_id:
            return self.yes_token_id
        return None

    def token_ids(self) -> list[str]:
        tokens = [t for t in (self.yes_token_id, self.no_token_id) if t]
        tokens.extend(o.token_id for o in self.outcome_tokens)
        return tokens


@dataclass
class MappingSnapshot:
    by_token: dict[str, MappedMarket] = field(default_factory=dict)
    token_ids: list[str] = field(default_factory=list)
    markets: list[MappedMarket] = field(default_factory=list)

    def lookup(self, token_id: str) -> MappedMarket | None:
        return self.by_token.get(token_id)

    def token_set(self) -> frozenset[str]:
        return frozenset(self.token_ids)


def parse_outcome_mapping(raw) -> tuple[OutcomeToken, ...]:
    """Accepts a bare list or {"outcomes": [...]}, snake_case or camelCase keys."""
    if isinstance(raw, dict):
        raw = raw.get("outcomes")
    if not isinstance(raw, list):
        return ()
    tokens = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        internal_id = entry.get("internal_id") or entry.get("internalId")
        token_id = entry.get("token_id") or entry.get("polymarketId") or entry.get("tokenId")
        if not internal_id or not token_id:
            continue
        tokens.append(OutcomeToken(internal_id=str(internal_id), token_id=str(token_id), name=entry.get("name")))
    return tuple(tokens)


def list_active_mappings(db: Session) -> list[MarketMapping]:
    return list(db.scalars(select(MarketMapping).where(MarketMapping.is_active.is_(True))))


def load_mappings(db: Session) -> MappingSnapshot:
    mappings = list_active_mappings(db)
    snapshot = MappingSnapshot()
    if not mappings:
        logger.info("mappings_loaded mappings=0 tokens=0")
        return snapshot

    event_ids = {m.internal_event_id for m in mappings}
    events = db.scalars(
        select(Event).where(
            Event.id.in_(event_ids),
            Event.status == EVENT_STATUS_ACTIVE,
            Event.source == SOURCE_POLYMARKET,
        )
    )
    event_by_id = {event.id: event for event in events}

    seen: set[str] = set()
    for mapping in mappings:
        event = event_by_id.get(mapping.internal_event_id)
        if event is None:
            continue
        market = MappedMarket(
            mapping_id=mapping.id,
            event_id=event.id,
            external_market_id=mapping.external_market_id,
            event_type=event.type,
            liquidity_parameter=event.liquidity_parameter or settings.DEFAULT_LIQUIDITY_PARAMETER,
            yes_token_id=mapping.yes_token_id,
            no_token_id=mapping.no_token_id,
            outcome_tokens=parse_outcome_mapping(mapping.outcome_mapping),
        )
        snapshot.markets.append(market)
        for token_id in market.token_ids():
            snapshot.by_token[token_id] = market
            if token_id not in seen:
                seen.add(token_id)
                snapshot.token_ids.append(token_id)

    logger.info(
        "mappings_loaded mappings=%s markets=%s tokens=%s",
        len(mappings),
        len(snapshot.markets),
        len(snapshot.token_ids),
    )
    return snapshot
