import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.mappings import list_active_mappings
from ..core.settlement import AlreadyResolvedError, deactivate_mapping, settle
from ..models import (
    EVENT_STATUS_RESOLVED,
    EVENT_TYPE_BINARY,
    SOURCE_POLYMARKET,
    Event,
    MarketMapping,
    Outcome,
)
from ..polymarket.client import PolymarketClient
from ..polymarket.schemas import ClosedEvent, ClosedMarket
from ..settings import settings

logger = logging.getLogger(__name__)


@dataclass
class ResolutionSyncResult:
    checked: int = 0
    resolved: int = 0
    already_resolved: int = 0
    pending_upstream: int = 0
    undetermined: int = 0
    unmatched: int = 0
    failed: int = 0
    resolved_event_ids: list[str] = field(default_factory=list)


def determine_winner(market: ClosedMarket, threshold: float | None = None) -> str | None:
    """Winning outcome label of one closed venue market, or None if undecided."""
    threshold = settings.RESOLUTION_WIN_THRESHOLD if threshold is None else threshold
    if market.winning_outcome:
        return market.winning_outcome

    for index, (outcome, price) in enumerate(zip(market.outcomes, market.outcome_prices)):
        if price >= threshold:
            if isinstance(outcome, dict):
                return outcome.get("name") or outcome.get("outcome") or f"Outcome {index}"
            return str(outcome)

    for token in market.tokens:
        if not isinstance(token, dict):
            continue
        raw_price = token.get("price")
        if raw_price is None:
            raw_price = token.get("lastTradePrice", 0)
        try:
            price = float(raw_price or 0)
        except (TypeError, ValueError):
            continue
        if price >= threshold:
            return token.get("outcome") or token.get("name")
    return None


def match_outcome(outcomes: list[Outcome], name: str | None) -> Outcome | None:
    """
    Exact case-insensitive name match first. A substring match is accepted only
    when it singles out one outcome; anything ambiguous returns None.
    """
    if not name:
        return None
    wanted = name.strip().lower()
    exact = [o for o in outcomes if (o.name or "").strip().lower() == wanted]
    if len(exact) == 1:
        return exact[0]
    if len(exact) > 1:
        return None
    partial = [
        o
        for o in outcomes
        if o.name and (wanted in o.name.strip().lower() or o.name.strip().lower() in wanted)
    ]
    return partial[0] if len(partial) == 1 else None


def infer_winning_outcome(event: Event, outcomes: list[Outcome], venue_event: ClosedEvent) -> tuple[Outcome | None, str]:
    """Returns (outcome, reason); reason explains a None outcome."""
    markets = venue_event.markets
    if not markets:
        return None, "no_markets"

    if event.type == EVENT_TYPE_BINARY:
        winner = determine_winner(markets[0])
        if winner is None:
            return None, "undetermined"
        label = winner.strip().upper()
        if label not in ("YES", "NO"):
            return None, "undetermined"
        matched = [o for o in outcomes if (o.name or "").strip().upper() == label]
        return (matched[0], "ok") if matched else (None, "unmatched")

    yes_markets = [m for m in markets if (determine_winner(m) or "").strip().lower() == "yes"]
    if len(yes_markets) != 1:
        return None, "undetermined"
    outcome = match_outcome(outcomes, yes_markets[0].display_title)
    return (outcome, "ok") if outcome else (None, "unmatched")


async def run_resolution_sync(db: Session, client: PolymarketClient | None = None) -> ResolutionSyncResult:
    client = client or PolymarketClient()
    result = ResolutionSyncResult()

    mappings = list_active_mappings(db)
    if not mappings:
        logger.info("resolution_sync_skipped reason=no_mappings")
        return result

    events = db.scalars(
        select(Event).where(
            Event.id.in_({m.internal_event_id for m in mappings}),
            Event.source == SOURCE_POLYMARKET,
        )
    ).all()
    event_by_id = {event.id: event for event in events}

    closed = await client.fetch_closed_events()
    venue_by_key: dict[str, ClosedEvent] = {}
    for venue_event in closed:
        venue_by_key[venue_event.event_id] = venue_event
        if venue_event.slug:
            venue_by_key[venue_event.slug] = venue_event

    for mapping in mappings:
        event = event_by_id.get(mapping.internal_event_id)
        if event is None:
            continue
        result.checked += 1
        try:
            await _resolve_mapping(db, client, mapping, event, venue_by_key, result)
        except Exception:
            db.rollback()
            result.failed += 1
            logger.exception(
                "resolution_mapping_failed mapping_id=%s event_id=%s",
                mapping.id,
                mapping.internal_event_id,
            )

    logger.info(
        "resolution_sync_done checked=%s resolved=%s already_resolved=%s pending=%s undetermined=%s unmatched=%s failed=%s",
        result.checked,
        result.resolved,
        result.already_resolved,
        result.pending_upstream,
        result.undetermined,
        result.unmatched,
        result.failed,
    )
    return result


async def _resolve_mapping(
    db: Session,
    client: PolymarketClient,
    mapping: MarketMapping,
    event: Event,
    venue_by_key: dict[str, ClosedEvent],
    result: ResolutionSyncResult,
) -> None:
    mapping_id = mapping.id
    event_id = event.id
    if event.status == EVENT_STATUS_RESOLVED:
        _retire_mapping(db, mapping_id, event_id, result)
        return

    venue_event = venue_by_key.get(mapping.external_market_id)
    if venue_event is None:
        venue_event = await client.fetch_event(mapping.external_market_id)
    if venue_event is None or not venue_event.is_settled_upstream:
        result.pending_upstream += 1
        return

    outcomes = db.scalars(select(Outcome).where(Outcome.event_id == event_id)).all()
    outcome, reason = infer_winning_outcome(event, list(outcomes), venue_event)
    if outcome is None:
        if reason == "unmatched":
            result.unmatched += 1
            logger.warning(
                "resolution_unmatched event_id=%s venue_event_id=%s",
                event_id,
                venue_event.event_id,
            )
        else:
            result.undetermined += 1
            logger.warning(
                "resolution_undetermined event_id=%s venue_event_id=%s reason=%s",
                event_id,
                venue_event.event_id,
                reason,
            )
        return

    if settings.DRY_RUN:
        logger.info("resolution_dry_run event_id=%s outcome_id=%s outcome=%s", event_id, outcome.id, outcome.name)
        return

    try:
        settle(db, event_id, outcome.id)
    except AlreadyResolvedError:
        _retire_mapping(db, mapping_id, event_id, result)
        return
    deactivate_mapping(db, mapping_id)
    result.resolved += 1
    result.resolved_event_ids.append(event_id)
    logger.info("resolution_settled event_id=%s outcome_id=%s mapping_id=%s", event_id, outcome.id, mapping_id)


def _retire_mapping(db: Session, mapping_id: str, event_id: str, result: ResolutionSyncResult) -> None:
    result.already_resolved += 1
    deactivate_mapping(db, mapping_id)
    logger.info("resolution_already_resolved event_id=%s mapping_id=%s", event_id, mapping_id)
