import logging
import threading
from dataclasses import asdict, dataclass

from sqlalchemy.orm import Session

from ..core.broadcast import Broadcaster
from ..core.mappings import MappedMarket, MappingSnapshot, load_mappings
from ..core.market_state import REJECTED, ApplyResult, MarketStateUpdater
from ..core.spike_filter import SpikeFilter
from .messages import Tick

logger = logging.getLogger(__name__)


@dataclass
class SessionStats:
    messages: int = 0
    updates: int = 0
    errors: int = 0
    rejected: int = 0
    dropped: int = 0


class IngestionSession:
    """
    Hot-path state owned by one worker process: the token → market index,
    the last seen price per token and the spike tracker.

    `record_price` runs on the receive loop and only touches memory;
    `handle_tick` runs off-loop with its own database session.
    """

    def __init__(
        self,
        broadcaster: Broadcaster | None = None,
        spike_filter: SpikeFilter | None = None,
        dry_run: bool = False,
    ) -> None:
        self.broadcaster = broadcaster
        self.spike_filter = spike_filter or SpikeFilter()
        self.dry_run = dry_run
        self.snapshot = MappingSnapshot()
        self._last_prices: dict[str, float] = {}
        self._stats = SessionStats()
        self._stats_lock = threading.Lock()
        self.updater = MarketStateUpdater(self.spike_filter, broadcaster, last_price=self.last_price)

    @property
    def token_ids(self) -> list[str]:
        return list(self.snapshot.token_ids)

    def refresh(self, db: Session) -> bool:
        """Reload mappings; True when the subscribed token set changed."""
        previous = self.snapshot.token_set()
        self.snapshot = load_mappings(db)
        changed = self.snapshot.token_set() != previous
        if changed:
            logger.info(
                "ingestion_tokens_changed before=%s after=%s",
                len(previous),
                len(self.snapshot.token_ids),
            )
        return changed

    def invalidate(self) -> None:
        """Forget prices and pending spikes seen before a feed gap; mappings stay."""
        self._last_prices.clear()
        self.spike_filter.reset()

    def last_price(self, token_id: str) -> float | None:
        return self._last_prices.get(token_id)

    def lookup(self, token_id: str) -> MappedMarket | None:
        return self.snapshot.lookup(token_id)

    def record_message(self) -> None:
        self._bump("messages")

    def record_dropped(self) -> None:
        self._bump("dropped")

    def record_price(self, tick: Tick) -> MappedMarket | None:
        self._last_prices[tick.token_id] = tick.price
        return self.snapshot.lookup(tick.token_id)

    def handle_tick(self, db: Session, tick: Tick) -> ApplyResult | None:
        if tick.has_book and self.broadcaster is not None and not self.dry_run:
            self.broadcaster.cache_liquidity(tick.token_id, tick.best_bid, tick.best_ask, tick.price)

        mapping = self.snapshot.lookup(tick.token_id)
        if mapping is None:
            return None
        if self.dry_run:
            logger.info(
                "tick_dry_run event_id=%s token_id=%s price=%.4f",
                mapping.event_id,
                tick.token_id,
                tick.price,
            )
            return None
        try:
            result = self.updater.apply(db, mapping.event_id, tick.token_id, tick.price, mapping)
        except Exception:
            db.rollback()
            self._bump("errors")
            logger.exception("tick_apply_failed event_id=%s token_id=%s", mapping.event_id, tick.token_id)
            return None
        if result.applied:
            self._bump("updates")
        elif result.status == REJECTED:
            self._bump("rejected")
        return result

    def stats_snapshot(self, reset: bool = False) -> dict:
        with self._stats_lock:
            data = asdict(self._stats)
            if reset:
                self._stats = SessionStats()
        return data

    def _bump(self, name: str) -> None:
        with self._stats_lock:
            setattr(self._stats, name, getattr(self._stats, name) + 1)
