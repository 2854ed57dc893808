import logging
from dataclasses import dataclass

from ..settings import settings

logger = logging.getLogger(__name__)


@dataclass
class PendingSpike:
    price: float
    count: int = 1


class SpikeFilter:
    """
    Per-token acceptance policy for incoming probabilities.

    A move larger than `max_deviation` from the stored probability is held back
    until `sustain_count` consecutive observations agree within
    `sustain_tolerance` of each other. Moves within the band pass immediately.
    """

    def __init__(
        self,
        max_deviation: float | None = None,
        sustain_tolerance: float | None = None,
        sustain_count: int | None = None,
    ) -> None:
        self.max_deviation = settings.SPIKE_MAX_DEVIATION if max_deviation is None else max_deviation
        self.sustain_tolerance = (
            settings.SPIKE_SUSTAIN_TOLERANCE if sustain_tolerance is None else sustain_tolerance
        )
        self.sustain_count = max(1, settings.SPIKE_SUSTAIN_COUNT if sustain_count is None else sustain_count)
        self._pending: dict[str, PendingSpike] = {}
        self.rejected = 0

    def evaluate(self, token_id: str, price: float, stored: float | None) -> bool:
        if stored is None or stored <= 0:
            self._pending.pop(token_id, None)
            return True

        if abs(price - stored) <= self.max_deviation:
            self._pending.pop(token_id, None)
            return True

        pending = self._pending.get(token_id)
        if pending is not None and abs(price - pending.price) < self.sustain_tolerance:
            pending.count += 1
            pending.price = price
        else:
            pending = PendingSpike(price=price)
            self._pending[token_id] = pending

        if pending.count >= self.sustain_count:
            self._pending.pop(token_id, None)
            logger.info(
                "spike_sustained_accepted token_id=%s price=%.4f stored=%.4f count=%s",
                token_id,
                price,
                stored,
                pending.count,
            )
            return True

        self.rejected += 1
        logger.warning(
            "spike_rejected token_id=%s price=%.4f stored=%.4f count=%s",
            token_id,
            price,
            stored,
            pending.count,
        )
        return False

    def pending(self, token_id: str) -> PendingSpike | None:
        return self._pending.get(token_id)

    def reset(self) -> None:
        self._pending.clear()
