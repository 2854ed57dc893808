import json
import logging
import time

from ..settings import settings

logger = logging.getLogger(__name__)


class Broadcaster:
    """
    Best-effort Redis side effects of an accepted tick.

    Every public method swallows and logs Redis errors and reports success as a
    bool; no caller may depend on delivery.
    """

    def __init__(self, redis_conn, enabled: bool = True) -> None:
        self.redis = redis_conn
        self.enabled = enabled
        self.channel = settings.BROADCAST_CHANNEL
        self.event_channel_prefix = settings.EVENT_CHANNEL_PREFIX
        self.failures = 0

    def event_channel(self, event_id: str) -> str:
        return f"{self.event_channel_prefix}:{event_id}"

    def publish_update(self, tick_payload: dict, event_payload: dict) -> bool:
        if not self.enabled or self.redis is None:
            return False
        try:
            self.redis.publish(self.channel, json.dumps(tick_payload, default=str))
            self.redis.publish(
                self.event_channel(event_payload["eventId"]),
                json.dumps(event_payload, default=str),
            )
            return True
        except Exception:
            self.failures += 1
            logger.warning("broadcast_publish_failed event_id=%s", event_payload.get("eventId"), exc_info=True)
            return False

    def cache_liquidity(self, token_id: str, best_bid: float, best_ask: float, mid_price: float) -> bool:
        if not self.enabled or self.redis is None:
            return False
        snapshot = {
            "tokenId": token_id,
            "bestBid": best_bid,
            "bestAsk": best_ask,
            "midPrice": mid_price,
            "spread": best_ask - best_bid,
            "timestamp": int(time.time() * 1000),
        }
        try:
            self.redis.set(
                f"liquidity:{token_id}",
                json.dumps(snapshot),
                ex=settings.LIQUIDITY_CACHE_TTL_SECONDS,
            )
            return True
        except Exception:
            logger.warning("liquidity_cache_failed token_id=%s", token_id, exc_info=True)
            return False
