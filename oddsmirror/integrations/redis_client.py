import redis

from ..settings import settings

redis_conn = redis.from_url(
    settings.REDIS_URL,
    socket_timeout=5,
    socket_connect_timeout=5,
    health_check_interval=30,
)
