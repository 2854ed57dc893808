import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from oddsmirror.db import Base


def _b(value) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, bytearray):
        return bytes(value)
    return str(value).encode()


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.calls = []

    def __getattr__(self, name):
        method = getattr(self.redis, name)

        def _queue(*args, **kwargs):
            self.calls.append((method, args, kwargs))
            return self

        return _queue

    def execute(self):
        results = [method(*args, **kwargs) for method, args, kwargs in self.calls]
        self.calls = []
        return results


class FakeRedis:
    """In-memory subset of the redis-py API; values come back as bytes."""

    def __init__(self):
        self.store = {}
        self.lists = {}
        self.hashes = {}
        self.published = []
        self.expiry = {}

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = _b(value)
        if ex is not None:
            self.expiry[key] = ex
        return True

    def delete(self, key):
        self.store.pop(key, None)
        self.lists.pop(key, None)
        self.hashes.pop(key, None)

    def expire(self, key, seconds):
        self.expiry[key] = seconds
        return True

    def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    def lpush(self, key, *values):
        items = self.lists.setdefault(key, [])
        for value in values:
            items.insert(0, _b(value))
        return len(items)

    def rpop(self, key):
        items = self.lists.get(key) or []
        return items.pop() if items else None

    def lmove(self, source, destination, wherefrom="LEFT", whereto="RIGHT"):
        items = self.lists.get(source) or []
        if not items:
            return None
        value = items.pop() if wherefrom == "RIGHT" else items.pop(0)
        target = self.lists.setdefault(destination, [])
        if whereto == "LEFT":
            target.insert(0, value)
        else:
            target.append(value)
        return value

    def lrem(self, key, count, value):
        items = self.lists.get(key) or []
        needle = _b(value)
        removed = 0
        kept = []
        for item in items:
            if item == needle and (count == 0 or removed < abs(count)):
                removed += 1
                continue
            kept.append(item)
        self.lists[key] = kept
        return removed

    def lrange(self, key, start, end):
        items = self.lists.get(key) or []
        end = len(items) if end == -1 else end + 1
        return items[start:end]

    def llen(self, key):
        return len(self.lists.get(key) or [])

    def hincrby(self, key, field, amount=1):
        values = self.hashes.setdefault(key, {})
        values[field] = int(values.get(field, 0)) + amount
        return values[field]

    def hget(self, key, field):
        value = (self.hashes.get(key) or {}).get(field)
        return None if value is None else _b(value)

    def hdel(self, key, *fields):
        values = self.hashes.get(key) or {}
        return sum(1 for field in fields if values.pop(field, None) is not None)

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def close(self):
        pass


@pytest.fixture()
def fake_redis():
    return FakeRedis()


@pytest.fixture()
def db_session():
    engine = create_engine("sqlite:///:memory:", future=True)
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()
