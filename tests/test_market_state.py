import math
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from oddsmirror.core.broadcast import Broadcaster
from oddsmirror.core.mappings import MappedMarket, OutcomeToken
from oddsmirror.core.market_state import APPLIED, REJECTED, UNMATCHED, MarketStateUpdater, bucket_start
from oddsmirror.core.spike_filter import SpikeFilter
from oddsmirror.models import EVENT_TYPE_MULTIPLE, Event, OddsHistory, Outcome

NOW = datetime(2026, 3, 1, 12, 5, tzinfo=timezone.utc)


def _seed_binary(db, yes_probability=0.5):
    event = Event(id="ev1", title="Will it rain?", liquidity_parameter=20000.0)
    db.add(event)
    db.add(Outcome(id="out-yes", event_id="ev1", name="Yes", probability=yes_probability))
    db.add(Outcome(id="out-no", event_id="ev1", name="No", probability=1 - yes_probability))
    db.commit()
    return MappedMarket(
        mapping_id="m1",
        event_id="ev1",
        external_market_id="pm-1",
        event_type="BINARY",
        liquidity_parameter=20000.0,
        yes_token_id="tok-yes",
        no_token_id="tok-no",
    )


def _updater(broadcaster=None, last_price=None):
    spike = SpikeFilter(max_deviation=0.25, sustain_tolerance=0.05, sustain_count=3)
    return MarketStateUpdater(spike, broadcaster, last_price=last_price)


class _FailingRedis:
    def publish(self, channel, message):
        raise ConnectionError("redis down")


def test_bucket_start_floors_to_half_hour():
    assert bucket_start(NOW, 1800) == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert bucket_start(datetime(2026, 3, 1, 12, 45), 1800) == datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)


def test_binary_tick_updates_probability_and_quantities(db_session):
    mapping = _seed_binary(db_session)
    result = _updater().apply(db_session, "ev1", "tok-yes", 0.6, mapping, now=NOW)

    assert result.status == APPLIED
    assert result.outcome_id == "out-yes"
    assert result.q_yes == pytest.approx(20000 * math.log(0.6 / 0.4))
    assert result.q_no == pytest.approx(20000 * math.log(0.4 / 0.6))

    db_session.expire_all()
    assert db_session.get(Outcome, "out-yes").probability == pytest.approx(0.6)
    event = db_session.get(Event, "ev1")
    assert event.q_yes == pytest.approx(result.q_yes)
    assert event.q_no == pytest.approx(result.q_no)


def test_out_of_range_price_is_clamped_and_quantity_zero(db_session):
    mapping = _seed_binary(db_session, yes_probability=0.9)
    result = _updater().apply(db_session, "ev1", "tok-yes", 1.2, mapping, now=NOW)

    assert result.probability == 1.0
    assert result.q_yes == 0.0
    assert result.q_no == 0.0


def test_no_token_uses_cached_yes_price(db_session):
    mapping = _seed_binary(db_session)
    prices = {"tok-yes": 0.55}
    result = _updater(last_price=prices.get).apply(db_session, "ev1", "tok-no", 0.4, mapping, now=NOW)

    assert result.outcome_id == "out-no"
    assert result.q_yes == pytest.approx(20000 * math.log(0.55 / 0.45))
    assert result.q_no == pytest.approx(20000 * math.log(0.4 / 0.6))


def test_same_bucket_replay_keeps_one_row_with_latest_value(db_session):
    mapping = _seed_binary(db_session)
    updater = _updater()
    updater.apply(db_session, "ev1", "tok-yes", 0.55, mapping, now=NOW)
    updater.apply(db_session, "ev1", "tok-yes", 0.6, mapping, now=NOW + timedelta(minutes=10))

    rows = db_session.scalars(select(OddsHistory)).all()
    assert len(rows) == 1
    assert rows[0].probability == pytest.approx(0.6)
    assert rows[0].outcome_id == "out-yes"

    updater.apply(db_session, "ev1", "tok-yes", 0.62, mapping, now=NOW + timedelta(minutes=30))
    assert len(db_session.scalars(select(OddsHistory)).all()) == 2


def test_spike_is_held_until_sustained(db_session):
    mapping = _seed_binary(db_session, yes_probability=0.5)
    updater = _updater()

    first = updater.apply(db_session, "ev1", "tok-yes", 0.9, mapping, now=NOW)
    assert first.status == REJECTED
    db_session.expire_all()
    assert db_session.get(Outcome, "out-yes").probability == pytest.approx(0.5)
    assert db_session.scalars(select(OddsHistory)).all() == []

    assert updater.apply(db_session, "ev1", "tok-yes", 0.9, mapping, now=NOW).status == REJECTED
    assert updater.apply(db_session, "ev1", "tok-yes", 0.9, mapping, now=NOW).status == APPLIED
    db_session.expire_all()
    assert db_session.get(Outcome, "out-yes").probability == pytest.approx(0.9)


def test_unknown_token_is_a_no_op(db_session):
    db_session.add(Event(id="ev2", type=EVENT_TYPE_MULTIPLE))
    db_session.add(Outcome(id="o-a", event_id="ev2", name="Alice", probability=0.3, external_token_id="tok-a"))
    db_session.commit()
    mapping = MappedMarket(
        mapping_id="m2",
        event_id="ev2",
        external_market_id="pm-2",
        event_type=EVENT_TYPE_MULTIPLE,
        liquidity_parameter=20000.0,
        outcome_tokens=(OutcomeToken(internal_id="o-a", token_id="tok-a"),),
    )

    result = _updater().apply(db_session, "ev2", "tok-unknown", 0.4, mapping, now=NOW)

    assert result.status == UNMATCHED
    db_session.expire_all()
    assert db_session.get(Outcome, "o-a").probability == pytest.approx(0.3)
    assert db_session.scalars(select(OddsHistory)).all() == []


def test_multi_outcome_tick_does_not_touch_quantities(db_session, fake_redis):
    db_session.add(Event(id="ev2", type=EVENT_TYPE_MULTIPLE, q_yes=0.0, q_no=0.0))
    db_session.add(Outcome(id="o-a", event_id="ev2", name="Alice", probability=0.3, external_token_id="tok-a"))
    db_session.add(Outcome(id="o-b", event_id="ev2", name="Bob", probability=0.7, external_token_id="tok-b"))
    db_session.commit()
    mapping = MappedMarket(
        mapping_id="m2",
        event_id="ev2",
        external_market_id="pm-2",
        event_type=EVENT_TYPE_MULTIPLE,
        liquidity_parameter=20000.0,
        outcome_tokens=(
            OutcomeToken(internal_id="o-a", token_id="tok-a"),
            OutcomeToken(internal_id="o-b", token_id="tok-b"),
        ),
    )
    prices = {"tok-b": 0.68}
    updater = _updater(Broadcaster(fake_redis), last_price=prices.get)

    result = updater.apply(db_session, "ev2", "tok-a", 0.32, mapping, now=NOW)

    assert result.applied
    assert result.q_yes is None
    assert result.broadcast is True
    channels = [channel for channel, _ in fake_redis.published]
    assert channels == ["sports-odds", "event-updates:ev2"]
    assert '"probability": 0.68' in fake_redis.published[1][1]


def test_broadcast_failure_does_not_undo_the_update(db_session):
    mapping = _seed_binary(db_session)
    broadcaster = Broadcaster(_FailingRedis())
    result = _updater(broadcaster).apply(db_session, "ev1", "tok-yes", 0.6, mapping, now=NOW)

    assert result.applied
    assert result.broadcast is False
    assert broadcaster.failures == 1
    db_session.expire_all()
    assert db_session.get(Outcome, "out-yes").probability == pytest.approx(0.6)
