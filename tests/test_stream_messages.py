import json

from oddsmirror.ingestion.messages import build_subscribe_message, decode_frame, parse_message


def test_subscribe_message_shape():
    message = json.loads(build_subscribe_message(["t1", "t2"]))
    assert message["action"] == "subscribe"
    kinds = [sub["type"] for sub in message["subscriptions"]]
    assert kinds == ["last_trade_price", "price_change"]
    for sub in message["subscriptions"]:
        assert sub["topic"] == "clob_market"
        assert json.loads(sub["filters"]) == [{"token_id": "t1"}, {"token_id": "t2"}]


def test_last_trade_yields_tick():
    ticks = parse_message(
        {"topic": "clob_market", "type": "last_trade_price", "payload": {"asset_id": "t1", "price": "0.42"}}
    )
    assert len(ticks) == 1
    assert ticks[0].token_id == "t1"
    assert ticks[0].price == 0.42
    assert not ticks[0].has_book


def test_price_change_uses_mid_when_spread_is_tight():
    message = {
        "topic": "clob_market",
        "type": "price_change",
        "payload": {
            "pc": [
                {"a": "t1", "p": "0.50", "bb": "0.48", "ba": "0.52"},
                {"a": "t2", "p": "0.30"},
            ]
        },
    }
    ticks = parse_message(message, max_spread=0.3)
    assert [t.token_id for t in ticks] == ["t1", "t2"]
    assert abs(ticks[0].price - 0.50) < 1e-9
    assert ticks[0].has_book
    assert ticks[0].best_bid == 0.48
    assert ticks[1].price == 0.30


def test_price_change_with_wide_spread_is_dropped():
    message = {
        "topic": "clob_market",
        "type": "price_change",
        "payload": {"pc": [{"a": "t1", "p": "0.5", "bb": "0.10", "ba": "0.90"}]},
    }
    assert parse_message(message, max_spread=0.3) == []


def test_unrelated_or_malformed_messages_yield_nothing():
    assert parse_message({"topic": "activity", "type": "trades", "payload": {}}) == []
    assert parse_message({"topic": "clob_market", "type": "last_trade_price", "payload": {"price": "x"}}) == []
    assert parse_message({"topic": "clob_market", "type": "price_change", "payload": {"pc": "nope"}}) == []
    assert parse_message({"topic": "clob_market", "type": "last_trade_price"}) == []


def test_decode_frame_tolerates_garbage():
    assert decode_frame(b'{"topic": "clob_market"}') == {"topic": "clob_market"}
    assert decode_frame("not json") is None
    assert decode_frame("") is None
    assert decode_frame("[1, 2]") is None
