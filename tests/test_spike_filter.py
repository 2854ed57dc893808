from oddsmirror.core.spike_filter import SpikeFilter


def _filter():
    return SpikeFilter(max_deviation=0.25, sustain_tolerance=0.05, sustain_count=3)


def test_small_moves_pass():
    spike = _filter()
    assert spike.evaluate("t1", 0.6, 0.5)
    assert spike.pending("t1") is None
    assert spike.rejected == 0


def test_first_observation_passes_without_stored_value():
    spike = _filter()
    assert spike.evaluate("t1", 0.95, None)
    assert spike.evaluate("t1", 0.95, 0.0)


def test_large_move_needs_sustained_confirmation():
    spike = _filter()
    assert not spike.evaluate("t1", 0.9, 0.5)
    assert spike.pending("t1").count == 1
    assert not spike.evaluate("t1", 0.91, 0.5)
    assert spike.pending("t1").count == 2
    assert spike.pending("t1").price == 0.91
    assert spike.evaluate("t1", 0.9, 0.5)
    assert spike.pending("t1") is None
    assert spike.rejected == 2


def test_disagreeing_spike_restarts_count():
    spike = _filter()
    assert not spike.evaluate("t1", 0.9, 0.5)
    assert not spike.evaluate("t1", 0.1, 0.5)
    assert spike.pending("t1").count == 1
    assert spike.pending("t1").price == 0.1


def test_in_band_tick_clears_pending_spike():
    spike = _filter()
    assert not spike.evaluate("t1", 0.9, 0.5)
    assert spike.evaluate("t1", 0.52, 0.5)
    assert spike.pending("t1") is None


def test_tokens_are_tracked_independently():
    spike = _filter()
    assert not spike.evaluate("a", 0.9, 0.5)
    assert not spike.evaluate("b", 0.9, 0.5)
    assert spike.pending("a").count == 1
    assert spike.pending("b").count == 1
    spike.reset()
    assert spike.pending("a") is None
