from __future__ import annotations

import logging

import pytest

from dashrelay.presence import PresenceTracker, TransferMeter


def test_client_joins_once_and_leaves_once(caplog):
    tracker = PresenceTracker(sweep_interval=1.0, expiry_factor=6)

    with caplog.at_level(logging.INFO, logger="presence"):
        assert tracker.note_seen("10.0.0.7", now=0.0) is True
        for t in (0.5, 1.0, 2.0, 3.5):
            assert tracker.note_seen("10.0.0.7", now=t) is False
        assert tracker.sweep(now=9.0) == []
        assert tracker.sweep(now=9.6) == [("10.0.0.7", 0)]
        assert tracker.sweep(now=20.0) == []

    assert caplog.text.count("client 10.0.0.7 connected (1 clients)") == 1
    assert caplog.text.count("client 10.0.0.7 left (0 clients)") == 1
    assert tracker.population == 0


def test_expiry_is_strictly_greater_than_window():
    tracker = PresenceTracker(sweep_interval=1.0, expiry_factor=6)
    tracker.note_seen("a", now=0.0)
    assert tracker.sweep(now=6.0) == []
    assert tracker.sweep(now=6.01) == [("a", 0)]


def test_population_counts_distinct_identities():
    tracker = PresenceTracker()
    tracker.note_seen("a", now=0.0)
    tracker.note_seen("b", now=0.0)
    tracker.note_seen("a", now=1.0)

    assert tracker.population == 2
    assert tracker.snapshot() == {"a": 1.0, "b": 0.0}


def test_departures_report_remaining_population():
    tracker = PresenceTracker()
    tracker.note_seen("a", now=0.0)
    tracker.note_seen("b", now=0.0)
    tracker.note_seen("c", now=5.0)

    left = tracker.sweep(now=7.0)
    assert sorted(ip for ip, _ in left) == ["a", "b"]
    assert [count for _, count in left] == [2, 1]
    assert tracker.population == 1


def test_rejoin_after_expiry_is_a_new_connection():
    tracker = PresenceTracker()
    tracker.note_seen("a", now=0.0)
    tracker.sweep(now=10.0)

    assert tracker.note_seen("a", now=11.0) is True


def test_last_seen_never_moves_backwards():
    tracker = PresenceTracker()
    tracker.note_seen("a", now=5.0)
    tracker.note_seen("a", now=3.0)
    assert tracker.snapshot()["a"] == 5.0


def test_injected_clock_is_used_by_default():
    now = [100.0]
    tracker = PresenceTracker(clock=lambda: now[0])
    tracker.note_seen("a")
    now[0] = 107.0
    assert tracker.sweep() == [("a", 0)]


@pytest.mark.parametrize("kwargs", [{"sweep_interval": 0}, {"expiry_factor": -1}])
def test_rejects_non_positive_timing(kwargs):
    with pytest.raises(ValueError):
        PresenceTracker(**kwargs)


def test_meter_drains_counted_bytes():
    meter = TransferMeter()
    meter.add(1500)
    meter.add(500)
    meter.add(0)
    meter.add(-10)

    assert meter.drain() == 2000
    assert meter.drain() == 0


def test_meter_tracks_running_maximum(caplog):
    meter = TransferMeter(interval=1.0)

    with caplog.at_level(logging.INFO, logger="presence"):
        assert meter.report(250_000) is True
        assert meter.report(100_000) is False
        assert meter.report(250_000) is False
        assert meter.report(0) is False

    assert meter.max_bytes_per_interval == 250_000
    assert caplog.text.count("new max: 250.0 kbps") == 1


def test_meter_logs_every_interval_when_enabled(caplog):
    meter = TransferMeter(interval=2.0, log_rate=True)
    with caplog.at_level(logging.INFO, logger="presence"):
        meter.report(4000)
        meter.report(1000)

    assert "2.0 kbps" in caplog.text
    assert "0.5 kbps" in caplog.text
