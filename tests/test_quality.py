import pytest
from sanctuary_engine.models.states import ConnectionQuality
from sanctuary_engine.quality import QualityThresholds, classify, connection_status_for
from sanctuary_engine.telemetry import InMemoryTelemetryStore, TransportSample

NOW = 1_000.0


def _samples(*triples, at=NOW):
    return [TransportSample(packet_loss=loss, rtt_ms=rtt, jitter_ms=jitter, at=at) for loss, rtt, jitter in triples]


@pytest.mark.parametrize("loss,rtt,jitter,expected", [
    (0.5, 40, 10, ConnectionQuality.EXCELLENT),
    (2.0, 40, 10, ConnectionQuality.GOOD),
    (0.5, 120, 10, ConnectionQuality.GOOD),
    (6.0, 40, 10, ConnectionQuality.POOR),
    (0.5, 200, 10, ConnectionQuality.POOR),
    (0.5, 40, 45, ConnectionQuality.POOR),
])
def test_classify_thresholds(loss, rtt, jitter, expected):
    assert classify(_samples((loss, rtt, jitter)), NOW) == expected


def test_classify_averages_the_window():
    samples = _samples((0.0, 500, 0), (0.0, 20, 0), (0.0, 30, 0))
    assert classify(samples, NOW) == ConnectionQuality.POOR
    assert classify(samples, NOW, QualityThresholds(window=2)) == ConnectionQuality.EXCELLENT


def test_no_or_stale_samples_mean_disconnected():
    assert classify([], NOW) == ConnectionQuality.DISCONNECTED
    stale = _samples((0.0, 20, 0), at=NOW - 10.5)
    assert classify(stale, NOW) == ConnectionQuality.DISCONNECTED
    assert classify(stale, NOW - 1) == ConnectionQuality.EXCELLENT


def test_connection_status_follows_quality():
    assert connection_status_for(ConnectionQuality.DISCONNECTED) == "disconnected"
    assert connection_status_for(ConnectionQuality.POOR) == "connected"


def test_telemetry_store_is_last_write_wins():
    store = InMemoryTelemetryStore(window=2)
    store.write("s-1", "p-1", audio_level=10, at=1.0)
    store.write("s-1", "p-1", connection_status="connected", at=2.0)
    for i in range(3):
        store.write("s-1", "p-1", sample=TransportSample(packet_loss=i, rtt_ms=10), at=3.0 + i)
    state = store.read("s-1", "p-1")
    assert state.audio_level == 10
    assert state.connection_status == "connected"
    assert [s.packet_loss for s in state.samples] == [1, 2]
    assert state.updated_at == 5.0
    assert store.sessions() == {"s-1"}
    store.discard("s-1")
    assert store.read("s-1", "p-1") is None
