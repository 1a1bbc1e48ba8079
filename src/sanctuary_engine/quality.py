"""Audio quality & connection classification.

Pure and stateless: the same samples and clock always give the same answer. The result
is advisory; it updates a participant's displayed connection status and never changes
membership.
"""
from __future__ import annotations
from dataclasses import dataclass
from statistics import fmean
from typing import Sequence
from sanctuary_engine.models.states import ConnectionQuality, ConnectionStatus
from sanctuary_engine.telemetry import TransportSample


@dataclass(frozen=True)
class QualityThresholds:
    poor_rtt_ms: float = 150.0
    poor_packet_loss: float = 5.0
    poor_jitter_ms: float = 30.0
    excellent_rtt_ms: float = 50.0
    excellent_packet_loss: float = 1.0
    excellent_jitter_ms: float = 20.0
    stale_after_seconds: float = 10.0
    window: int = 5


DEFAULT_THRESHOLDS = QualityThresholds()


def classify(samples: Sequence[TransportSample], now: float,
             thresholds: QualityThresholds = DEFAULT_THRESHOLDS) -> ConnectionQuality:
    if not samples:
        return ConnectionQuality.DISCONNECTED
    latest = max(s.at for s in samples)
    if now - latest > thresholds.stale_after_seconds:
        return ConnectionQuality.DISCONNECTED
    recent = list(samples)[-thresholds.window:]
    rtt = fmean(s.rtt_ms for s in recent)
    loss = fmean(s.packet_loss for s in recent)
    jitter = fmean(s.jitter_ms for s in recent)
    if rtt > thresholds.poor_rtt_ms or loss > thresholds.poor_packet_loss or jitter > thresholds.poor_jitter_ms:
        return ConnectionQuality.POOR
    if (rtt <= thresholds.excellent_rtt_ms and loss <= thresholds.excellent_packet_loss
            and jitter <= thresholds.excellent_jitter_ms):
        return ConnectionQuality.EXCELLENT
    return ConnectionQuality.GOOD


def connection_status_for(quality: ConnectionQuality) -> str:
    if quality == ConnectionQuality.DISCONNECTED:
        return ConnectionStatus.DISCONNECTED.value
    return ConnectionStatus.CONNECTED.value
