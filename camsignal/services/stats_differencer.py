"""
Stats Differencer

Turns two cumulative counter snapshots into per-second and per-minute
quality rates. Pure functions only: the orchestrator owns the snapshots.
"""

import math
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any

# Quality levels, worst wins
QUALITY_GOOD = "good"
QUALITY_WARNING = "warning"
QUALITY_ERROR = "error"

_LEVEL_ORDER = {QUALITY_GOOD: 0, QUALITY_WARNING: 1, QUALITY_ERROR: 2}


@dataclass(frozen=True)
class CounterSnapshot:
    """Raw cumulative counters read from the media transport."""

    timestamp: float  # seconds, monotonic clock
    bytes_received: int = 0
    packets_received: int = 0
    packets_lost: int = 0
    freeze_count: int = 0
    pli_count: int = 0
    nack_count: int = 0
    round_trip_time: Optional[float] = None
    jitter: Optional[float] = None


@dataclass(frozen=True)
class QualityRates:
    """Time-windowed rates derived from two snapshots."""

    bandwidth_kbps: int = 0
    packet_loss_rate_pct: float = 0.0
    freezes_per_min: float = 0.0
    pli_per_min: float = 0.0
    nack_per_min: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


ZERO_RATES = QualityRates()


@dataclass(frozen=True)
class QualitySample:
    """Immutable (previous, current) pair handed to :func:`derive`."""

    previous: Optional[CounterSnapshot]
    current: CounterSnapshot

    @property
    def elapsed_s(self) -> float:
        if self.previous is None:
            return 0.0
        return self.current.timestamp - self.previous.timestamp

    def rates(self) -> QualityRates:
        return derive(self.previous, self.current)


@dataclass(frozen=True)
class QualityThresholds:
    """Warning/error limits for each rate (a value at or above a limit trips that level)."""

    packet_loss_warning: float = 1.0
    packet_loss_error: float = 2.0
    freeze_warning: float = 1.0
    freeze_error: float = 3.0
    pli_warning: float = 1.0
    pli_error: float = 3.0
    nack_warning: float = 1.0
    nack_error: float = 5.0


def _delta(current: int, previous: int) -> int:
    # counters reset by the media engine must not produce negative rates
    return max(current - previous, 0)


def _per_minute(delta: int, elapsed_s: float) -> float:
    return math.floor(delta / elapsed_s * 60 * 100) / 100


def derive(previous: Optional[CounterSnapshot], current: CounterSnapshot) -> QualityRates:
    """
    Derive quality rates from two cumulative snapshots.

    Returns all-zero rates for the first sample (no ``previous``) and when
    the elapsed time is not positive.
    """
    if previous is None:
        return ZERO_RATES

    elapsed_s = current.timestamp - previous.timestamp
    if elapsed_s <= 0:
        return ZERO_RATES

    bytes_delta = _delta(current.bytes_received, previous.bytes_received)
    received_delta = _delta(current.packets_received, previous.packets_received)
    lost_delta = _delta(current.packets_lost, previous.packets_lost)

    packets_total = received_delta + lost_delta
    if packets_total > 0:
        loss_pct = math.floor(lost_delta / packets_total * 10000) / 100
    else:
        loss_pct = 0.0

    return QualityRates(
        bandwidth_kbps=math.floor(bytes_delta * 8 / elapsed_s / 1000),
        packet_loss_rate_pct=loss_pct,
        freezes_per_min=_per_minute(_delta(current.freeze_count, previous.freeze_count), elapsed_s),
        pli_per_min=_per_minute(_delta(current.pli_count, previous.pli_count), elapsed_s),
        nack_per_min=_per_minute(_delta(current.nack_count, previous.nack_count), elapsed_s),
    )


def _level(value: float, warning: float, error: float) -> str:
    if value >= error:
        return QUALITY_ERROR
    if value >= warning:
        return QUALITY_WARNING
    return QUALITY_GOOD


def classify(rates: QualityRates, thresholds: QualityThresholds = None) -> Dict[str, str]:
    """
    Grade each rate against the thresholds.

    Returns:
        {
            'packet_loss': 'good' | 'warning' | 'error',
            'freezes': ...,
            'pli': ...,
            'nack': ...,
            'overall': worst of the above
        }
    """
    t = thresholds or QualityThresholds()
    levels = {
        "packet_loss": _level(rates.packet_loss_rate_pct, t.packet_loss_warning, t.packet_loss_error),
        "freezes": _level(rates.freezes_per_min, t.freeze_warning, t.freeze_error),
        "pli": _level(rates.pli_per_min, t.pli_warning, t.pli_error),
        "nack": _level(rates.nack_per_min, t.nack_warning, t.nack_error),
    }
    levels["overall"] = max(levels.values(), key=lambda level: _LEVEL_ORDER[level])
    return levels
