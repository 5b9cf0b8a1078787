"""
Stats Differencer Tests

Tests for rate derivation and quality grading:
- Bandwidth, loss and per-minute formulas
- Zero rates for first/identical/backwards samples
- Counter resets never go negative
- Threshold classification
"""

import pytest

from camsignal.services.stats_differencer import (
    CounterSnapshot,
    QualityRates,
    QualitySample,
    QualityThresholds,
    ZERO_RATES,
    classify,
    derive,
)


def _snap(t, **counters):
    return CounterSnapshot(timestamp=t, **counters)


class TestDerive:
    """Rates from two cumulative snapshots"""

    def test_bandwidth_64_kbps(self):
        """8000 bytes over one second is 64 kbps"""
        rates = derive(_snap(0.0, bytes_received=1000), _snap(1.0, bytes_received=9000))
        assert rates.bandwidth_kbps == 64

    def test_bandwidth_is_floored(self):
        rates = derive(_snap(0.0), _snap(3.0, bytes_received=1000))
        # 8000 bits / 3 s = 2.666 kbps
        assert rates.bandwidth_kbps == 2

    def test_first_sample_is_zero(self):
        assert derive(None, _snap(5.0, bytes_received=123456, packets_lost=4)) == ZERO_RATES

    def test_identical_snapshots_are_zero(self):
        snap = _snap(2.0, bytes_received=5000, packets_received=40, nack_count=3)
        assert derive(snap, snap) == ZERO_RATES

    def test_clock_going_backwards_is_zero(self):
        assert derive(_snap(5.0), _snap(4.0, bytes_received=9000)) == ZERO_RATES

    def test_packet_loss_percentage(self):
        rates = derive(
            _snap(0.0, packets_received=100, packets_lost=0),
            _snap(1.0, packets_received=103, packets_lost=1),
        )
        assert rates.packet_loss_rate_pct == 25.0

    def test_packet_loss_truncated_to_two_decimals(self):
        rates = derive(_snap(0.0), _snap(1.0, packets_received=2, packets_lost=1))
        assert rates.packet_loss_rate_pct == 33.33

    def test_no_packets_means_no_loss(self):
        rates = derive(_snap(0.0), _snap(1.0, bytes_received=10))
        assert rates.packet_loss_rate_pct == 0.0

    def test_per_minute_rates(self):
        rates = derive(_snap(0.0), _snap(2.0, freeze_count=1, pli_count=2, nack_count=7))
        assert rates.freezes_per_min == 30.0
        assert rates.pli_per_min == 60.0
        assert rates.nack_per_min == 210.0

    def test_counter_reset_never_negative(self):
        """The media engine restarting its counters yields zero, not negative rates"""
        rates = derive(
            _snap(0.0, bytes_received=50000, packets_received=500, packets_lost=20, freeze_count=4, pli_count=9),
            _snap(1.0, bytes_received=100, packets_received=3, packets_lost=0, freeze_count=0, pli_count=1),
        )
        for value in rates.to_dict().values():
            assert value >= 0
        assert rates.bandwidth_kbps == 0

    def test_sample_wraps_derive(self):
        sample = QualitySample(previous=_snap(1.0, bytes_received=0), current=_snap(3.0, bytes_received=16000))
        assert sample.elapsed_s == 2.0
        assert sample.rates().bandwidth_kbps == 64


class TestClassify:
    """Quality grades against thresholds"""

    def test_all_good(self):
        levels = classify(ZERO_RATES)
        assert set(levels.values()) == {"good"}

    @pytest.mark.parametrize(
        "loss, expected",
        [(0.99, "good"), (1.0, "warning"), (1.5, "warning"), (2.0, "error"), (12.0, "error")],
    )
    def test_packet_loss_levels(self, loss, expected):
        levels = classify(QualityRates(packet_loss_rate_pct=loss))
        assert levels["packet_loss"] == expected

    def test_overall_is_worst(self):
        levels = classify(QualityRates(freezes_per_min=1.0, nack_per_min=6.0))
        assert levels["freezes"] == "warning"
        assert levels["nack"] == "error"
        assert levels["overall"] == "error"

    def test_custom_thresholds(self):
        thresholds = QualityThresholds(pli_warning=10.0, pli_error=20.0)
        assert classify(QualityRates(pli_per_min=5.0), thresholds)["pli"] == "good"
        assert classify(QualityRates(pli_per_min=5.0))["pli"] == "error"
