import pytest

from access_edge.config import QualityConfig
from access_edge.errors import QualitySignalMissing
from access_edge.frame_source import QualitySignals
from access_edge.quality_gate import QualityGate


@pytest.fixture
def gate():
    return QualityGate(QualityConfig(blur_ceiling=0.6, exposure_min=0.15,
                                     exposure_max=0.85, occlusion_ceiling=0.5))


def test_good_frame_accepted(gate):
    result = gate.evaluate(QualitySignals(exposure=0.5, blur=0.1, occlusion=0.0))
    assert result.accepted
    assert result.reasons == []
    assert 0.9 < result.score <= 1.0


@pytest.mark.parametrize("signals,reason", [
    (QualitySignals(exposure=0.5, blur=0.7, occlusion=0.0), "blur"),
    (QualitySignals(exposure=0.05, blur=0.1, occlusion=0.0), "underexposed"),
    (QualitySignals(exposure=0.95, blur=0.1, occlusion=0.0), "overexposed"),
    (QualitySignals(exposure=0.5, blur=0.1, occlusion=0.8), "occluded"),
])
def test_bad_frame_rejected_with_reason(gate, signals, reason):
    result = gate.evaluate(signals)
    assert not result.accepted
    assert reason in result.reasons


def test_limits_are_inclusive(gate):
    assert gate.evaluate(QualitySignals(exposure=0.15, blur=0.6, occlusion=0.5)).accepted
    assert gate.evaluate(QualitySignals(exposure=0.85, blur=0.0, occlusion=0.0)).accepted


def test_multiple_reasons_reported(gate):
    result = gate.evaluate(QualitySignals(exposure=0.01, blur=0.9, occlusion=0.9))
    assert result.reasons == ["blur", "underexposed", "occluded"]


@pytest.mark.parametrize("missing", ["exposure", "blur", "occlusion"])
def test_missing_signal_is_reject_not_error(gate, missing):
    values = {"exposure": 0.5, "blur": 0.1, "occlusion": 0.0}
    values[missing] = None
    result = gate.evaluate(QualitySignals(**values))
    assert not result.accepted
    assert result.missing_signal == missing
    assert result.score == 0.0


def test_check_raises_on_missing_signal(gate):
    with pytest.raises(QualitySignalMissing) as exc:
        gate.check(QualitySignals(exposure=None, blur=0.1, occlusion=0.0))
    assert exc.value.signal == "exposure"


def test_score_is_bounded(gate):
    worst = gate.score(QualitySignals(exposure=1.0, blur=1.0, occlusion=1.0))
    best = gate.score(QualitySignals(exposure=0.5, blur=0.0, occlusion=0.0))
    assert 0.0 <= worst < best == 1.0


def test_config_rejects_inverted_exposure_band():
    with pytest.raises(ValueError):
        QualityConfig(exposure_min=0.9, exposure_max=0.1)
