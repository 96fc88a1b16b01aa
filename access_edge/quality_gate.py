"""
Quality gate.

Pure function of configuration and per-frame signals. Frames that cannot
yield a trustworthy embedding are rejected before any inference runs.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from .config import QualityConfig
from .errors import QualitySignalMissing
from .frame_source import QualitySignals


@dataclass(frozen=True)
class GateResult:
    accepted: bool
    score: float
    reasons: List[str] = field(default_factory=list)
    missing_signal: Optional[str] = None


class QualityGate:
    """
    Accept/reject frames on blur, exposure and occlusion.

    Usage:
        gate = QualityGate(config.quality)
        result = gate.evaluate(frame.signals)
        if result.accepted:
            ...
    """

    def __init__(self, config: QualityConfig):
        self.config = config

    def check(self, signals: QualitySignals) -> GateResult:
        """
        Evaluate signals, raising on a missing one.

        Raises:
            QualitySignalMissing: If exposure, blur or occlusion is None
        """
        for name in ("exposure", "blur", "occlusion"):
            if getattr(signals, name) is None:
                raise QualitySignalMissing(name)

        cfg = self.config
        reasons = []
        if signals.blur > cfg.blur_ceiling:
            reasons.append("blur")
        if signals.exposure < cfg.exposure_min:
            reasons.append("underexposed")
        elif signals.exposure > cfg.exposure_max:
            reasons.append("overexposed")
        if signals.occlusion > cfg.occlusion_ceiling:
            reasons.append("occluded")

        return GateResult(accepted=not reasons, score=self.score(signals), reasons=reasons)

    def evaluate(self, signals: QualitySignals) -> GateResult:
        """Like check(), but a missing signal is a plain reject."""
        try:
            return self.check(signals)
        except QualitySignalMissing as e:
            return GateResult(accepted=False, score=0.0, reasons=["signal_missing"],
                              missing_signal=e.signal)

    def score(self, signals: QualitySignals) -> float:
        """
        Normalized quality in [0, 1].

        Mean of sharpness (1 - blur), exposure centring within the band and
        visibility (1 - occlusion).
        """
        cfg = self.config
        sharpness = 1.0 - signals.blur

        center = (cfg.exposure_min + cfg.exposure_max) / 2.0
        half_band = (cfg.exposure_max - cfg.exposure_min) / 2.0
        if half_band > 0:
            exposure_score = 1.0 - abs(signals.exposure - center) / (2.0 * half_band)
        else:
            exposure_score = 1.0 if signals.exposure == center else 0.0

        visibility = 1.0 - signals.occlusion
        raw = (sharpness + exposure_score + visibility) / 3.0
        return min(1.0, max(0.0, raw))
