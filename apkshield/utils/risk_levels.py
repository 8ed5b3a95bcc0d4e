"""
Risk level utilities.
Maps a raw risk score onto an ordered severity band, the fake verdict and a
capped confidence value.
"""

import math
from dataclasses import dataclass
from typing import Tuple

from apkshield.schemas.analysis_schemas import RiskLevel


# Score at or above which a band marks the APK as fake.
# The high band starts at 50 but only flags fakes from 60 upwards.
HIGH_BAND_FAKE_THRESHOLD = 60


@dataclass(frozen=True)
class RiskBand:
    level: RiskLevel
    min_score: float
    fake_threshold: float  # math.inf = never fake
    confidence_base: float
    confidence_slope: float
    confidence_cap: float

    def confidence(self, score: float) -> float:
        return min(self.confidence_cap, self.confidence_base + score * self.confidence_slope)

    def is_fake(self, score: float) -> bool:
        return score >= self.fake_threshold


# Highest band first; the first band whose min_score is met wins.
RISK_BANDS: Tuple[RiskBand, ...] = (
    RiskBand(RiskLevel.CRITICAL, 80, 80, 70, 0.3, 95),
    RiskBand(RiskLevel.HIGH, 50, HIGH_BAND_FAKE_THRESHOLD, 60, 0.4, 85),
    RiskBand(RiskLevel.MEDIUM, 25, math.inf, 50, 0.5, 75),
    RiskBand(RiskLevel.LOW, 10, math.inf, 40, 0.6, 65),
    RiskBand(RiskLevel.MINIMAL, 0, math.inf, 30, 1.0, 60),
)


def band_for_score(score: float) -> RiskBand:
    for band in RISK_BANDS:
        if score >= band.min_score:
            return band
    # Scores never go negative, but keep the lowest band as the floor
    return RISK_BANDS[-1]


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def derive_risk_from_score(score: float) -> Tuple[RiskLevel, bool, int]:
    """
    Derive (level, is_fake, confidence) from a raw risk score.

    Confidence is capped per band and rounded to the nearest integer.
    """
    band = band_for_score(score)
    return band.level, band.is_fake(score), round_half_up(band.confidence(score))

