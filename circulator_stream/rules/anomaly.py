"""
Anomaly Detector
================

Band-based anomaly classification.

The band is either derived from the first enabled ``outlier_detection`` rule
that carries ``threshold_sigma`` (midpoint +/- sigma * multiplier) or, when
there is none, a fixed default band. Values strictly outside the band are
anomalous.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from circulator_stream.events.schema import Severity
from circulator_stream.rules.schema import OutlierDetectionRule, ProcessingRule


@dataclass(frozen=True)
class AnomalyPolicy:
    """Constants of the band policy"""

    midpoint: float = 25.0
    """Centre of the sigma-scaled band"""

    sigma_multiplier: float = 5.0
    """Band half-width per unit of threshold_sigma"""

    default_lower: float = 10.0
    """Lower bound when no outlier_detection rule applies"""

    default_upper: float = 50.0
    """Upper bound when no outlier_detection rule applies"""

    anomaly_confidence: float = 0.9
    normal_confidence: float = 0.7

    def __post_init__(self):
        if self.default_lower > self.default_upper:
            raise ValueError(
                f"default_lower ({self.default_lower}) must not exceed default_upper ({self.default_upper})"
            )
        for name in ("anomaly_confidence", "normal_confidence"):
            value = getattr(self, name)
            if not (0.0 <= value <= 1.0):
                raise ValueError(f"{name} must be between 0 and 1, got {value}")
        if self.anomaly_confidence < self.normal_confidence:
            raise ValueError("anomaly_confidence must be >= normal_confidence")


@dataclass(frozen=True)
class AnomalyVerdict:
    """Full classification of one value"""

    is_anomaly: bool
    confidence: float
    lower: float
    upper: float
    threshold: Optional[float] = None
    """The bound that was crossed (None when normal)"""

    severity: Optional[Severity] = None


class AnomalyDetector:
    """
    Classifies values against the rule-derived band.

    Args:
        policy: Band constants (defaults to AnomalyPolicy())

    Example:
        >>> detector = AnomalyDetector()
        >>> detector.detect(8.0, [])
        (True, 0.9)
        >>> detector.detect(30.0, [])
        (False, 0.7)
    """

    def __init__(self, policy: Optional[AnomalyPolicy] = None):
        self.policy = policy or AnomalyPolicy()

    def detect(self, value: float, rules: Sequence[ProcessingRule]) -> Tuple[bool, float]:
        verdict = self.evaluate(value, rules)
        return verdict.is_anomaly, verdict.confidence

    def band(self, rules: Sequence[ProcessingRule]) -> Tuple[float, float]:
        """Return the (lower, upper) band the rules select."""
        for rule in rules:
            if not rule.enabled or not isinstance(rule, OutlierDetectionRule):
                continue
            sigma = rule.params.threshold_sigma
            if sigma is None:
                continue
            half_width = sigma * self.policy.sigma_multiplier
            return self.policy.midpoint - half_width, self.policy.midpoint + half_width

        return self.policy.default_lower, self.policy.default_upper

    def evaluate(self, value: float, rules: Sequence[ProcessingRule]) -> AnomalyVerdict:
        lower, upper = self.band(rules)

        if value < lower:
            threshold = lower
        elif value > upper:
            threshold = upper
        else:
            return AnomalyVerdict(
                is_anomaly=False,
                confidence=self.policy.normal_confidence,
                lower=lower,
                upper=upper,
            )

        return AnomalyVerdict(
            is_anomaly=True,
            confidence=self.policy.anomaly_confidence,
            lower=lower,
            upper=upper,
            threshold=threshold,
            severity=self._severity(abs(value - threshold), (upper - lower) / 2),
        )

    @staticmethod
    def _severity(overshoot: float, half_width: float) -> Severity:
        # Zero-width band: any overshoot is as bad as it gets
        if half_width <= 0:
            return Severity.CRITICAL

        ratio = overshoot / half_width
        if ratio < 0.25:
            return Severity.LOW
        if ratio < 0.5:
            return Severity.MEDIUM
        if ratio < 1.0:
            return Severity.HIGH
        return Severity.CRITICAL
