"""
Delivery risk scoring

Pure mapping from a customer's aggregate delivery stats to a 0-100 score and
a traffic-light level. Only voucher-level signals count: returned parcels
and late deliveries. Order status does not feed the score.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from courier_intel.config import get_settings

SCORE_MIN = 0
SCORE_MAX = 100

LEVEL_GREEN = "green"
LEVEL_YELLOW = "yellow"
LEVEL_RED = "red"


@dataclass(frozen=True)
class RiskPolicy:
    """Weights and level thresholds (inclusive upper bounds)."""
    return_weight: int = 20
    late_delivery_weight: int = 10
    green_max: int = 30
    yellow_max: int = 60

    @classmethod
    def from_settings(cls, settings=None) -> "RiskPolicy":
        settings = settings or get_settings()
        return cls(
            return_weight=settings.risk_return_weight,
            late_delivery_weight=settings.risk_late_delivery_weight,
            green_max=settings.risk_green_max,
            yellow_max=settings.risk_yellow_max,
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "return_weight": self.return_weight,
            "late_delivery_weight": self.late_delivery_weight,
            "green_max": self.green_max,
            "yellow_max": self.yellow_max,
        }


@dataclass(frozen=True)
class RiskAssessment:
    score: int
    level: str


class RiskScorer:
    """Score = clamp(0, 100, returns * return_weight + late_deliveries * late_delivery_weight)"""

    def __init__(self, policy: Optional[RiskPolicy] = None):
        self.policy = policy or RiskPolicy()

    def score(self, stat: Any) -> int:
        """
        Args:
            stat: anything exposing ``returns`` and ``late_deliveries``
                  (a CustomerStat row or a plain object)
        """
        returns = int(getattr(stat, "returns", 0) or 0)
        late = int(getattr(stat, "late_deliveries", 0) or 0)
        raw = returns * self.policy.return_weight + late * self.policy.late_delivery_weight
        return max(SCORE_MIN, min(SCORE_MAX, raw))

    def level(self, score: int) -> str:
        if score <= self.policy.green_max:
            return LEVEL_GREEN
        if score <= self.policy.yellow_max:
            return LEVEL_YELLOW
        return LEVEL_RED

    def assess(self, stat: Any) -> RiskAssessment:
        score = self.score(stat)
        return RiskAssessment(score=score, level=self.level(score))
