from pydantic import BaseModel, Field

from .budget import convert_currency
from .models import Itinerary, QualityTier


BASE_SCORE = 100
UNRESOLVED_COORDINATES_PENALTY = 15
BUDGET_DEVIATION_PENALTY = 10
SPARSE_DAYS_PENALTY = 15
PACKED_DAYS_PENALTY = 10
BUDGET_DEVIATION_LIMIT = 0.3
MIN_ACTIVITIES_PER_DAY = 2
MAX_ACTIVITIES_PER_DAY = 8
ACCURACY_FLOOR = 50


class QualityReport(BaseModel):
    score: int
    quality: QualityTier
    estimated_accuracy: int
    penalties: list[str] = Field(default_factory=list)


def tier_for(score: int) -> QualityTier:
    if score >= 85:
        return "high"
    if score >= 70:
        return "medium"
    return "low"


class QualityScorer:
    def score(self, itinerary: Itinerary, declared_budget: float, declared_currency: str) -> QualityReport:
        score = BASE_SCORE
        penalties = []

        if any(a.location.coordinates.is_unresolved for a in itinerary.activities()):
            score -= UNRESOLVED_COORDINATES_PENALTY
            penalties.append("unresolved coordinates")

        estimate = itinerary.total_budget_estimate
        if declared_budget > 0:
            estimated = convert_currency(estimate.amount, estimate.currency, declared_currency)
            if abs(estimated - declared_budget) / declared_budget > BUDGET_DEVIATION_LIMIT:
                score -= BUDGET_DEVIATION_PENALTY
                penalties.append("budget deviation above 30%")

        per_day = len(itinerary.activities()) / len(itinerary.days)
        if per_day < MIN_ACTIVITIES_PER_DAY:
            score -= SPARSE_DAYS_PENALTY
            penalties.append("fewer than 2 activities per day")
        elif per_day > MAX_ACTIVITIES_PER_DAY:
            score -= PACKED_DAYS_PENALTY
            penalties.append("more than 8 activities per day")

        return QualityReport(
            score=score,
            quality=tier_for(score),
            estimated_accuracy=max(ACCURACY_FLOOR, score),
            penalties=penalties,
        )
