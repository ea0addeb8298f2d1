from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


# --- Trip request ------------------------------------------------------------

Pace = Literal["slow", "moderate", "fast"]
AccommodationTier = Literal["budget", "mid-range", "luxury", "mixed"]
TransportMode = Literal["walking", "public", "rental-car", "mixed"]


class Budget(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount: float = Field(..., gt=0, le=1_000_000)
    currency: str = Field("USD", pattern=r"^[A-Z]{3}$")
    range: Literal["per-person", "total"] = "total"


class Travelers(BaseModel):
    model_config = ConfigDict(frozen=True)

    adults: int = Field(1, ge=1, le=20)
    children: int = Field(0, ge=0, le=10)
    infants: int = Field(0, ge=0, le=5)

    @property
    def total(self) -> int:
        return self.adults + self.children + self.infants


class TravelPreferences(BaseModel):
    model_config = ConfigDict(frozen=True)

    pace: Pace = "moderate"
    accommodation_type: AccommodationTier = "mid-range"
    transportation: TransportMode = "public"
    accessibility: bool = False
    dietary_restrictions: tuple[str, ...] = ()
    special_requests: str = Field("", max_length=500)


class GenerationRequest(BaseModel):
    """A submitted trip request. Immutable; the cache fingerprint derives from it."""

    model_config = ConfigDict(frozen=True)

    destination: str = Field(..., min_length=2, max_length=300)
    start_date: date
    end_date: date
    budget: Budget
    travelers: Travelers = Travelers()
    interests: tuple[str, ...] = Field(..., min_length=1, max_length=8)
    preferences: TravelPreferences = TravelPreferences()

    @model_validator(mode="after")
    def _check_dates(self) -> "GenerationRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        if self.duration_days > 365:
            raise ValueError("trip cannot exceed 365 days")
        return self

    @property
    def duration_days(self) -> int:
        # Inclusive of both the start and the end date.
        return (self.end_date - self.start_date).days + 1

    @property
    def total_budget(self) -> float:
        if self.budget.range == "per-person":
            return self.budget.amount * self.travelers.total
        return self.budget.amount


class GenerationOptions(BaseModel):
    use_cache: bool = True
    max_timeout_s: Optional[float] = Field(None, gt=0)
    prioritize_speed: bool = False
    model: Optional[str] = None
    max_regenerations: int = Field(0, ge=0, le=3)


# --- Itinerary (model output) ----------------------------------------------

_TIME_PATTERN = r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Coordinates(_CamelModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

    @property
    def is_unresolved(self) -> bool:
        return self.lat == 0 and self.lng == 0


class Location(_CamelModel):
    name: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    coordinates: Coordinates


class Pricing(_CamelModel):
    amount: float = Field(..., ge=0)
    currency: str = Field(..., pattern=r"^[A-Z]{3}$")
    price_type: Literal["per_person", "per_group", "free"]


class Accessibility(_CamelModel):
    wheelchair_accessible: bool = False
    has_elevator: bool = False
    notes: str = ""


ActivityType = Literal["attraction", "restaurant", "experience", "transportation", "accommodation", "shopping"]
TimeSlot = Literal["morning", "afternoon", "evening"]


def time_sort_key(value: str) -> tuple[int, int]:
    hours, minutes = value.split(":")
    return int(hours), int(minutes)


class Activity(_CamelModel):
    id: str = ""
    time_slot: TimeSlot
    start_time: str = Field(..., pattern=_TIME_PATTERN)
    end_time: str = Field(..., pattern=_TIME_PATTERN)
    name: str = Field(..., min_length=1)
    type: ActivityType
    description: str = Field(..., min_length=5)
    location: Location
    pricing: Pricing
    duration: str = Field(..., min_length=1)
    tips: list[str] = Field(default_factory=list, max_length=5)
    booking_required: bool = False
    accessibility: Accessibility = Accessibility()


class DailyBudget(_CamelModel):
    amount: float = Field(..., ge=0)
    currency: str = Field(..., min_length=3, max_length=3)


class DayTransportation(_CamelModel):
    primary_method: Literal["walking", "public", "taxi", "rental_car"]
    estimated_cost: float = Field(..., ge=0)
    notes: str = ""


class Day(_CamelModel):
    day: int = Field(..., ge=1)
    date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    theme: str = Field(..., min_length=1)
    activities: list[Activity] = Field(..., min_length=1, max_length=10)
    daily_budget: DailyBudget
    transportation: DayTransportation

    @model_validator(mode="after")
    def _order_activities(self) -> "Day":
        self.activities.sort(key=lambda activity: time_sort_key(activity.start_time))
        for index, activity in enumerate(self.activities):
            if not activity.id:
                activity.id = f"day{self.day}_activity{index + 1}"
        return self


class BudgetBreakdown(_CamelModel):
    accommodation: float = Field(..., ge=0)
    food: float = Field(..., ge=0)
    activities: float = Field(..., ge=0)
    transportation: float = Field(..., ge=0)
    other: float = Field(..., ge=0)

    def total(self) -> float:
        return self.accommodation + self.food + self.activities + self.transportation + self.other


class TotalBudgetEstimate(_CamelModel):
    amount: float = Field(..., ge=0)
    currency: str = Field(..., min_length=3, max_length=3)
    breakdown: BudgetBreakdown


class EmergencyInfo(_CamelModel):
    emergency_number: str = Field(..., min_length=1)
    embassy: str = ""
    hospitals: list[str] = Field(default_factory=list)


class Itinerary(_CamelModel):
    destination: str = Field(..., min_length=1)
    duration: int = Field(..., ge=1, le=365)
    total_budget_estimate: TotalBudgetEstimate
    days: list[Day] = Field(..., min_length=1)
    general_tips: list[str] = Field(default_factory=list, max_length=10)
    emergency_info: EmergencyInfo

    def activities(self) -> list[Activity]:
        return [activity for day in self.days for activity in day.activities]


class ItineraryResponse(_CamelModel):
    itinerary: Itinerary


# --- Quick itinerary (low-token path) ----------------------------------------

class QuickActivity(_CamelModel):
    name: str = Field(..., min_length=1)
    type: Literal["attraction", "restaurant", "experience"]
    time_slot: TimeSlot
    price: float = Field(..., ge=0)
    description: str = Field(..., min_length=5)


class QuickDay(_CamelModel):
    day: int = Field(..., ge=1)
    activities: list[QuickActivity] = Field(..., min_length=1)


class QuickItinerary(_CamelModel):
    days: list[QuickDay] = Field(..., min_length=1)
    total_estimate: float = Field(..., ge=0)


# --- Results -----------------------------------------------------------------

QualityTier = Literal["high", "medium", "low"]


class PerformanceMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_time_ms: float
    cache_hit: bool
    ai_generation_time_ms: Optional[float] = None
    validation_time_ms: Optional[float] = None
    optimizations_applied: tuple[str, ...] = ()


class ResultMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    generated_at: datetime
    generation_method: Literal["ai", "cache"]
    quality: QualityTier
    estimated_accuracy: int
    model: str
    fingerprint: str


class ItineraryResult(BaseModel):
    itinerary: ItineraryResponse
    performance: PerformanceMetrics
    warnings: list[str] = Field(default_factory=list)
    metadata: ResultMetadata

    @field_validator("warnings")
    @classmethod
    def _dedupe_warnings(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))
