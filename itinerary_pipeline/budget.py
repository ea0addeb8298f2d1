"""Heuristic trip cost estimates and budget-driven itinerary adjustment.

Costs are modelled in USD per day and category, scaled by a regional
multiplier and the number of travelers, then converted with a static rate
table. The figures are rough by nature; they decide whether a declared
budget is realistic, not what anything costs.
"""
import logging
import re
from typing import Literal

from pydantic import BaseModel, Field

from .models import Activity, GenerationRequest, ItineraryResponse
from .tracing import log_event


logger = logging.getLogger(__name__)

Category = Literal["accommodation", "food", "activities", "transportation", "other"]
CATEGORIES: tuple[Category, ...] = ("accommodation", "food", "activities", "transportation", "other")
DISCRETIONARY: tuple[Category, ...] = ("food", "activities", "transportation", "other")

REGIONAL_MULTIPLIERS = {
    "western-europe": 1.4,
    "northern-europe": 1.5,
    "southern-europe": 1.2,
    "east-asia": 1.1,
    "southeast-asia": 0.7,
    "south-asia": 0.5,
    "central-asia": 0.6,
    "north-america": 1.3,
    "central-america": 0.8,
    "south-america": 0.9,
    "north-africa": 0.7,
    "sub-saharan-africa": 0.6,
    "australia-new-zealand": 1.4,
    "pacific-islands": 1.6,
    "middle-east": 1.0,
    "default": 1.0,
}

# Checked in order; the first region with a matching keyword wins.
REGION_KEYWORDS = [
    ("western-europe", ("france", "germany", "netherlands", "belgium", "austria", "switzerland")),
    ("northern-europe", ("norway", "sweden", "denmark", "finland", "iceland")),
    ("southern-europe", ("spain", "italy", "greece", "portugal", "malta", "cyprus")),
    ("east-asia", ("japan", "south korea", "china", "taiwan", "hong kong", "macau")),
    ("southeast-asia", ("thailand", "vietnam", "cambodia", "laos", "myanmar", "malaysia", "singapore",
                        "indonesia", "philippines", "brunei")),
    ("south-asia", ("india", "pakistan", "bangladesh", "sri lanka", "nepal", "bhutan", "maldives")),
    ("central-america", ("mexico", "guatemala", "belize", "honduras", "el salvador", "nicaragua",
                         "costa rica", "panama")),
    ("south-america", ("brazil", "argentina", "chile", "peru", "colombia", "ecuador", "bolivia", "uruguay")),
    ("north-america", ("united states", "canada", "usa")),
    ("north-africa", ("morocco", "egypt", "tunisia", "algeria")),
    ("sub-saharan-africa", ("kenya", "tanzania", "nigeria", "ghana", "uganda", "rwanda", "ethiopia",
                            "south africa")),
    ("australia-new-zealand", ("australia", "new zealand")),
    ("pacific-islands", ("fiji", "samoa", "tonga", "vanuatu")),
    ("middle-east", ("united arab emirates", "uae", "dubai", "saudi arabia", "qatar", "jordan", "oman")),
]

# USD per traveler-day
BASE_DAILY_COSTS = {
    "budget": {"accommodation": 25, "food": 20, "activities": 15, "transportation": 8, "other": 7},
    "mid-range": {"accommodation": 80, "food": 40, "activities": 30, "transportation": 15, "other": 15},
    "luxury": {"accommodation": 200, "food": 80, "activities": 60, "transportation": 30, "other": 30},
}

TRANSPORT_MULTIPLIERS = {"walking": 0.3, "public": 1.0, "rental-car": 1.5, "mixed": 1.2}

EXPENSIVE_INTERESTS = {"luxury", "adventure", "business"}

CATEGORY_SHARES = {
    "budget": {"accommodation": 0.35, "food": 0.35, "activities": 0.20, "transportation": 0.08, "other": 0.02},
    "mid-range": {"accommodation": 0.40, "food": 0.30, "activities": 0.20, "transportation": 0.08, "other": 0.02},
    "luxury": {"accommodation": 0.45, "food": 0.25, "activities": 0.20, "transportation": 0.08, "other": 0.02},
}

# Units of currency per USD. Static; good enough for a plausibility check.
CURRENCY_RATES = {
    "USD": 1.0, "EUR": 0.85, "GBP": 0.73, "JPY": 110.0, "CAD": 1.25, "AUD": 1.35, "CHF": 0.92,
    "CNY": 6.45, "INR": 74.0, "BRL": 5.2, "MXN": 20.0, "SGD": 1.35, "HKD": 7.8, "NOK": 8.6,
    "SEK": 8.8, "DKK": 6.3, "PLN": 3.9, "CZK": 21.5, "HUF": 295.0, "TRY": 8.5, "ZAR": 14.2,
    "KRW": 1180.0, "THB": 31.0, "VND": 23000.0, "PHP": 50.0, "IDR": 14300.0, "MYR": 4.1,
    "AED": 3.67, "SAR": 3.75, "EGP": 15.7, "MAD": 8.9, "TND": 2.8, "KES": 108.0, "NGN": 411.0,
    "GHS": 5.8, "UGX": 3540.0, "TZS": 2310.0, "RWF": 1000.0, "ETB": 44.0, "XOF": 558.0,
    "XAF": 558.0, "LKR": 200.0, "PKR": 170.0, "BDT": 85.0, "NPR": 118.0, "MMK": 1400.0,
    "LAK": 9500.0, "KHR": 4080.0, "BND": 1.35, "TWD": 28.0, "MOP": 8.0, "FJD": 2.1, "TOP": 2.3,
    "WST": 2.6, "VUV": 112.0, "SBD": 8.0, "PGK": 3.5, "XPF": 107.0,
}

OPTIMIZE_BELOW_PERCENT = -20
REALISTIC_WITHIN_PERCENT = 30
MAX_ACCOMMODATION_CUT = 0.3
DISCRETIONARY_FLOOR = 0.25


class CategoryAmounts(BaseModel):
    accommodation: float
    food: float
    activities: float
    transportation: float
    other: float

    def total(self) -> float:
        return sum(getattr(self, c) for c in CATEGORIES)


class BudgetEstimate(BaseModel):
    total: float
    currency: str
    breakdown: CategoryAmounts
    daily_average: float
    per_person_total: float | None = None


class BudgetCheck(BaseModel):
    is_realistic: bool
    estimate: BudgetEstimate
    user_budget: float
    difference: float
    difference_percentage: float
    recommendations: list[str] = Field(default_factory=list)

    @property
    def needs_optimization(self) -> bool:
        return self.difference_percentage < OPTIMIZE_BELOW_PERCENT


class OptimizationResult(BaseModel):
    response: ItineraryResponse
    savings: float
    modifications: list[str] = Field(default_factory=list)


def region_for(destination: str) -> str:
    lowered = destination.lower()
    for region, keywords in REGION_KEYWORDS:
        # whole words only: "usa" must not match "Jerusalem"
        if any(re.search(rf"\b{re.escape(keyword)}\b", lowered) for keyword in keywords):
            return region
    return "default"


def convert_currency(amount: float, from_currency: str, to_currency: str) -> float:
    if from_currency == to_currency:
        return amount
    from_rate = CURRENCY_RATES.get(from_currency.upper(), 1.0)
    to_rate = CURRENCY_RATES.get(to_currency.upper(), 1.0)
    return amount / from_rate * to_rate


def _group_factor(travelers: int, per_extra: float) -> float:
    return 1.0 if travelers <= 1 else 1 + (travelers - 1) * per_extra


class BudgetOptimizer:
    def calculate_estimate(self, request: GenerationRequest) -> BudgetEstimate:
        duration = request.duration_days
        travelers = request.travelers.total
        prefs = request.preferences
        multiplier = REGIONAL_MULTIPLIERS[region_for(request.destination)]
        base = BASE_DAILY_COSTS.get(prefs.accommodation_type, BASE_DAILY_COSTS["mid-range"])

        # rooms and rides are shared, so they scale sub-linearly
        accommodation = base["accommodation"] * multiplier * _group_factor(travelers, 0.6)
        food = base["food"] * multiplier * travelers
        if prefs.dietary_restrictions:
            food *= 1 + 0.1 * len(prefs.dietary_restrictions)
        activities = base["activities"] * multiplier * travelers
        if EXPENSIVE_INTERESTS.intersection(i.lower() for i in request.interests):
            activities *= 1.3
        transportation = (base["transportation"] * multiplier * TRANSPORT_MULTIPLIERS.get(prefs.transportation, 1.0)
                          * _group_factor(travelers, 0.7))
        other = base["other"] * multiplier * travelers

        currency = request.budget.currency
        daily = {"accommodation": accommodation, "food": food, "activities": activities,
                 "transportation": transportation, "other": other}
        breakdown = CategoryAmounts(**{
            category: round(convert_currency(amount * duration, "USD", currency))
            for category, amount in daily.items()
        })
        total = round(convert_currency(sum(daily.values()) * duration, "USD", currency))
        return BudgetEstimate(
            total=total,
            currency=currency,
            breakdown=breakdown,
            daily_average=round(total / duration),
            per_person_total=round(total / travelers) if travelers > 1 else None,
        )

    def validate_budget(self, request: GenerationRequest) -> BudgetCheck:
        estimate = self.calculate_estimate(request)
        user_budget = request.total_budget
        difference = user_budget - estimate.total
        percentage = difference / estimate.total * 100 if estimate.total else 0.0

        if percentage < -50:
            recommendations = [
                "Your budget may be too low for this destination and accommodation type",
                "Consider choosing budget accommodation or reducing trip duration",
                "Look for free activities and local street food options",
            ]
        elif percentage < -20:
            recommendations = [
                "Your budget is below our estimate; consider more budget-friendly options",
                "Focus on free walking tours and local markets",
            ]
        elif percentage > 50:
            recommendations = [
                "You have a generous budget; consider upgrading accommodation or adding experiences",
                "Look into premium activities and fine dining options",
            ]
        elif percentage > 20:
            recommendations = ["Your budget allows for some flexibility and spontaneous activities"]
        else:
            recommendations = []

        return BudgetCheck(
            is_realistic=abs(percentage) <= REALISTIC_WITHIN_PERCENT,
            estimate=estimate,
            user_budget=user_budget,
            difference=round(difference),
            difference_percentage=round(percentage, 1),
            recommendations=recommendations,
        )

    def calculate_category_budgets(self, total_budget: float, accommodation_type: str) -> CategoryAmounts:
        shares = CATEGORY_SHARES.get(accommodation_type, CATEGORY_SHARES["mid-range"])
        return CategoryAmounts(**{c: round(total_budget * shares[c]) for c in CATEGORIES})

    def optimize_itinerary(self, response: ItineraryResponse, target_budget: float) -> OptimizationResult:
        """Scale discretionary spending down until the estimate meets ``target_budget``.

        Food, activities, transportation and other shrink proportionally to no
        less than a quarter of their original value; only then is
        accommodation trimmed, by at most 30%. Nothing is removed.
        """
        estimate = response.itinerary.total_budget_estimate
        current_total = estimate.amount
        needed = current_total - target_budget
        if needed <= 0 or current_total <= 0:
            return OptimizationResult(response=response, savings=0.0,
                                      modifications=["Budget is already within target"])

        optimized = response.model_copy(deep=True)
        itinerary = optimized.itinerary
        breakdown = itinerary.total_budget_estimate.breakdown
        currency = itinerary.total_budget_estimate.currency
        breakdown_total = breakdown.total()
        # the breakdown may not add up to the stated total; cut in the stated total's terms
        scale = current_total / breakdown_total if breakdown_total > 0 else 0.0

        factors = {c: 1.0 for c in CATEGORIES}
        modifications: list[str] = []
        saved = 0.0

        discretionary = sum(getattr(breakdown, c) for c in DISCRETIONARY) * scale
        if discretionary > 0:
            cut = min(needed, discretionary * (1 - DISCRETIONARY_FLOOR))
            for c in DISCRETIONARY:
                factors[c] = 1 - cut / discretionary
            saved += cut
            modifications.append(
                f"Reduced food, activity and transport spending by {round(cut)} {currency} "
                "with local eateries, free sights and public transport"
            )

        accommodation = breakdown.accommodation * scale
        if saved < needed and accommodation > 0:
            cut = min(needed - saved, accommodation * MAX_ACCOMMODATION_CUT)
            factors["accommodation"] = 1 - cut / accommodation
            saved += cut
            modifications.append(f"Reduced accommodation budget by {round(cut)} {currency}")

        if saved < needed:
            modifications.append(
                f"Target of {round(target_budget)} {currency} is not reachable without dropping "
                f"essentials; closest estimate is {round(current_total - saved)} {currency}"
            )

        for c in CATEGORIES:
            setattr(breakdown, c, round(getattr(breakdown, c) * factors[c], 2))
        new_total = round(current_total - saved, 2)
        itinerary.total_budget_estimate.amount = new_total

        overall = new_total / current_total
        for day in itinerary.days:
            for activity in day.activities:
                _scale_activity(activity, factors)
            day.transportation.estimated_cost = round(day.transportation.estimated_cost * factors["transportation"], 2)
            day.daily_budget.amount = round(day.daily_budget.amount * overall, 2)

        log_event(logger, logging.INFO, "budget", "optimize_itinerary", target=float(target_budget),
                  before=float(current_total), after=float(new_total), savings=float(saved))
        return OptimizationResult(response=optimized, savings=round(saved, 2), modifications=modifications)


def _scale_activity(activity: Activity, factors: dict[str, float]) -> None:
    if activity.pricing.amount <= 0:
        return
    if activity.type == "restaurant":
        factor = factors["food"]
    elif activity.type == "transportation":
        factor = factors["transportation"]
    elif activity.type == "accommodation":
        factor = factors["accommodation"]
    else:
        factor = factors["activities"]
    activity.pricing.amount = round(activity.pricing.amount * factor, 2)
