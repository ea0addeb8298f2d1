import json

import pytest

from conftest import itinerary_text, make_request
from itinerary_pipeline.budget import BudgetOptimizer, convert_currency, region_for
from itinerary_pipeline.models import ItineraryResponse


@pytest.fixture
def optimizer():
    return BudgetOptimizer()


def _response(**overrides) -> ItineraryResponse:
    return ItineraryResponse.model_validate(json.loads(itinerary_text(**overrides)))


def test_paris_estimate(optimizer):
    estimate = optimizer.calculate_estimate(make_request())
    assert estimate.total == 756
    assert estimate.currency == "USD"
    assert estimate.breakdown.model_dump() == {
        "accommodation": 336, "food": 168, "activities": 126, "transportation": 63, "other": 63,
    }
    assert estimate.daily_average == 252
    assert estimate.per_person_total is None


def test_estimate_is_converted_to_request_currency(optimizer):
    estimate = optimizer.calculate_estimate(make_request(budget={"amount": 900, "currency": "EUR"}))
    assert estimate.currency == "EUR"
    assert estimate.total == 643


def test_expensive_interests_and_diet_raise_estimate(optimizer):
    base = optimizer.calculate_estimate(make_request()).total
    richer = optimizer.calculate_estimate(make_request(
        interests=["luxury"], preferences={"dietary_restrictions": ["vegan"]},
    )).total
    assert richer > base


def test_realistic_budget_needs_no_optimization(optimizer):
    check = optimizer.validate_budget(make_request())
    assert check.is_realistic
    assert check.difference == 144
    assert check.difference_percentage == 19.0
    assert not check.needs_optimization
    assert check.recommendations == []


def test_tight_budget_needs_optimization(optimizer):
    check = optimizer.validate_budget(make_request(budget={"amount": 400, "currency": "USD"}))
    assert not check.is_realistic
    assert check.difference_percentage == -47.1
    assert check.needs_optimization
    assert any("below our estimate" in r for r in check.recommendations)


def test_per_person_budget_counts_every_traveler(optimizer):
    check = optimizer.validate_budget(make_request(
        budget={"amount": 300, "currency": "USD", "range": "per-person"},
        travelers={"adults": 2},
    ))
    assert check.user_budget == 600
    assert check.estimate.per_person_total is not None


def test_optimization_converges_near_target(optimizer):
    original = _response()
    result = optimizer.optimize_itinerary(original, 400)
    itinerary = result.response.itinerary
    new_total = itinerary.total_budget_estimate.amount

    assert abs(new_total - 400) <= 40
    assert result.savings == pytest.approx(410)
    assert itinerary.total_budget_estimate.breakdown.accommodation >= 0.7 * 324
    assert itinerary.emergency_info == original.itinerary.emergency_info
    assert len(itinerary.activities()) == len(original.itinerary.activities())
    before = original.itinerary.days[0].activities[2].pricing.amount
    assert itinerary.days[0].activities[2].pricing.amount < before
    # the input is left untouched
    assert original.itinerary.total_budget_estimate.amount == 810


def test_optimization_reports_unreachable_target(optimizer):
    result = optimizer.optimize_itinerary(_response(), 100)
    assert result.response.itinerary.total_budget_estimate.amount == pytest.approx(348.3)
    assert any("not reachable" in m for m in result.modifications)


def test_optimization_is_a_no_op_within_budget(optimizer):
    original = _response()
    result = optimizer.optimize_itinerary(original, 1000)
    assert result.savings == 0
    assert result.response is original


def test_category_budgets(optimizer):
    amounts = optimizer.calculate_category_budgets(1000, "mid-range")
    assert amounts.model_dump() == {
        "accommodation": 400, "food": 300, "activities": 200, "transportation": 80, "other": 20,
    }
    assert amounts.total() == 1000


@pytest.mark.parametrize("destination,region", [
    ("Paris, France", "western-europe"),
    ("Kyoto, Japan", "east-asia"),
    ("Hanoi, Vietnam", "southeast-asia"),
    ("Atlantis", "default"),
    ("Jerusalem", "default"),
    ("Bucharest, Romania", "default"),
    ("Indianapolis, Indiana, USA", "north-america"),
    ("New Delhi, India", "south-asia"),
    ("Muscat, Oman", "middle-east"),
])
def test_region_for(destination, region):
    assert region_for(destination) == region


def test_convert_currency():
    assert convert_currency(100, "USD", "USD") == 100
    assert convert_currency(100, "USD", "EUR") == pytest.approx(85)
    assert convert_currency(85, "EUR", "USD") == pytest.approx(100)
