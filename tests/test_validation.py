import json

import pytest

from conftest import itinerary_text
from itinerary_pipeline.errors import ErrorKind, ItineraryValidationError
from itinerary_pipeline.validation import (
    ResponseValidator,
    extract_json_object,
    parse_json,
    strip_code_fences,
)


@pytest.fixture
def validator():
    return ResponseValidator()


def _days():
    return json.loads(itinerary_text())["itinerary"]["days"]


@pytest.mark.parametrize("raw", [
    '```json\n{"a":1}\n```',
    '```JSON\n{"a":1}\n```',
    '```\n{"a":1}\n```',
    '```json\n```json\n{"a":1}\n```\n```',
    '  {"a":1}  ',
])
def test_strips_code_fences(raw):
    assert parse_json(raw) == {"a": 1}
    assert strip_code_fences(raw).startswith("{")


def test_extracts_object_from_surrounding_prose():
    text = 'Here is your plan: {"a": {"b": [1, 2]}} Enjoy the trip! {"c": 3}'
    assert extract_json_object(text) == '{"a": {"b": [1, 2]}}'


def test_braces_inside_strings_do_not_confuse_extraction():
    text = '{"note": "use } and { freely", "quote": "say \\"hi\\" {"}'
    assert parse_json(text) == {"note": "use } and { freely", "quote": 'say "hi" {'}


def test_unbalanced_braces_are_a_validation_error():
    with pytest.raises(ItineraryValidationError) as info:
        parse_json('{"itinerary": {"days": [')
    assert info.value.kind == ErrorKind.VALIDATION_ERROR
    assert "unbalanced" in info.value.message


def test_missing_object_is_a_validation_error():
    with pytest.raises(ItineraryValidationError, match="no JSON object"):
        parse_json("I cannot help with that.")


def test_trailing_commas_are_repaired_once():
    assert parse_json('{"a": [1, 2,], "b": {"c": 1,},}') == {"a": [1, 2], "b": {"c": 1}}


def test_unparseable_json_reports_parser_message_and_excerpt():
    raw = '{"a": tru}' + " " * 1000
    with pytest.raises(ItineraryValidationError) as info:
        parse_json(raw)
    assert "invalid JSON" in info.value.message
    assert "line 1" in info.value.message
    assert len(info.value.raw_excerpt) <= 500


def test_valid_itinerary_sorts_activities_and_assigns_ids(validator):
    payload = json.loads(itinerary_text())
    activities = payload["itinerary"]["days"][0]["activities"]
    activities.reverse()
    for activity in activities:
        activity.pop("id", None)

    result = validator.validate_itinerary(json.dumps(payload))
    day = result.response.itinerary.days[0]
    assert [a.start_time for a in day.activities] == ["09:00", "14:00", "19:00"]
    assert [a.id for a in day.activities] == ["day1_activity1", "day1_activity2", "day1_activity3"]
    assert result.warnings == []


def test_bare_itinerary_object_is_accepted(validator):
    bare = json.dumps(json.loads(itinerary_text())["itinerary"])
    assert validator.validate_itinerary(bare).response.itinerary.duration == 3


def test_schema_errors_are_reported_together(validator):
    payload = json.loads(itinerary_text())
    first = payload["itinerary"]["days"][0]["activities"][0]
    first["startTime"] = "25:00"
    first["pricing"]["priceType"] = "sometimes"
    del payload["itinerary"]["emergencyInfo"]

    with pytest.raises(ItineraryValidationError) as info:
        validator.validate_itinerary(json.dumps(payload))
    errors = info.value.errors
    assert len(errors) >= 3
    assert any("startTime" in e for e in errors)
    assert any("priceType" in e for e in errors)
    assert any("emergencyInfo" in e for e in errors)


def test_out_of_sequence_days_are_rejected(validator):
    days = _days()
    days[1]["day"] = 5
    with pytest.raises(ItineraryValidationError) as info:
        validator.validate_itinerary(itinerary_text(days=days))
    assert any("out of sequence" in e for e in info.value.errors)


def test_duration_must_match_day_count(validator):
    with pytest.raises(ItineraryValidationError) as info:
        validator.validate_itinerary(itinerary_text(duration=4))
    assert any(e.startswith("duration") for e in info.value.errors)


def test_overlap_and_high_price_are_warnings(validator):
    days = _days()
    days[0]["activities"][0]["endTime"] = "15:00"
    days[1]["activities"][0]["pricing"]["amount"] = 1500
    result = validator.validate_itinerary(itinerary_text(days=days))
    assert any("overlaps" in w for w in result.warnings)
    assert any("High price" in w for w in result.warnings)


def test_breakdown_mismatch_is_a_warning(validator):
    estimate = json.loads(itinerary_text())["itinerary"]["totalBudgetEstimate"]
    estimate["amount"] = estimate["amount"] * 2
    result = validator.validate_itinerary(itinerary_text(totalBudgetEstimate=estimate))
    assert any("breakdown" in w for w in result.warnings)


def test_unresolved_coordinates_pass_validation(validator):
    days = _days()
    days[0]["activities"][0]["location"]["coordinates"] = {"lat": 0, "lng": 0}
    result = validator.validate_itinerary(itinerary_text(days=days))
    assert result.response.itinerary.days[0].activities[0].location.coordinates.is_unresolved


def test_quick_itinerary(validator):
    raw = json.dumps({
        "days": [{"day": 1, "activities": [
            {"name": "Louvre", "type": "attraction", "timeSlot": "morning", "price": 22,
             "description": "World famous museum."},
        ]}],
        "totalEstimate": 300,
    })
    quick = validator.validate_quick("```json\n" + raw + "\n```")
    assert quick.total_estimate == 300
    assert quick.days[0].activities[0].time_slot == "morning"


def test_quick_itinerary_rejects_bad_type(validator):
    raw = json.dumps({
        "days": [{"day": 1, "activities": [
            {"name": "Hotel", "type": "accommodation", "timeSlot": "night", "price": -1,
             "description": "Sleep."},
        ]}],
        "totalEstimate": 300,
    })
    with pytest.raises(ItineraryValidationError) as info:
        validator.validate_quick(raw)
    assert len(info.value.errors) >= 3
