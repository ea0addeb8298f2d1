"""Turning raw model text into a validated itinerary.

The steps run in order and each one fails with ``ItineraryValidationError``:
strip code fences, cut out the first balanced ``{...}`` object, parse it as
JSON (retrying once with trailing commas removed), validate it against the
pydantic schema, then apply the business rules that a schema cannot express.
"""
import json
import logging
import re
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .errors import ItineraryValidationError
from .models import Itinerary, ItineraryResponse, QuickItinerary, time_sort_key
from .tracing import log_event


logger = logging.getLogger(__name__)

_LEADING_FENCE = re.compile(r"^\s*```[a-zA-Z]*[ \t]*\n?")
_TRAILING_FENCE = re.compile(r"\n?[ \t]*```\s*$")
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")

HIGH_PRICE_PER_PERSON = 1000
MAX_ACTIVITIES_PER_DAY = 8
BREAKDOWN_TOLERANCE = 0.1


def strip_code_fences(text: str) -> str:
    previous = None
    text = text.strip()
    while previous != text:
        previous = text
        text = _LEADING_FENCE.sub("", text, count=1)
        text = _TRAILING_FENCE.sub("", text, count=1)
        text = text.strip()
    return text


def extract_json_object(text: str) -> str:
    """Return the first top-level ``{...}`` span, honouring JSON strings."""
    start = text.find("{")
    if start == -1:
        raise ItineraryValidationError("no JSON object found in model response", raw_text=text)
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    raise ItineraryValidationError(
        "unbalanced braces in model response (output truncated?)", raw_text=text
    )


def parse_json(text: str) -> Any:
    cleaned = extract_json_object(strip_code_fences(text))
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as first:
        repaired = _TRAILING_COMMA.sub(r"\1", cleaned)
        if repaired != cleaned:
            try:
                return json.loads(repaired)
            except json.JSONDecodeError:
                pass
        raise ItineraryValidationError(
            f"invalid JSON in model response: {first.msg} (line {first.lineno}, column {first.colno})",
            errors=[str(first)],
            raw_text=text,
        ) from first


def format_errors(error: ValidationError) -> list[str]:
    messages = []
    for item in error.errors():
        path = ".".join(str(part) for part in item["loc"]) or "<root>"
        messages.append(f"{path}: {item['msg']}")
    return messages


class ValidatedItinerary(BaseModel):
    response: ItineraryResponse
    warnings: list[str] = Field(default_factory=list)


def check_business_rules(itinerary: Itinerary) -> tuple[list[str], list[str]]:
    """Return ``(errors, warnings)`` for rules that span several fields."""
    errors: list[str] = []
    warnings: list[str] = []

    for expected, day in enumerate(sorted(itinerary.days, key=lambda d: d.day), start=1):
        if day.day != expected:
            errors.append(f"days: day {day.day} is out of sequence (expected day {expected})")
            break
    if itinerary.duration != len(itinerary.days):
        errors.append(f"duration: {itinerary.duration} does not match number of days {len(itinerary.days)}")

    for day in itinerary.days:
        for current, following in zip(day.activities, day.activities[1:]):
            if time_sort_key(current.end_time) > time_sort_key(following.start_time):
                warnings.append(f'Day {day.day}: "{current.name}" overlaps with "{following.name}"')
        if len(day.activities) > MAX_ACTIVITIES_PER_DAY:
            warnings.append(f"Day {day.day} has {len(day.activities)} activities and may be too packed")
        for activity in day.activities:
            if activity.pricing.price_type == "per_person" and activity.pricing.amount > HIGH_PRICE_PER_PERSON:
                warnings.append(
                    f'High price for "{activity.name}": {activity.pricing.amount:.2f} {activity.pricing.currency}'
                )

    estimate = itinerary.total_budget_estimate
    if abs(estimate.breakdown.total() - estimate.amount) > estimate.amount * BREAKDOWN_TOLERANCE:
        warnings.append("Budget breakdown does not add up to the total budget estimate")

    return errors, warnings


class ResponseValidator:
    def validate_itinerary(self, raw_text: str) -> ValidatedItinerary:
        data = parse_json(raw_text)
        if isinstance(data, dict) and "itinerary" not in data and "days" in data:
            data = {"itinerary": data}
        try:
            response = ItineraryResponse.model_validate(data)
        except ValidationError as e:
            errors = format_errors(e)
            log_event(logger, logging.WARNING, "validator", "validate_itinerary", ok=False,
                      error_count=len(errors), first_error=errors[0] if errors else "")
            raise ItineraryValidationError(
                f"itinerary failed schema validation with {len(errors)} error(s)",
                errors=errors,
                raw_text=raw_text,
            ) from e

        rule_errors, warnings = check_business_rules(response.itinerary)
        if rule_errors:
            log_event(logger, logging.WARNING, "validator", "business_rules", ok=False,
                      error_count=len(rule_errors))
            raise ItineraryValidationError(
                f"itinerary broke {len(rule_errors)} business rule(s)",
                errors=rule_errors,
                raw_text=raw_text,
            )
        log_event(logger, logging.INFO, "validator", "validate_itinerary", ok=True,
                  days=len(response.itinerary.days), warnings=len(warnings))
        return ValidatedItinerary(response=response, warnings=warnings)

    def validate_quick(self, raw_text: str) -> QuickItinerary:
        data = parse_json(raw_text)
        try:
            quick = QuickItinerary.model_validate(data)
        except ValidationError as e:
            errors = format_errors(e)
            raise ItineraryValidationError(
                f"quick itinerary failed schema validation with {len(errors)} error(s)",
                errors=errors,
                raw_text=raw_text,
            ) from e
        for expected, day in enumerate(sorted(quick.days, key=lambda d: d.day), start=1):
            if day.day != expected:
                raise ItineraryValidationError(
                    f"quick itinerary day {day.day} is out of sequence",
                    errors=[f"days: day {day.day} is out of sequence (expected day {expected})"],
                    raw_text=raw_text,
                )
        return quick
