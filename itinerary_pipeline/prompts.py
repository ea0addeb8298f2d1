import re
from typing import Iterable

from pydantic import BaseModel, ConfigDict

from .config import PipelineConfig
from .models import GenerationRequest, Travelers, TravelPreferences


class PromptTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    system_prompt: str
    user_prompt: str
    max_tokens: int
    temperature: float


# --- Sanitising user input -----------------------------------------------------

_INJECTION_PATTERNS = [
    re.compile(r"[{}]"),
    re.compile(r"^\s*SYSTEM:", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^\s*ASSISTANT:", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^\s*USER:", re.IGNORECASE | re.MULTILINE),
    re.compile(r"```"),
    re.compile(r"^\s*IGNORE\s+PREVIOUS", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^\s*FORGET\s+EVERYTHING", re.IGNORECASE | re.MULTILINE),
    re.compile(r"\|\|\s*true", re.IGNORECASE),
    re.compile(r";\s*(DROP|DELETE|UPDATE|INSERT)", re.IGNORECASE),
]

MAX_TEXT_LENGTH = 500
MAX_LIST_ITEMS = 10
MAX_NUMBER = 1_000_000


def sanitize_text(value: str) -> str:
    if not isinstance(value, str):
        return ""
    for pattern in _INJECTION_PATTERNS:
        value = pattern.sub("", value)
    return value.strip()[:MAX_TEXT_LENGTH]


def sanitize_list(values: Iterable[str]) -> list[str]:
    cleaned = [sanitize_text(v) for v in values if isinstance(v, str)]
    return [v for v in cleaned if v][:MAX_LIST_ITEMS]


def sanitize_number(value: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if value != value or value in (float("inf"), float("-inf")):
        return 0
    return max(0, min(value, MAX_NUMBER))


# --- Descriptions ------------------------------------------------------------

PACE_DESCRIPTIONS = {
    "slow": "relaxed pace with 2-3 activities per day and plenty of rest time",
    "moderate": "balanced pace with 4-5 activities per day",
    "fast": "packed schedule with 6+ activities per day to maximize experiences",
}

ACCOMMODATION_DESCRIPTIONS = {
    "budget": "budget accommodations like hostels and budget hotels",
    "mid-range": "3-star hotels and boutique properties",
    "luxury": "4-5 star hotels with premium amenities",
    "mixed": "a variety of accommodation types",
}

TRANSPORTATION_DESCRIPTIONS = {
    "walking": "walking distances only, no long-distance transport",
    "public": "public transportation like buses, trains, and metro",
    "rental-car": "rental car for flexibility and independence",
    "mixed": "combination of transportation methods as appropriate",
}

INTEREST_DESCRIPTIONS = {
    "culture": "cultural sites, museums, historical monuments, local traditions",
    "food": "local cuisine, restaurants, food tours, cooking classes",
    "adventure": "hiking, extreme sports, outdoor activities, adventure tours",
    "relaxation": "spas, wellness activities, beaches, peaceful locations",
    "nightlife": "bars, clubs, entertainment venues, live music",
    "shopping": "markets, boutiques, local crafts, shopping districts",
    "nature": "parks, wildlife, scenic views, natural attractions",
    "art": "galleries, street art, creative spaces, art museums",
    "photography": "scenic spots, photogenic locations, photo opportunities",
    "local-life": "authentic experiences, meeting locals, cultural immersion",
    "luxury": "high-end experiences, premium services, exclusive venues",
    "family": "kid-friendly activities, family attractions, suitable for all ages",
    "romance": "romantic dinners, couple activities, intimate experiences",
    "business": "networking opportunities, business-friendly venues",
    "spiritual": "religious sites, meditation centers, spiritual retreats",
    "beach": "water sports, coastal activities, beach relaxation",
}

# (max output tokens, temperature delta)
MODEL_ADJUSTMENTS = {
    "gpt-4": (4000, -0.1),
    "gpt-4-turbo": (4000, -0.1),
    "gpt-3.5-turbo": (3000, 0.1),
    "gemini-1.0-pro": (8192, 0.0),
}


def _format_amount(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.2f}"


def format_travelers(travelers: Travelers) -> str:
    parts = []
    if travelers.adults > 0:
        parts.append(f"{travelers.adults} adult{'s' if travelers.adults != 1 else ''}")
    if travelers.children > 0:
        parts.append(f"{travelers.children} child{'ren' if travelers.children != 1 else ''}")
    if travelers.infants > 0:
        parts.append(f"{travelers.infants} infant{'s' if travelers.infants != 1 else ''}")
    return ", ".join(parts)


def format_preferences(preferences: TravelPreferences) -> str:
    lines = [
        f"Travel pace: {PACE_DESCRIPTIONS[preferences.pace]}",
        f"Accommodation preference: {ACCOMMODATION_DESCRIPTIONS[preferences.accommodation_type]}",
        f"Transportation preference: {TRANSPORTATION_DESCRIPTIONS[preferences.transportation]}",
    ]
    if preferences.accessibility:
        lines.append("IMPORTANT: All recommendations must be wheelchair accessible")
    restrictions = sanitize_list(preferences.dietary_restrictions)
    if restrictions:
        lines.append(f"Dietary restrictions: {', '.join(restrictions)}")
    special = sanitize_text(preferences.special_requests)
    if special:
        lines.append(f"Special requests: {special}")
    return "\n".join(lines)


def format_interests(interests: Iterable[str]) -> str:
    return ", ".join(INTEREST_DESCRIPTIONS.get(i, i) for i in sanitize_list(interests))


def optimize_for_model(template: PromptTemplate, model: str) -> PromptTemplate:
    """Clamp generation parameters to what ``model`` handles well."""
    adjustment = MODEL_ADJUSTMENTS.get(model)
    if adjustment is None:
        return template
    token_cap, temperature_delta = adjustment
    temperature = template.temperature + temperature_delta
    if temperature_delta < 0:
        temperature = max(0.3, temperature)
    elif temperature_delta > 0:
        temperature = min(0.9, temperature)
    return template.model_copy(update={
        "max_tokens": min(template.max_tokens, token_cap),
        "temperature": round(temperature, 2),
    })


_FULL_SYSTEM_PROMPT = """You are an expert travel planner. Create detailed, personalized itineraries that are practical and culturally enriching.

CRITICAL: Generate COMPLETE JSON with ALL {duration} days. Each day must have 3-5 activities with full details.

Requirements:
- Generate exactly {duration} day objects (numbered 1-{duration}) in the "days" array
- Each day needs 3-5 activities across morning/afternoon/evening, in chronological order
- Use SPECIFIC venue names, never generic names like "Local Restaurant"
- Duration format: STRING "120 minutes" or "2 hours"
- All pricing in {currency}
- Return ONLY valid, COMPLETE JSON with all required fields

Enum values (use EXACTLY these):
- type: "attraction" | "restaurant" | "experience" | "transportation" | "accommodation" | "shopping"
  ("attraction" for museums, landmarks and parks; "restaurant" for any dining; "experience" for tours, shows and classes)
- timeSlot: "morning" | "afternoon" | "evening"
- transportation.primaryMethod: "walking" | "public" | "taxi" | "rental_car"
- priceType: "per_person" | "per_group" | "free"

Data types:
- pricing.amount: NUMBER (0 for free)
- coordinates: NUMBERS with max 4 decimals; use real coordinates for every venue
- MUST include generalTips array and emergencyInfo object"""

_FULL_USER_PROMPT = """Create a {duration}-day itinerary for {travelers} in {destination}.

Trip details:
- Destination: {destination}
- Start date: {start_date}
- End date: {end_date}
- Duration: {duration} days
- Budget: {budget_info}
- Total budget: {total_budget} {currency}
- Currency: {currency} (all pricing)
- Travelers: {travelers}

Preferences:
{preferences}

Interests: {interests}

JSON structure:
{{
  "itinerary": {{
    "destination": "{destination}",
    "duration": {duration},
    "totalBudgetEstimate": {{
      "amount": number,
      "currency": "{currency}",
      "breakdown": {{ "accommodation": n, "food": n, "activities": n, "transportation": n, "other": n }}
    }},
    "days": [
      {{
        "day": 1,
        "date": "{start_date}",
        "theme": "day focus",
        "activities": [
          {{
            "id": "unique_id",
            "timeSlot": "morning|afternoon|evening",
            "startTime": "HH:MM",
            "endTime": "HH:MM",
            "name": "Specific Venue Name",
            "type": "attraction|restaurant|experience|transportation|accommodation|shopping",
            "description": "details",
            "location": {{ "name": "", "address": "", "coordinates": {{ "lat": 0.0, "lng": 0.0 }} }},
            "pricing": {{ "amount": 25.5, "currency": "{currency}", "priceType": "per_person|per_group|free" }},
            "duration": "90 minutes",
            "tips": ["tip1", "tip2"],
            "bookingRequired": false,
            "accessibility": {{ "wheelchairAccessible": false, "hasElevator": false, "notes": "" }}
          }}
        ],
        "dailyBudget": {{ "amount": number, "currency": "{currency}" }},
        "transportation": {{ "primaryMethod": "walking|public|taxi|rental_car", "estimatedCost": n, "notes": "" }}
      }}
    ],
    "generalTips": ["tip1", "tip2", "tip3"],
    "emergencyInfo": {{ "emergencyNumber": "", "embassy": "", "hospitals": [""] }}
  }}
}}

Return COMPLETE JSON for ALL {duration} days (day 1 through {duration}). If the response gets long, shorten descriptions but complete every day."""

_QUICK_SYSTEM_PROMPT = "You are a travel expert. Create a concise itinerary with essential activities and realistic pricing."

_QUICK_USER_PROMPT = """Create a {duration}-day itinerary for {destination} with budget {total_budget} {currency}.

Trip details:
- Destination: {destination}
- Start date: {start_date}
- Duration: {duration} days
- Total budget: {total_budget} {currency}
- Currency: {currency}

Focus on: {interests}

Return JSON with structure:
{{
  "days": [
    {{
      "day": number,
      "activities": [
        {{
          "name": "activity name",
          "type": "attraction OR restaurant OR experience (exactly one of these)",
          "timeSlot": "morning OR afternoon OR evening (exactly one of these)",
          "price": number,
          "description": "brief description"
        }}
      ]
    }}
  ],
  "totalEstimate": number
}}"""

QUICK_MAX_DAYS = 30


class PromptBuilder:
    def __init__(self, config: PipelineConfig) -> None:
        self.config = config

    def build_full(self, request: GenerationRequest, model: str | None = None) -> PromptTemplate:
        destination = sanitize_text(request.destination)
        currency = sanitize_text(request.budget.currency)
        amount = sanitize_number(request.budget.amount)
        duration = request.duration_days
        if request.budget.range == "per-person":
            budget_info = f"{_format_amount(amount)} {currency} per person"
        else:
            budget_info = f"{_format_amount(amount)} {currency} total for the group"
        travelers = format_travelers(request.travelers)

        template = PromptTemplate(
            system_prompt=_FULL_SYSTEM_PROMPT.format(duration=duration, currency=currency),
            user_prompt=_FULL_USER_PROMPT.format(
                duration=duration,
                travelers=travelers,
                destination=destination,
                start_date=request.start_date.isoformat(),
                end_date=request.end_date.isoformat(),
                budget_info=budget_info,
                total_budget=_format_amount(sanitize_number(request.total_budget)),
                currency=currency,
                preferences=format_preferences(request.preferences),
                interests=format_interests(request.interests),
            ),
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )
        return optimize_for_model(template, model or self.config.model)

    def build_quick(self, request: GenerationRequest, model: str | None = None) -> PromptTemplate:
        duration = max(1, min(request.duration_days, QUICK_MAX_DAYS))
        template = PromptTemplate(
            system_prompt=_QUICK_SYSTEM_PROMPT,
            user_prompt=_QUICK_USER_PROMPT.format(
                duration=duration,
                destination=sanitize_text(request.destination),
                start_date=request.start_date.isoformat(),
                total_budget=_format_amount(sanitize_number(request.total_budget)),
                currency=sanitize_text(request.budget.currency),
                interests=", ".join(sanitize_list(request.interests)),
            ),
            max_tokens=self.config.quick_max_tokens,
            temperature=self.config.quick_temperature,
        )
        return optimize_for_model(template, model or self.config.model)

    def with_corrections(self, template: PromptTemplate, errors: list[str]) -> PromptTemplate:
        """Re-prompt after invalid output, listing what was wrong with it."""
        listed = "\n".join(f"- {e}" for e in errors[:MAX_LIST_ITEMS])
        note = (
            "\n\nYour previous answer was rejected because of these problems:\n"
            f"{listed}\nFix all of them and return the complete JSON again."
        )
        return template.model_copy(update={"user_prompt": template.user_prompt + note})
