import json
from datetime import date

import pytest

from itinerary_pipeline.config import PipelineConfig
from itinerary_pipeline.models import GenerationRequest
from itinerary_pipeline.orchestrator import ItineraryOrchestrator
from itinerary_pipeline.providers import FakeCompletionProvider, demo_responder
from itinerary_pipeline.retry import default_policy, rate_limit_policy, transient_only_condition


def make_request(**overrides) -> GenerationRequest:
    data = {
        "destination": "Paris, France",
        "start_date": date(2025, 6, 1),
        "end_date": date(2025, 6, 3),
        "budget": {"amount": 900, "currency": "USD"},
        "interests": ["culture", "food"],
    }
    data.update(overrides)
    return GenerationRequest.model_validate(data)


def fast_config(**overrides) -> PipelineConfig:
    """Fake provider with millisecond-scale delays everywhere."""
    data = {
        "provider": "fake",
        "model": "fake-model",
        "politeness_delay_s": 0.0,
        "request_timeout_s": 2.0,
        "default_timeout_s": 5.0,
        "quick_timeout_s": 5.0,
        "default_retry": default_policy(base_delay_s=0.001, max_delay_s=0.005, jitter=False,
                                        retry_condition=transient_only_condition),
        "rate_limit_retry": rate_limit_policy(base_delay_s=0.001, max_delay_s=0.005, jitter=False),
    }
    data.update(overrides)
    return PipelineConfig(**data)


def make_orchestrator(provider=None, **config_overrides) -> ItineraryOrchestrator:
    return ItineraryOrchestrator(fast_config(**config_overrides), provider or FakeCompletionProvider())


def itinerary_text(**overrides) -> str:
    """A valid full itinerary as the model would return it, with top-level overrides applied."""
    prompt = (
        "- Destination: Paris, France\n- Start date: 2025-06-01\n- Duration: 3 days\n"
        "- Total budget: 900 USD\n- Currency: USD\n"
    )
    payload = json.loads(demo_responder(prompt))
    payload["itinerary"].update(overrides)
    return json.dumps(payload)


@pytest.fixture
def paris_request() -> GenerationRequest:
    return make_request()


@pytest.fixture
def config() -> PipelineConfig:
    return fast_config()
