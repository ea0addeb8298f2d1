"""Completion providers: one interface, one implementation per backend.

The backend is picked once by ``build_provider`` from ``PipelineConfig``;
nothing downstream branches on which provider is in use. Every
implementation enforces the caller's timeout itself and translates its
backend's failures into ``ProviderError`` codes.
"""
import asyncio
import json
import logging
import re
import time
from collections import deque
from datetime import date, timedelta
from typing import Any, Callable, Iterable, Optional, Protocol, Union

import google.generativeai as genai
import httpx
from google.api_core import exceptions as google_exceptions

from .config import PipelineConfig
from .errors import ProviderError, ProviderErrorCode
from .tracing import log_event


logger = logging.getLogger(__name__)


class CompletionProvider(Protocol):
    name: str

    async def generate(
        self,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float,
        timeout_s: float,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
    ) -> str: ...

    async def aclose(self) -> None: ...


def _log_call(provider: str, model: str, started: float, ok: bool, error: Optional[ProviderError] = None,
              chars: int = 0) -> None:
    latency_ms = (time.monotonic() - started) * 1000
    fields: dict[str, Any] = {"model": model, "latency_ms": latency_ms, "ok": ok}
    if error is not None:
        fields["error_code"] = error.code.value
        fields["error"] = error.message
    else:
        fields["chars"] = chars
    log_event(logger, logging.INFO if ok else logging.WARNING, "provider", provider, **fields)


# --- Gemini ------------------------------------------------------------------

class GeminiProvider:
    name = "gemini"

    def __init__(self, api_key: Optional[str], model: str = "gemini-1.5-flash") -> None:
        if not api_key:
            raise ProviderError(ProviderErrorCode.AUTHENTICATION, "GEMINI_API_KEY is not set", provider=self.name)
        genai.configure(api_key=api_key)
        self.default_model = model

    async def generate(
        self,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float,
        timeout_s: float,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
    ) -> str:
        model_name = model or self.default_model
        generative_model = genai.GenerativeModel(
            model_name,
            system_instruction=system_prompt,
            generation_config={
                "response_mime_type": "application/json",
                "max_output_tokens": max_tokens,
                "temperature": temperature,
            },
        )
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(generative_model.generate_content_async(prompt), timeout=timeout_s)
        except asyncio.TimeoutError:
            error = ProviderError(ProviderErrorCode.TIMEOUT, f"no response within {timeout_s:.1f}s", provider=self.name)
            _log_call(self.name, model_name, started, False, error)
            raise error from None
        except google_exceptions.GoogleAPICallError as e:
            error = self.map_error(e)
            _log_call(self.name, model_name, started, False, error)
            raise error from e
        except ConnectionError as e:
            error = ProviderError(ProviderErrorCode.SERVICE_UNAVAILABLE, str(e), provider=self.name)
            _log_call(self.name, model_name, started, False, error)
            raise error from e
        except Exception as e:
            # blocked prompts, credential lookups and anything else the SDK raises
            message = f"{type(e).__name__}: {e}"
            lowered = message.lower()
            code = (ProviderErrorCode.AUTHENTICATION if "api key" in lowered or "credential" in lowered
                    else ProviderErrorCode.UNKNOWN)
            error = ProviderError(code, message, provider=self.name)
            _log_call(self.name, model_name, started, False, error)
            raise error from e

        try:
            text = response.text or ""
        except ValueError:
            # blocked or candidate without parts
            text = ""
        if not text.strip():
            error = ProviderError(ProviderErrorCode.UNKNOWN, "empty response from model", provider=self.name)
            _log_call(self.name, model_name, started, False, error)
            raise error
        _log_call(self.name, model_name, started, True, chars=len(text))
        return text

    def map_error(self, e: google_exceptions.GoogleAPICallError) -> ProviderError:
        message = str(e)
        lowered = message.lower()
        status_code = getattr(e, "code", None)
        status_code = status_code if isinstance(status_code, int) else None
        if isinstance(e, google_exceptions.ResourceExhausted):
            code = ProviderErrorCode.QUOTA_EXCEEDED if "quota" in lowered else ProviderErrorCode.RATE_LIMIT
        elif isinstance(e, (google_exceptions.Unauthenticated, google_exceptions.PermissionDenied)):
            code = ProviderErrorCode.AUTHENTICATION
        elif isinstance(e, google_exceptions.InvalidArgument) and "api key" in lowered:
            code = ProviderErrorCode.AUTHENTICATION
        elif isinstance(e, google_exceptions.DeadlineExceeded):
            code = ProviderErrorCode.TIMEOUT
        elif isinstance(e, (google_exceptions.ServiceUnavailable, google_exceptions.InternalServerError)):
            code = ProviderErrorCode.SERVICE_UNAVAILABLE
        else:
            code = ProviderErrorCode.UNKNOWN
        return ProviderError(code, message, provider=self.name, status_code=status_code)

    async def aclose(self) -> None:
        return None


# --- OpenAI-compatible HTTP endpoint ----------------------------------------

class HttpCompletionProvider:
    """Chat-completions client for any OpenAI-compatible endpoint."""

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        api_base: str = "https://api.openai.com/v1",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not api_key:
            raise ProviderError(ProviderErrorCode.AUTHENTICATION, "API key is not set", provider=self.name)
        self.default_model = model
        self.api_base = api_base.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self._headers = {"Authorization": f"Bearer {api_key}", "User-Agent": "ItineraryPipeline"}

    async def generate(
        self,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float,
        timeout_s: float,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
    ) -> str:
        model_name = model or self.default_model
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        payload = {
            "model": model_name,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "response_format": {"type": "json_object"},
        }
        started = time.monotonic()
        try:
            resp = await asyncio.wait_for(
                self._client.post(f"{self.api_base}/chat/completions", json=payload,
                                  headers=self._headers, timeout=timeout_s),
                timeout=timeout_s,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            error = ProviderError(ProviderErrorCode.TIMEOUT, f"no response within {timeout_s:.1f}s", provider=self.name)
            _log_call(self.name, model_name, started, False, error)
            raise error from None
        except httpx.TransportError as e:
            error = ProviderError(ProviderErrorCode.SERVICE_UNAVAILABLE, str(e) or type(e).__name__,
                                  provider=self.name)
            _log_call(self.name, model_name, started, False, error)
            raise error from e
        except httpx.HTTPError as e:
            # undecodable bodies, redirect loops
            error = ProviderError(ProviderErrorCode.UNKNOWN, f"{type(e).__name__}: {e}", provider=self.name)
            _log_call(self.name, model_name, started, False, error)
            raise error from e

        if resp.status_code != 200:
            error = self.map_status(resp)
            _log_call(self.name, model_name, started, False, error)
            raise error

        try:
            data = resp.json()
            text = data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError):
            text = ""
        if not text.strip():
            error = ProviderError(ProviderErrorCode.UNKNOWN, "empty response from model", provider=self.name,
                                  status_code=resp.status_code)
            _log_call(self.name, model_name, started, False, error)
            raise error
        _log_call(self.name, model_name, started, True, chars=len(text))
        return text

    def map_status(self, resp: httpx.Response) -> ProviderError:
        status = resp.status_code
        body = resp.text[:300]
        if status in (401, 403):
            code = ProviderErrorCode.AUTHENTICATION
        elif status == 429:
            code = ProviderErrorCode.QUOTA_EXCEEDED if "insufficient_quota" in body else ProviderErrorCode.RATE_LIMIT
        elif status in (408, 504):
            code = ProviderErrorCode.TIMEOUT
        elif status >= 500:
            code = ProviderErrorCode.SERVICE_UNAVAILABLE
        else:
            code = ProviderErrorCode.UNKNOWN
        return ProviderError(code, f"HTTP {status}: {body}", provider=self.name, status_code=status)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# --- Deterministic double ----------------------------------------------------

Responder = Callable[[str], str]
ScriptedReply = Union[str, BaseException]


class FakeCall:
    __slots__ = ("prompt", "system_prompt", "max_tokens", "temperature", "timeout_s", "model")

    def __init__(self, prompt, system_prompt, max_tokens, temperature, timeout_s, model) -> None:
        self.prompt = prompt
        self.system_prompt = system_prompt
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout_s = timeout_s
        self.model = model


class FakeCompletionProvider:
    """In-process provider for tests and offline demos.

    Scripted replies are consumed in order (an exception instance is raised
    instead of returned); once they run out ``responder`` answers.
    """

    name = "fake"

    def __init__(
        self,
        responses: Optional[Iterable[ScriptedReply]] = None,
        responder: Optional[Responder] = None,
        delay_s: float = 0.0,
    ) -> None:
        self._scripted: deque[ScriptedReply] = deque(responses or ())
        self._responder = responder or demo_responder
        self.delay_s = delay_s
        self.calls: list[FakeCall] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def generate(
        self,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float,
        timeout_s: float,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
    ) -> str:
        self.calls.append(FakeCall(prompt, system_prompt, max_tokens, temperature, timeout_s, model))
        if self.delay_s > 0:
            if self.delay_s >= timeout_s:
                await asyncio.sleep(timeout_s)
                raise ProviderError(ProviderErrorCode.TIMEOUT, f"no response within {timeout_s:.1f}s",
                                    provider=self.name)
            await asyncio.sleep(self.delay_s)
        reply = self._scripted.popleft() if self._scripted else self._responder(prompt)
        if isinstance(reply, BaseException):
            raise reply
        if not reply.strip():
            raise ProviderError(ProviderErrorCode.UNKNOWN, "empty response from model", provider=self.name)
        return reply

    async def aclose(self) -> None:
        return None


def _prompt_field(prompt: str, label: str, pattern: str, default: str) -> str:
    match = re.search(rf"{label}:\s*({pattern})", prompt, re.IGNORECASE)
    return match.group(1).strip() if match else default


def demo_responder(prompt: str) -> str:
    """Build a plausible itinerary from the trip details printed in ``prompt``.

    Reads back the labelled lines ``PromptBuilder`` writes (destination,
    start date, duration, total budget, currency). Only for tests and demos.
    """
    destination = _prompt_field(prompt, "Destination", r"[^\n]+", "Demo City")
    duration = int(_prompt_field(prompt, "Duration", r"\d+", "3"))
    start = date.fromisoformat(_prompt_field(prompt, "Start date", r"\d{4}-\d{2}-\d{2}", "2025-01-01"))
    currency = _prompt_field(prompt, "Currency", r"[A-Z]{3}", "USD")
    budget = float(_prompt_field(prompt, "Total budget", r"[\d.]+", "1000"))
    quick = '"totalEstimate"' in prompt

    total = round(budget * 0.9, 2)
    per_day_activities = total * 0.2 / duration
    per_day_food = total * 0.25 / duration

    if quick:
        days = [
            {
                "day": n,
                "activities": [
                    {"name": f"{destination} landmark walk {n}", "type": "attraction", "timeSlot": "morning",
                     "price": round(per_day_activities / 2, 2), "description": "Guided walk past the main sights."},
                    {"name": f"Local market tour {n}", "type": "experience", "timeSlot": "afternoon",
                     "price": round(per_day_activities / 2, 2), "description": "Browse and taste at the market."},
                    {"name": f"Neighbourhood bistro {n}", "type": "restaurant", "timeSlot": "evening",
                     "price": round(per_day_food, 2), "description": "Regional dishes in a relaxed setting."},
                ],
            }
            for n in range(1, duration + 1)
        ]
        return json.dumps({"days": days, "totalEstimate": total})

    def activity(n: int, slot: str, start_t: str, end_t: str, name: str, kind: str, price: float, offset: float):
        return {
            "timeSlot": slot,
            "startTime": start_t,
            "endTime": end_t,
            "name": name,
            "type": kind,
            "description": f"{name} in {destination}.",
            "location": {
                "name": name,
                "address": f"{n} Main Street, {destination}",
                "coordinates": {"lat": round(48.8566 + offset, 4), "lng": round(2.3522 + offset, 4)},
            },
            "pricing": {"amount": round(price, 2), "currency": currency, "priceType": "per_person"},
            "duration": "2 hours",
            "tips": ["Arrive early"],
            "bookingRequired": kind == "experience",
            "accessibility": {"wheelchairAccessible": True, "hasElevator": False, "notes": ""},
        }

    days = []
    for n in range(1, duration + 1):
        offset = n * 0.001
        days.append({
            "day": n,
            "date": (start + timedelta(days=n - 1)).isoformat(),
            "theme": f"Day {n} in {destination}",
            "activities": [
                activity(n, "morning", "09:00", "11:00", f"Historic centre walk {n}", "attraction",
                         per_day_activities / 2, offset),
                activity(n, "afternoon", "14:00", "16:00", f"Cooking workshop {n}", "experience",
                         per_day_activities / 2, offset + 0.002),
                activity(n, "evening", "19:00", "21:00", f"Neighbourhood bistro {n}", "restaurant",
                         per_day_food, offset + 0.004),
            ],
            "dailyBudget": {"amount": round(total / duration, 2), "currency": currency},
            "transportation": {"primaryMethod": "public", "estimatedCost": round(total * 0.1 / duration, 2),
                               "notes": ""},
        })

    itinerary = {
        "destination": destination,
        "duration": duration,
        "totalBudgetEstimate": {
            "amount": total,
            "currency": currency,
            "breakdown": {
                "accommodation": round(total * 0.4, 2),
                "food": round(total * 0.25, 2),
                "activities": round(total * 0.2, 2),
                "transportation": round(total * 0.1, 2),
                "other": round(total * 0.05, 2),
            },
        },
        "days": days,
        "generalTips": ["Carry a refillable water bottle"],
        "emergencyInfo": {"emergencyNumber": "112", "embassy": "", "hospitals": []},
    }
    return json.dumps({"itinerary": itinerary})


def build_provider(config: PipelineConfig, client: Optional[httpx.AsyncClient] = None) -> CompletionProvider:
    if config.provider == "fake":
        return FakeCompletionProvider()
    if config.provider == "openai":
        return HttpCompletionProvider(config.api_key, config.model, api_base=config.api_base, client=client)
    return GeminiProvider(config.api_key, model=config.model)
