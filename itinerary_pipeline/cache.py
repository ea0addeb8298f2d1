import hashlib
import json
import logging
import time
from typing import Any, Callable, Optional, Protocol

from pydantic import BaseModel

from .models import GenerationRequest
from .tracing import log_event


logger = logging.getLogger(__name__)

ITINERARY_KEY_PREFIX = "itinerary:"


def _norm_text(value: str) -> str:
    return " ".join(value.strip().lower().split())


def normalize_request(request: GenerationRequest) -> dict[str, Any]:
    """Fields that decide the generated itinerary, in canonical form."""
    prefs = request.preferences
    return {
        "destination": _norm_text(request.destination),
        "start_date": request.start_date.isoformat(),
        "end_date": request.end_date.isoformat(),
        "budget": {
            "amount": round(float(request.budget.amount), 2),
            "currency": request.budget.currency.upper(),
            "range": request.budget.range,
        },
        "travelers": {
            "adults": request.travelers.adults,
            "children": request.travelers.children,
            "infants": request.travelers.infants,
        },
        "interests": sorted({_norm_text(i) for i in request.interests}),
        "preferences": {
            "pace": prefs.pace,
            "accommodation_type": prefs.accommodation_type,
            "transportation": prefs.transportation,
            "accessibility": prefs.accessibility,
            "dietary_restrictions": sorted({_norm_text(d) for d in prefs.dietary_restrictions}),
            "special_requests": _norm_text(prefs.special_requests),
        },
    }


def fingerprint(request: GenerationRequest, variant: str = "full") -> str:
    payload = {"variant": variant, "request": normalize_request(request)}
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class CachedItinerary(BaseModel):
    """A validated, scored result as stored in the cache."""

    itinerary: dict[str, Any]
    quality: str
    estimated_accuracy: int
    model: str
    warnings: list[str] = []
    stored_at: float


class ResponseCache(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl_s: float) -> None: ...

    async def delete(self, key: str) -> bool: ...


class CacheStats(BaseModel):
    size: int
    active_keys: int
    expired_keys: int
    hits: int
    misses: int


class InMemoryResponseCache:
    """Process-local TTL cache.

    Every operation is a single synchronous dict access, so reads and writes
    are atomic per key on the event loop. Concurrent writers for the same key
    simply overwrite each other.
    """

    def __init__(self, default_ttl_s: float = 86400.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.default_ttl_s = default_ttl_s
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}
        self._hits = 0
        self._misses = 0

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            self._misses += 1
            return None
        self._hits += 1
        return value

    async def set(self, key: str, value: Any, ttl_s: Optional[float] = None) -> None:
        ttl = self.default_ttl_s if ttl_s is None else ttl_s
        self._entries[key] = (value, self._clock() + ttl)

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def clear(self) -> None:
        self._entries.clear()

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            log_event(logger, logging.DEBUG, "cache", "purge_expired", removed=len(expired))
        return len(expired)

    def stats(self) -> CacheStats:
        now = self._clock()
        expired = sum(1 for _, expires_at in self._entries.values() if now >= expires_at)
        return CacheStats(
            size=len(self._entries),
            active_keys=len(self._entries) - expired,
            expired_keys=expired,
            hits=self._hits,
            misses=self._misses,
        )


class ItineraryCache:
    """Typed view over a ``ResponseCache`` for validated itineraries."""

    def __init__(self, store: ResponseCache, ttl_s: float = 86400.0) -> None:
        self.store = store
        self.ttl_s = ttl_s

    async def get(self, key: str) -> Optional[CachedItinerary]:
        raw = await self.store.get(ITINERARY_KEY_PREFIX + key)
        if raw is None:
            log_event(logger, logging.DEBUG, "cache", "get", key=key[:12], hit=False)
            return None
        log_event(logger, logging.INFO, "cache", "get", key=key[:12], hit=True)
        return CachedItinerary.model_validate(raw)

    async def set(self, key: str, entry: CachedItinerary) -> None:
        await self.store.set(ITINERARY_KEY_PREFIX + key, entry.model_dump(), self.ttl_s)
        log_event(logger, logging.INFO, "cache", "set", key=key[:12], ttl_s=float(self.ttl_s))

    async def delete(self, key: str) -> bool:
        return await self.store.delete(ITINERARY_KEY_PREFIX + key)
