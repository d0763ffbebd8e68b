"""
Upstream instance registry for the stream gateway.

Piped and Invidious are self-hosted by third parties, so each family has
several interchangeable base URLs with wildly varying availability. The
registry keeps a small health record per instance and always tries the
healthiest ones first:

  1. fewest recent failures (capped at MAX_FAILURE_STREAK)
  2. lowest measured latency
  3. most recent success

A caller-preferred instance is always tried first, even when it is not
part of the configured list.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Optional, TypeVar

import httpx

from services.common.logging_utils import module_logger
from services.stream_gateway.config import InstanceConfig

log = module_logger("stream-gateway", "instances")

T = TypeVar("T")
ServiceKind = Literal["piped", "invidious"]

MAX_FAILURE_STREAK = 3


class ProviderError(Exception):
    """One or more upstream attempts failed."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        instance: Optional[str] = None,
        access_denied: bool = False,
        detail: Optional[str] = None,
    ):
        super().__init__(message)
        self.detail = detail or message
        self.status = status
        self.instance = instance
        self.access_denied = access_denied or status == 403


class NoInstancesError(ProviderError):
    """No base URLs are configured for a service kind."""


def normalize_base(url: str) -> str:
    return url.strip().rstrip("/")


@dataclass
class InstanceState:
    url: str
    latency: float = math.inf
    failure_count: int = 0
    last_failure: float = 0.0
    last_success: float = 0.0


class InstanceRegistry:
    """Ranks instances per service kind and runs requests across them."""

    def __init__(
        self,
        config: InstanceConfig,
        client: httpx.AsyncClient,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self._client = client
        self._clock = clock
        self._states: dict[str, list[InstanceState]] = {}
        self._cache: dict[str, tuple[float, Any]] = {}
        self._last_used: dict[str, str] = {}
        self.config = config
        self.reset(config)

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    def reset(self, config: InstanceConfig) -> None:
        """Apply a new instance list, keeping health data for survivors."""
        self.config = config
        for kind, urls in (("piped", config.piped), ("invidious", config.invidious)):
            existing = {state.url: state for state in self._states.get(kind, [])}
            self._states[kind] = [
                existing.get(url) or InstanceState(url)
                for url in dict.fromkeys(normalize_base(u) for u in urls if u.strip())
            ]

    def states(self, kind: ServiceKind) -> list[InstanceState]:
        return list(self._states.get(kind, []))

    def ranked(self, kind: ServiceKind, preferred: Optional[str] = None) -> list[InstanceState]:
        candidates = sorted(
            self._states.get(kind, []),
            key=lambda s: (s.failure_count, s.latency, -s.last_success),
        )
        if preferred:
            wanted = normalize_base(preferred)
            match = next((s for s in candidates if s.url == wanted), None)
            if match is not None:
                candidates.remove(match)
            candidates.insert(0, match or InstanceState(wanted))
        return candidates

    def last_successful(self, kind: ServiceKind) -> Optional[str]:
        return self._last_used.get(kind)

    def record_success(self, kind: ServiceKind, state: InstanceState, latency: float) -> None:
        if math.isfinite(latency):
            state.latency = latency
        state.failure_count = 0
        state.last_success = self._clock()
        self._last_used[kind] = state.url

    def record_failure(self, kind: ServiceKind, state: InstanceState) -> None:
        state.failure_count = min(MAX_FAILURE_STREAK, state.failure_count + 1)
        state.last_failure = self._clock()
        if state.failure_count >= MAX_FAILURE_STREAK:
            # keep a flapping instance at the back of the line
            state.latency = math.inf

    # ── Cache ──────────────────────────────────────────────────────

    def get_cached(self, kind: ServiceKind, key: str) -> Optional[Any]:
        entry = self._cache.get(f"{kind}::{key}")
        if entry is None:
            return None
        expires_at, payload = entry
        if expires_at < self._clock():
            del self._cache[f"{kind}::{key}"]
            return None
        return payload

    def set_cached(self, kind: ServiceKind, key: str, ttl: float, payload: Any) -> None:
        self._cache[f"{kind}::{key}"] = (self._clock() + ttl, payload)

    def drop_cached(self, kind: ServiceKind, key: str) -> None:
        self._cache.pop(f"{kind}::{key}", None)

    # ── Requests ───────────────────────────────────────────────────

    async def run(
        self,
        kind: ServiceKind,
        attempt: Callable[[str], Awaitable[T]],
        *,
        preferred: Optional[str] = None,
    ) -> tuple[T, str]:
        """
        Call ``attempt(base_url)`` on each ranked instance until one returns.

        Returns the result with the base URL that produced it. Raises
        ProviderError listing every instance failure otherwise.
        """
        candidates = self.ranked(kind, preferred)
        if not candidates:
            raise NoInstancesError(f"no instances configured for {kind}")

        errors: list[tuple[str, Exception]] = []
        for state in candidates:
            started = time.perf_counter()
            try:
                result = await attempt(state.url)
            except (ProviderError, httpx.HTTPError, ValueError) as e:
                self.record_failure(kind, state)
                errors.append((state.url, e))
                log.warning("%s instance %s failed: %s", kind, state.url, e)
                continue
            self.record_success(kind, state, (time.perf_counter() - started) * 1000.0)
            return result, state.url

        summary = "; ".join(f"{url} -> {err or type(err).__name__}" for url, err in errors)
        denied = all(getattr(err, "access_denied", False) for _, err in errors)
        last_status = getattr(errors[-1][1], "status", None)
        raise ProviderError(
            f"all instances failed for {kind}: {summary}",
            status=last_status if denied else None,
            access_denied=denied,
            detail=getattr(errors[-1][1], "detail", None) or str(errors[-1][1]),
        )

    async def get_json(self, url: str, *, params: Optional[dict] = None) -> Any:
        """GET *url* and decode JSON, raising ProviderError on bad status/type."""
        response = await self._client.get(url, params=params, headers={"Accept": "application/json"})
        if response.status_code >= 400:
            raise ProviderError(
                f"HTTP {response.status_code}",
                status=response.status_code,
                instance=url,
                access_denied=response.status_code == 403,
            )
        content_type = response.headers.get("content-type", "")
        if "json" not in content_type.lower():
            raise ProviderError(f'Unexpected content-type "{content_type or "unknown"}"', instance=url)
        return response.json()

    async def fetch_json(
        self,
        kind: ServiceKind,
        build_url: Callable[[str], str],
        *,
        params: Optional[dict] = None,
        cache_key: Optional[str] = None,
        ttl: float = 0,
        preferred: Optional[str] = None,
    ) -> tuple[Any, str]:
        """JSON GET across ranked instances with an optional TTL cache."""
        if cache_key:
            cached = self.get_cached(kind, cache_key)
            if cached is not None:
                return cached

        async def attempt(base: str) -> Any:
            return await self.get_json(build_url(base), params=params)

        data, instance = await self.run(kind, attempt, preferred=preferred)
        if cache_key and ttl > 0:
            self.set_cached(kind, cache_key, ttl, (data, instance))
        return data, instance
