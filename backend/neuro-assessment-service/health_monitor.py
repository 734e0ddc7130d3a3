"""
Neuro Assessment Service - Health Monitor

Builds the provider capability matrix:
- no credential -> `unavailable` without touching the network
- otherwise a low-cost probe -> `healthy` / `error`

Results are cached per adapter with a TTL. Concurrent checks for the same
adapter await one shared in-flight probe.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Union

from adapters import ProviderAdapter, redact
from env_loader import env_float
from models import CapabilityMatrix, CapabilityStatus, ProviderCapability, utc_now

logger = logging.getLogger(__name__)


@dataclass
class _CacheEntry:
    expires_at: float
    value: ProviderCapability


class HealthMonitor:
    def __init__(
        self,
        adapters: Union[Mapping[str, ProviderAdapter], Iterable[ProviderAdapter]],
        *,
        ttl_seconds: Optional[float] = None,
        probe_timeout_seconds: Optional[float] = None,
    ) -> None:
        if isinstance(adapters, Mapping):
            self.adapters: Dict[str, ProviderAdapter] = dict(adapters)
        else:
            self.adapters = {adapter.name: adapter for adapter in adapters}
        self.ttl_seconds = max(
            0.0, ttl_seconds if ttl_seconds is not None else env_float("NEURO_HEALTH_TTL_SECONDS", 60.0)
        )
        self.probe_timeout_seconds = (
            probe_timeout_seconds
            if probe_timeout_seconds is not None
            else env_float("NEURO_HEALTH_PROBE_TIMEOUT_SECONDS", 10.0)
        )
        self._cache: Dict[str, _CacheEntry] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self.probe_count = 0

    def cached(self, name: str) -> Optional[ProviderCapability]:
        entry = self._cache.get(name)
        if entry is None or entry.expires_at <= time.monotonic():
            return None
        return entry.value

    def invalidate(self) -> None:
        self._cache.clear()

    async def check(self) -> CapabilityMatrix:
        names = list(self.adapters)
        results = await asyncio.gather(*(self.check_adapter(name) for name in names))
        return CapabilityMatrix(capabilities=dict(zip(names, results)))

    async def check_adapter(self, name: str) -> ProviderCapability:
        adapter = self.adapters[name]
        if not adapter.configured:
            return ProviderCapability(
                name=name,
                status=CapabilityStatus.UNAVAILABLE,
                available=False,
                last_error=f"{adapter.provider} credential not configured",
            )

        # No await between the cache lookup and task registration: callers on this loop
        # always observe the same in-flight task.
        capability = self.cached(name)
        if capability is not None:
            return capability
        task = self._inflight.get(name)
        if task is None:
            task = asyncio.ensure_future(self._probe(name, adapter))
            self._inflight[name] = task
        # Shielded so one cancelled caller does not cancel the probe other callers share.
        return await asyncio.shield(task)

    async def _probe(self, name: str, adapter: ProviderAdapter) -> ProviderCapability:
        self.probe_count += 1
        try:
            outcome = await adapter.probe(timeout=self.probe_timeout_seconds)
            if outcome.status == outcome.ERROR and outcome.error is not None:
                capability = ProviderCapability(
                    name=name,
                    status=CapabilityStatus.ERROR,
                    available=False,
                    last_error=redact(f"{outcome.error.kind.value}: {outcome.error.message}", adapter.secrets()),
                    last_checked_at=utc_now(),
                )
                logger.warning("Health probe for %s failed (%s).", name, outcome.error.kind.value)
            else:
                capability = ProviderCapability(
                    name=name,
                    status=CapabilityStatus.HEALTHY,
                    available=True,
                    last_checked_at=utc_now(),
                )
            self._cache[name] = _CacheEntry(
                expires_at=time.monotonic() + self.ttl_seconds,
                value=capability,
            )
            return capability
        finally:
            self._inflight.pop(name, None)
