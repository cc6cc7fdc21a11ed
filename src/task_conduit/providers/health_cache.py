"""Thread-safe per-provider availability records (the circuit breaker)."""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime

from task_conduit.models import HealthSource, ProviderHealthRecord, ProviderHealthStatus


class ProviderHealthCache:
    """Last writer wins; a fresh successful probe clears a runtime trip."""

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.Lock()
        self._records: dict[str, ProviderHealthRecord] = {}

    def get(self, provider_id: str) -> ProviderHealthRecord | None:
        with self._lock:
            return self._records.get(provider_id)

    def record_probe(self, status: ProviderHealthStatus) -> ProviderHealthRecord:
        record = ProviderHealthRecord(
            provider_id=status.provider_id,
            available=status.ok,
            reason=status.reason,
            checked_at=self._clock(),
            source=HealthSource.PROBE,
        )
        with self._lock:
            self._records[status.provider_id] = record
        return record

    def mark_unavailable(self, provider_id: str, reason: str) -> ProviderHealthRecord:
        record = ProviderHealthRecord(
            provider_id=provider_id,
            available=False,
            reason=reason,
            checked_at=self._clock(),
            source=HealthSource.RUNTIME,
        )
        with self._lock:
            self._records[provider_id] = record
        return record

    def snapshot(self) -> dict[str, ProviderHealthRecord]:
        with self._lock:
            return dict(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
