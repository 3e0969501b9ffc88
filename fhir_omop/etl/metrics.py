"""Mapping counters.

The mapper reports every skip reason through an injected sink with a single
method, ``increment(reason, resource_type)``. ``MappingMetrics`` is the
in-process implementation; any object with the same method can be passed
instead (e.g. an adapter onto a metrics backend).
"""

import threading
from collections import defaultdict
from typing import Protocol

from fhir_omop.etl.errors import SkipReason


class MetricsSink(Protocol):
    """Anything that counts mapping outcomes."""

    def increment(self, reason: SkipReason | str, resource_type: str) -> None: ...


class MappingMetrics:
    """Thread-safe counters keyed by (resource type, reason).

    Usage:
        metrics = MappingMetrics()
        mapper = ResourceMapper(policy, ..., metrics=metrics)
        ...
        metrics.get("Condition", SkipReason.UNRESOLVED_SUBJECT)
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: dict[tuple[str, str], int] = defaultdict(int)

    def increment(self, reason: SkipReason | str, resource_type: str) -> None:
        key = (resource_type, reason.value if isinstance(reason, SkipReason) else reason)
        with self._lock:
            self._counts[key] += 1

    def get(self, resource_type: str, reason: SkipReason | str) -> int:
        reason_value = reason.value if isinstance(reason, SkipReason) else reason
        with self._lock:
            return self._counts.get((resource_type, reason_value), 0)

    def total(self, resource_type: str | None = None) -> int:
        with self._lock:
            return sum(
                count
                for (rtype, _), count in self._counts.items()
                if resource_type is None or rtype == resource_type
            )

    def snapshot(self) -> dict[str, dict[str, int]]:
        """Counters grouped by resource type."""
        result: dict[str, dict[str, int]] = {}
        with self._lock:
            for (resource_type, reason), count in sorted(self._counts.items()):
                result.setdefault(resource_type, {})[reason] = count
        return result

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
