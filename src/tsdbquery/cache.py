from __future__ import annotations

import threading

from tsdbquery.query.models import RawSeries


class TagKeyCache:
    """Tag keys seen per metric, used for autocomplete only.

    Entries are overwritten by the most recent series of a metric; the cache is
    advisory and never consulted on the query path.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._keys: dict[str, list[str]] = {}

    def save(self, series: RawSeries) -> None:
        """Record tag and aggregate-tag keys of a reconciled series."""
        keys = list(series.tags)
        keys.extend(series.aggregate_tags)
        with self._lock:
            self._keys[series.metric] = keys

    def get(self, metric: str) -> list[str]:
        with self._lock:
            return list(self._keys.get(metric, []))

    def clear(self) -> None:
        with self._lock:
            self._keys.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)
