"""Rolling search-duration history for diagnostics."""

from collections import deque
import time

from flashcard_search.observability.metrics import SEARCH_LATENCY


DEFAULT_HISTORY_SIZE = 200


def _percentile(sorted_values: list[float], fraction: float) -> float:
    index = min(len(sorted_values) - 1, int(len(sorted_values) * fraction))
    return sorted_values[index]


class SearchDurationHistory:
    """Bounded history of search durations (oldest evicted first).

    Single writer at a time by construction: searches on one engine are not
    expected to run with true parallelism.
    """

    def __init__(self, window_size: int = DEFAULT_HISTORY_SIZE):
        self.window_size = window_size
        self._durations: deque[float] = deque(maxlen=window_size)
        self._stats: dict = {}
        self._total_searches = 0

    @property
    def durations(self) -> list[float]:
        """Recorded durations in milliseconds, oldest first."""
        return list(self._durations)

    def record(self, duration_ms: float, ranking: str = "tfidf") -> None:
        """Append a duration and refresh the summary statistics."""
        self._durations.append(duration_ms)
        self._total_searches += 1
        SEARCH_LATENCY.labels(ranking=ranking).observe(duration_ms / 1000)
        self._stats = self._compute_stats()

    def _compute_stats(self) -> dict:
        latencies = sorted(self._durations)
        return {
            "count": len(latencies),
            "total_searches": self._total_searches,
            "p50": _percentile(latencies, 0.5),
            "p95": _percentile(latencies, 0.95),
            "mean": sum(latencies) / len(latencies),
            "max": latencies[-1],
        }

    def get_stats(self) -> dict:
        """Get current latency statistics (empty until the first search)."""
        return dict(self._stats)

    def reset(self) -> None:
        self._durations.clear()
        self._stats = {}
        self._total_searches = 0


class SearchTimer:
    """Context manager measuring wall-clock time in milliseconds."""

    def __init__(self) -> None:
        self.elapsed_ms = 0.0
        self._start = 0.0

    def __enter__(self) -> "SearchTimer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, *exc_info) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000


# Global history instance shared by every engine in the process
_search_history = SearchDurationHistory()


def get_search_history() -> SearchDurationHistory:
    """Get the process-wide search-duration history."""
    return _search_history


def configure_search_history(window_size: int) -> SearchDurationHistory:
    """Resize the process-wide history, keeping the most recent durations."""
    global _search_history
    if window_size != _search_history.window_size:
        resized = SearchDurationHistory(window_size)
        for duration in _search_history.durations[-window_size:]:
            resized._durations.append(duration)
        resized._total_searches = _search_history._total_searches
        if resized._durations:
            resized._stats = resized._compute_stats()
        _search_history = resized
    return _search_history
