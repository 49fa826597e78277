"""Single-entry in-memory cache of session statistics with delta fetching."""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from usage_telemetry import stats as stats_mod
from usage_telemetry.errors import CacheInconsistency
from usage_telemetry.sessions import FetchResult, SessionSummary
from usage_telemetry.stats import AggregatedStats

logger = logging.getLogger("usage-telemetry")

# fetch(session_id, metadata_offset, step_offset)
Fetch = Callable[[str, int, int], FetchResult]


@dataclass
class CacheEntry:
    session_id: str
    last_modified: str
    stats: AggregatedStats
    next_metadata_offset: int = 0
    next_step_offset: int = 0
    captured_at: float = field(default_factory=time.time)


@dataclass
class CacheRefresh:
    """Outcome of one cache cycle.

    mode is one of:
      cold     full fetch from offset 0 (no entry, other session, or inconsistency)
      hit      unchanged timestamp, nothing fetched
      delta    new records fetched from stored offsets and merged
      touched  timestamp changed but no new records; timestamp recorded
    """

    stats: AggregatedStats
    mode: str
    call_count: int = 0


class DeltaCache:
    """Holds statistics for the one session currently in focus.

    ``refresh`` runs the whole check, fetch, merge and store cycle under a
    lock, so overlapping triggers (timer, manual refresh) for the same session
    cannot both resume from the same stale offsets.
    """

    def __init__(self):
        self._entry: CacheEntry | None = None
        self._lock = threading.Lock()

    @property
    def entry(self) -> CacheEntry | None:
        return self._entry

    def get(self, session_id: str) -> AggregatedStats | None:
        """Cached stats for ``session_id`` only; never another session's."""
        entry = self._entry
        if entry is None or entry.session_id != session_id:
            return None
        return entry.stats

    def invalidate(self) -> None:
        with self._lock:
            self._entry = None

    def info(self) -> str:
        entry = self._entry
        if entry is None:
            return "Cache: empty"
        age = round(time.time() - entry.captured_at)
        return f"Cache: {entry.session_id[:8]}... ({age}s old)"

    def refresh(self, session: SessionSummary, fetch: Fetch, force: bool = False) -> CacheRefresh:
        """Bring cached stats for ``session`` up to date.

        Args:
            session: Summary of the session in focus (id + last-modified time)
            fetch: Callable fetching records from a pair of offsets
            force: Fetch a delta even when the timestamp is unchanged

        Returns:
            CacheRefresh with the current stats and how they were obtained

        Raises:
            TransportError: If the fetch fails; the cached entry is left as is
        """
        with self._lock:
            entry = self._entry
            if entry is None or entry.session_id != session.session_id:
                return self._full_fetch(session, fetch)

            if not force and entry.last_modified == session.last_modified:
                logger.debug(f"Cache is up to date ({session.last_modified})")
                return CacheRefresh(stats=entry.stats, mode="hit")

            try:
                return self._delta_fetch(entry, session, fetch)
            except CacheInconsistency as e:
                logger.warning(f"Discarding cache for {session.session_id}: {e}")
                self._entry = None
                return self._full_fetch(session, fetch)

    def _full_fetch(self, session: SessionSummary, fetch: Fetch) -> CacheRefresh:
        logger.info(f"Full fetch for session {session.session_id}")
        result = fetch(session.session_id, 0, 0)
        stats = stats_mod.calculate(result.metadata, result.steps)
        self._entry = CacheEntry(
            session_id=session.session_id,
            last_modified=session.last_modified,
            stats=stats,
            next_metadata_offset=result.next_metadata_offset,
            next_step_offset=result.next_step_offset,
        )
        return CacheRefresh(stats=stats, mode="cold", call_count=result.call_count)

    def _delta_fetch(
        self, entry: CacheEntry, session: SessionSummary, fetch: Fetch
    ) -> CacheRefresh:
        logger.info(
            f"Delta fetch for {session.session_id} from offsets "
            f"({entry.next_metadata_offset}, {entry.next_step_offset})"
        )
        result = fetch(session.session_id, entry.next_metadata_offset, entry.next_step_offset)

        if (
            result.next_metadata_offset < entry.next_metadata_offset
            or result.next_step_offset < entry.next_step_offset
        ):
            raise CacheInconsistency(
                f"offsets regressed from ({entry.next_metadata_offset}, "
                f"{entry.next_step_offset}) to ({result.next_metadata_offset}, "
                f"{result.next_step_offset})"
            )

        entry.last_modified = session.last_modified
        entry.captured_at = time.time()

        if result.is_empty:
            # Session touched without new usage records; remember the new
            # timestamp so the next poll is a cache hit
            return CacheRefresh(stats=entry.stats, mode="touched", call_count=result.call_count)

        delta = stats_mod.calculate(result.metadata, result.steps)
        entry.stats = stats_mod.merge(entry.stats, delta)
        entry.next_metadata_offset = result.next_metadata_offset
        entry.next_step_offset = result.next_step_offset
        return CacheRefresh(stats=entry.stats, mode="delta", call_count=result.call_count)
