"""Caller-facing API: discovery, session refresh and the daily report.

The controller owns the backend connection, the transport client and the
delta cache. Its public operations never raise; every failure is logged and
turned into a ``status`` on the returned result, and the next trigger (timer
tick, manual refresh) is the retry mechanism.
"""

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from usage_telemetry import daily
from usage_telemetry import stats as stats_mod
from usage_telemetry.cache import DeltaCache
from usage_telemetry.config import DEFAULT_MAX_ATTEMPTS, Settings
from usage_telemetry.daily import DailyModelStats
from usage_telemetry.discovery import ProcessDiscoveryEngine
from usage_telemetry.errors import DiscoveryFailure, TransportError
from usage_telemetry.sessions import SessionDataFetcher, SessionSummary
from usage_telemetry.stats import AggregatedStats
from usage_telemetry.transport import ConnectionHandle, TransportClient

logger = logging.getLogger("usage-telemetry")


@dataclass
class DiscoveryResult:
    status: str  # connected | not_found | error
    handle: ConnectionHandle | None = None
    diagnostics: dict = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "port": self.handle.port if self.handle else None,
            "extension_port": self.handle.extension_port if self.handle else None,
            "diagnostics": self.diagnostics,
            "error": self.error,
        }


@dataclass
class SessionListResult:
    status: str  # ok | not_found | error
    sessions: list[SessionSummary] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "sessions": [s.to_dict() for s in self.sessions],
            "error": self.error,
        }


@dataclass
class SessionReport:
    # ok | stale | no_sessions | unknown_session | not_found | error
    status: str
    session: SessionSummary | None = None
    stats: AggregatedStats | None = None
    mode: str | None = None  # cache mode when status is ok
    call_count: int = 0
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "session": self.session.to_dict() if self.session else None,
            "stats": self.stats.to_dict() if self.stats else None,
            "mode": self.mode,
            "call_count": self.call_count,
            "error": self.error,
        }


@dataclass
class DailyReport:
    status: str  # ok | not_found | error
    day_window: int = 0
    days: list[DailyModelStats] = field(default_factory=list)
    totals: AggregatedStats | None = None
    sessions_processed: int = 0
    sessions_failed: int = 0
    call_count: int = 0
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "day_window": self.day_window,
            "days": [d.to_dict() for d in self.days],
            "totals": self.totals.to_dict() if self.totals else None,
            "sessions_processed": self.sessions_processed,
            "sessions_failed": self.sessions_failed,
            "call_count": self.call_count,
            "error": self.error,
        }


class UsageController:
    """Long-lived owner of the backend connection and the session cache."""

    def __init__(
        self,
        settings: Settings | None = None,
        engine: ProcessDiscoveryEngine | None = None,
        client_factory: Callable[[ConnectionHandle], TransportClient] = TransportClient,
        cache: DeltaCache | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.settings = settings or Settings.from_env()
        self.cache = cache or DeltaCache()
        self.max_attempts = max_attempts
        self._engine = engine
        self._client_factory = client_factory
        self._client: TransportClient | None = None
        # Clients in use by a running cycle; a retired client is closed
        # when its last lease is released
        self._leases: dict[TransportClient, int] = {}
        self._lock = threading.RLock()

    @property
    def engine(self) -> ProcessDiscoveryEngine:
        if self._engine is None:
            self._engine = ProcessDiscoveryEngine()
        return self._engine

    @property
    def handle(self) -> ConnectionHandle | None:
        return self._client.handle if self._client else None

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._retire(self._client)

    def _retire(self, client: TransportClient) -> None:
        """Detach the current client; close it now unless a cycle still uses it."""
        with self._lock:
            if client is not self._client:
                # Already retired by another cycle
                return
            self._client = None
            if not self._leases.get(client):
                client.close()

    def discover(self, force: bool = False) -> DiscoveryResult:
        """Find the backend, reusing the current connection unless forced."""
        with self._lock:
            if self._client is not None and not force:
                return DiscoveryResult(status="connected", handle=self._client.handle)
            try:
                handle = self.engine.scan(self.max_attempts)
                diagnostics = self.engine.last_diagnostics.to_dict()
                if handle is None:
                    logger.warning("Backend not found; will retry on next trigger")
                    return DiscoveryResult(status="not_found", diagnostics=diagnostics)

                self.close()
                self._client = self._client_factory(handle)
                logger.info(f"Connected to backend on port {handle.port}")
                return DiscoveryResult(status="connected", handle=handle, diagnostics=diagnostics)
            except Exception as e:
                logger.error(f"Discovery failed: {e}")
                return DiscoveryResult(status="error", error=str(e))

    @contextmanager
    def _fetcher_lease(self) -> Iterator[SessionDataFetcher]:
        """Fetcher over the current client, kept open until the block exits.

        Raises:
            DiscoveryFailure: If no backend can be found
        """
        with self._lock:
            if self._client is None:
                result = self.discover()
                if self._client is None:
                    raise DiscoveryFailure(result.error or "backend not found")
            client = self._client
            self._leases[client] = self._leases.get(client, 0) + 1
        try:
            yield SessionDataFetcher(client)
        finally:
            with self._lock:
                self._leases[client] -= 1
                if not self._leases[client]:
                    del self._leases[client]
                    if client is not self._client:
                        client.close()

    def _drop_connection(self, fetcher: SessionDataFetcher | None, reason: Exception) -> None:
        # The backend may have restarted on a new port; rediscover next time
        logger.warning(f"Dropping backend connection: {reason}")
        if fetcher is not None:
            self._retire(fetcher.client)

    def list_sessions(self) -> SessionListResult:
        fetcher = None
        try:
            with self._fetcher_lease() as fetcher:
                return SessionListResult(status="ok", sessions=fetcher.list_sessions())
        except DiscoveryFailure as e:
            return SessionListResult(status="not_found", error=str(e))
        except TransportError as e:
            self._drop_connection(fetcher, e)
            return SessionListResult(status="error", error=str(e))
        except Exception as e:
            logger.error(f"Failed to list sessions: {e}")
            return SessionListResult(status="error", error=str(e))

    def refresh_session(self, session_id: str | None = None, force: bool = False) -> SessionReport:
        """Bring statistics for a session up to date.

        Args:
            session_id: Session to refresh (default: most recently modified)
            force: Fetch a delta even if the session timestamp is unchanged

        Returns:
            SessionReport; on a transport failure, previously cached stats for
            the session are returned with status "stale"
        """
        session = None
        fetcher = None
        try:
            with self._fetcher_lease() as fetcher:
                sessions = fetcher.list_sessions()
                if not sessions:
                    return SessionReport(status="no_sessions")

                if session_id is None:
                    session = sessions[0]
                else:
                    session = next((s for s in sessions if s.session_id == session_id), None)
                    if session is None:
                        return SessionReport(
                            status="unknown_session", error=f"No session with id {session_id}"
                        )

                refresh = self.cache.refresh(session, fetcher.fetch_from, force=force)
            logger.info(
                f"Session {session.session_id}: {refresh.mode}, "
                f"{refresh.stats.total_calls} calls, {refresh.call_count} requests"
            )
            return SessionReport(
                status="ok",
                session=session,
                stats=refresh.stats,
                mode=refresh.mode,
                call_count=refresh.call_count,
            )
        except DiscoveryFailure as e:
            return SessionReport(status="not_found", error=str(e))
        except TransportError as e:
            self._drop_connection(fetcher, e)
            return self._stale_report(session_id or (session and session.session_id), session, e)
        except Exception as e:
            logger.error(f"Session refresh failed: {e}")
            return SessionReport(status="error", session=session, error=str(e))

    def _stale_report(
        self, session_id: str | None, session: SessionSummary | None, error: Exception
    ) -> SessionReport:
        entry = self.cache.entry
        if session_id is None and entry is not None:
            session_id = entry.session_id
        cached = self.cache.get(session_id) if session_id else None
        if cached is None:
            return SessionReport(status="error", session=session, error=str(error))
        return SessionReport(status="stale", session=session, stats=cached, error=str(error))

    def get_daily_report(self, day_window: int | None = None) -> DailyReport:
        """Aggregate usage of recently modified sessions into daily buckets.

        Sessions whose fetch fails are skipped and counted in
        ``sessions_failed``.
        """
        window = day_window or self.settings.day_window
        fetcher = None
        try:
            with self._fetcher_lease() as fetcher:
                sessions = daily.filter_by_modified_date(fetcher.list_sessions(), window)
                logger.info(f"Processing {len(sessions)} sessions for the {window}-day report")

                report = DailyReport(status="ok", day_window=window)
                metadata = []
                steps = []
                for session in sessions:
                    try:
                        result = fetcher.fetch_all(session.session_id)
                    except TransportError as e:
                        logger.warning(f"Skipping session {session.session_id}: {e}")
                        report.sessions_failed += 1
                        continue

                    report.sessions_processed += 1
                    report.call_count += result.call_count
                    metadata.extend(result.metadata)
                    steps.extend(result.steps)

            report.days = daily.aggregate_by_day(metadata, steps, window)
            report.totals = stats_mod.calculate(metadata, steps)
            return report
        except DiscoveryFailure as e:
            return DailyReport(status="not_found", day_window=window, error=str(e))
        except TransportError as e:
            self._drop_connection(fetcher, e)
            return DailyReport(status="error", day_window=window, error=str(e))
        except Exception as e:
            logger.error(f"Daily report failed: {e}")
            return DailyReport(status="error", day_window=window, error=str(e))

    def status(self) -> dict:
        handle = self.handle
        diagnostics = self._engine.last_diagnostics.to_dict() if self._engine else {}
        return {
            "connected": handle is not None,
            "port": handle.port if handle else None,
            "cache": self.cache.info(),
            "poll_interval": self.settings.poll_interval,
            "day_window": self.settings.day_window,
            "diagnostics": diagnostics,
        }

    def run_poller(
        self,
        stop_event: threading.Event,
        on_update: Callable[[SessionReport], None] | None = None,
        interval: float | None = None,
        max_iterations: int | None = None,
    ) -> None:
        """Refresh the most recent session on a fixed interval until stopped.

        All timer-driven refreshes go through this one loop.
        """
        interval = self.settings.poll_interval if interval is None else interval
        iterations = 0
        while not stop_event.is_set():
            report = self.refresh_session()
            if on_update is not None:
                on_update(report)
            iterations += 1
            if max_iterations is not None and iterations >= max_iterations:
                break
            stop_event.wait(interval)
