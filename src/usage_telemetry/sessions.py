"""Session listing and offset-based paginated fetching."""

import logging
from dataclasses import dataclass, field

from usage_telemetry.records import MetadataRecord, StepRecord, parse_metadata, parse_steps, to_int
from usage_telemetry.transport import TransportClient

logger = logging.getLogger("usage-telemetry")


@dataclass(frozen=True)
class SessionSummary:
    """One backend-tracked conversation, as reported by the session list."""

    session_id: str
    summary: str = "N/A"
    last_modified: str = ""  # ISO-8601, compared lexicographically
    step_count: int = 0

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "summary": self.summary,
            "last_modified": self.last_modified,
            "step_count": self.step_count,
        }


@dataclass
class FetchResult:
    """Records fetched from a pair of start offsets, plus where to resume."""

    metadata: list[MetadataRecord] = field(default_factory=list)
    steps: list[StepRecord] = field(default_factory=list)
    next_metadata_offset: int = 0
    next_step_offset: int = 0
    call_count: int = 0  # backend requests issued, not model calls

    @property
    def is_empty(self) -> bool:
        return not self.metadata and not self.steps


def parse_session_list(response: dict) -> list[SessionSummary]:
    """Parse a list-sessions response, newest first.

    Summaries without an id field fall back to their map key.
    """
    summaries = response.get("trajectorySummaries") or {}
    if not isinstance(summaries, dict):
        return []

    sessions = []
    for key, raw in summaries.items():
        if not isinstance(raw, dict):
            continue
        sessions.append(
            SessionSummary(
                session_id=raw.get("cascadeId") or key,
                summary=raw.get("summary") or "N/A",
                last_modified=raw.get("lastModifiedTime") or "",
                step_count=to_int(raw.get("stepCount")),
            )
        )
    sessions.sort(key=lambda s: s.last_modified, reverse=True)
    return sessions


def latest_timestamp(response: dict) -> str:
    """Most recent lastModifiedTime in a list-sessions response ("" if none)."""
    sessions = parse_session_list(response)
    return sessions[0].last_modified if sessions else ""


class SessionDataFetcher:
    """Fetches metadata and step records page by page until an empty batch."""

    def __init__(self, client: TransportClient):
        self.client = client

    def list_sessions(self) -> list[SessionSummary]:
        return parse_session_list(self.client.list_sessions())

    def latest_session(self) -> SessionSummary | None:
        sessions = self.list_sessions()
        return sessions[0] if sessions else None

    def fetch_from(
        self,
        session_id: str,
        start_metadata_offset: int = 0,
        start_step_offset: int = 0,
    ) -> FetchResult:
        """Fetch every record appended after the given offsets.

        Offsets count records already consumed in each stream; the two
        streams are paged independently. A transport error aborts the fetch
        and propagates; only a successful empty batch ends a stream.

        Args:
            session_id: Session to fetch
            start_metadata_offset: Metadata records already consumed
            start_step_offset: Step records already consumed

        Returns:
            FetchResult with the new records and the offsets to resume from
        """
        result = FetchResult(
            next_metadata_offset=start_metadata_offset,
            next_step_offset=start_step_offset,
        )

        while True:
            result.call_count += 1
            response = self.client.get_metadata_page(session_id, result.next_metadata_offset)
            batch = response.get("generatorMetadata") or []
            if not batch:
                break
            result.metadata.extend(parse_metadata(batch))
            result.next_metadata_offset += len(batch)

        while True:
            result.call_count += 1
            response = self.client.get_steps_page(session_id, result.next_step_offset)
            batch = response.get("steps") or []
            if not batch:
                break
            result.steps.extend(parse_steps(batch))
            result.next_step_offset += len(batch)

        logger.debug(
            f"Fetched {len(result.metadata)} metadata / {len(result.steps)} steps for "
            f"{session_id} in {result.call_count} requests"
        )
        return result

    def fetch_all(self, session_id: str) -> FetchResult:
        return self.fetch_from(session_id, 0, 0)
