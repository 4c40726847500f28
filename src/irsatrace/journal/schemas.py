"""Journal entry types and the per-run timeline built from them."""

from __future__ import annotations

import time
from collections.abc import Iterable
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field


class JournalEntryType(str, Enum):
    """Milestones of a correlation pass."""

    RUN_STARTED = "RUN_STARTED"
    INGEST_COMPLETED = "INGEST_COMPLETED"
    SNAPSHOT_FLAGGED = "SNAPSHOT_FLAGGED"
    IDENTITY_UNRESOLVED = "IDENTITY_UNRESOLVED"
    MATCH_FLAGGED = "MATCH_FLAGGED"
    BUNDLE_FINALIZED = "BUNDLE_FINALIZED"
    RUN_FAILED = "RUN_FAILED"
    RUN_CANCELLED = "RUN_CANCELLED"


# Entry types that close a run
_TERMINAL = {
    JournalEntryType.BUNDLE_FINALIZED: "completed",
    JournalEntryType.RUN_FAILED: "failed",
    JournalEntryType.RUN_CANCELLED: "cancelled",
}


class JournalEntry(BaseModel):
    """One journal line: a milestone of one run for one incident."""

    model_config = {"frozen": True}

    timestamp: float = Field(
        default_factory=time.time,
        description="Unix epoch when the entry was written.",
    )
    run_id: str
    incident_id: str
    entry_type: JournalEntryType
    stage: str | None = Field(
        default=None,
        description="Pipeline stage that produced the entry, if any.",
    )
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.entry_type in _TERMINAL


class RunTimeline(BaseModel):
    """Everything the journal knows about one run, in write order.

    ``outcome`` is ``incomplete`` when the run never wrote a closing entry,
    which is what a crashed or killed process leaves behind.
    """

    run_id: str
    incident_id: str
    started_at: float | None = None
    ended_at: float | None = None
    outcome: str = "incomplete"
    failed_stage: str | None = None
    integrity_hash: str | None = None
    flagged_matches: int = 0
    unresolved_identities: int = 0
    flagged_pods: int = 0
    entries: list[JournalEntry] = Field(default_factory=list)

    @classmethod
    def from_entries(cls, entries: Iterable[JournalEntry]) -> RunTimeline:
        """Fold one run's entries into a timeline.

        Raises ``ValueError`` for an empty sequence or mixed run ids.
        """
        ordered = sorted(entries, key=lambda e: e.timestamp)
        if not ordered:
            msg = "cannot build a timeline from no entries"
            raise ValueError(msg)
        run_ids = {e.run_id for e in ordered}
        if len(run_ids) != 1:
            msg = f"entries span several runs: {sorted(run_ids)}"
            raise ValueError(msg)

        timeline = cls(
            run_id=ordered[0].run_id,
            incident_id=ordered[0].incident_id,
            entries=ordered,
        )
        for entry in ordered:
            if entry.entry_type is JournalEntryType.RUN_STARTED:
                timeline.started_at = entry.timestamp
            elif entry.entry_type is JournalEntryType.MATCH_FLAGGED:
                timeline.flagged_matches += 1
            elif entry.entry_type is JournalEntryType.IDENTITY_UNRESOLVED:
                timeline.unresolved_identities += 1
            elif entry.entry_type is JournalEntryType.SNAPSHOT_FLAGGED:
                timeline.flagged_pods += 1
            if entry.terminal:
                timeline.ended_at = entry.timestamp
                timeline.outcome = _TERMINAL[entry.entry_type]
                if entry.entry_type is JournalEntryType.BUNDLE_FINALIZED:
                    timeline.integrity_hash = entry.payload.get("integrity_hash")
                else:
                    timeline.failed_stage = entry.stage
        return timeline
