"""JSONL run journal.

Every pipeline milestone is appended as one line. Reads stream the file and
group lines back into per-run timelines, so an operator can tell which run
finalized an incident and where an abandoned run stopped.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from pathlib import Path

from pydantic import ValidationError

from irsatrace.config import JournalConfig
from irsatrace.journal.schemas import JournalEntry
from irsatrace.journal.schemas import JournalEntryType
from irsatrace.journal.schemas import RunTimeline

logger = logging.getLogger(__name__)


def _load(
    path: Path,
    run_id: str | None,
    incident_id: str | None,
    entry_type: JournalEntryType | None,
) -> list[JournalEntry]:
    if not path.exists():
        return []
    entries: list[JournalEntry] = []
    with path.open(encoding="utf-8") as fh:
        for line_no, line in enumerate(fh, start=1):
            if not line.strip():
                continue
            try:
                entry = JournalEntry.model_validate_json(line)
            except ValidationError:
                logger.warning("skipping malformed journal line %d in %s", line_no, path)
                continue
            if run_id is not None and entry.run_id != run_id:
                continue
            if incident_id is not None and entry.incident_id != incident_id:
                continue
            if entry_type is not None and entry.entry_type is not entry_type:
                continue
            entries.append(entry)
    return entries


class RunJournal:
    """Append-only journal of correlation runs.

    Writes are serialized by an ``asyncio.Lock`` and done in a worker
    thread; a disabled journal drops writes and reads back nothing.
    """

    def __init__(self, config: JournalConfig) -> None:
        self.config = config
        self.path = Path(config.file_path)
        self._lock = asyncio.Lock()

    async def record(self, entry: JournalEntry) -> None:
        if not self.config.enabled:
            return
        line = entry.model_dump_json() + "\n"
        async with self._lock:
            await asyncio.to_thread(self._append, line)

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(line)

    async def entries(
        self,
        *,
        run_id: str | None = None,
        incident_id: str | None = None,
        entry_type: JournalEntryType | None = None,
    ) -> list[JournalEntry]:
        """Entries in write order, filtered on any combination of fields."""
        if not self.config.enabled:
            return []
        async with self._lock:
            return await asyncio.to_thread(_load, self.path, run_id, incident_id, entry_type)

    async def timeline(self, run_id: str) -> RunTimeline | None:
        """Timeline of *run_id*, or None when the journal never saw it."""
        entries = await self.entries(run_id=run_id)
        return RunTimeline.from_entries(entries) if entries else None

    async def incident_timelines(self, incident_id: str) -> list[RunTimeline]:
        """Every run recorded for *incident_id*, oldest first."""
        by_run: dict[str, list[JournalEntry]] = defaultdict(list)
        for entry in await self.entries(incident_id=incident_id):
            by_run[entry.run_id].append(entry)
        timelines = [RunTimeline.from_entries(group) for group in by_run.values()]
        return sorted(timelines, key=lambda t: t.started_at or t.entries[0].timestamp)

    async def finalizing_run(self, incident_id: str) -> RunTimeline | None:
        """The run that wrote the incident's bundle, if the journal has it."""
        for timeline in await self.incident_timelines(incident_id):
            if timeline.outcome == "completed":
                return timeline
        return None
