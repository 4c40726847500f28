"""Run journal: JSONL milestones of each correlation pass, read back as timelines."""

from irsatrace.journal.schemas import JournalEntry
from irsatrace.journal.schemas import JournalEntryType
from irsatrace.journal.schemas import RunTimeline
from irsatrace.journal.store import RunJournal

__all__ = [
    "JournalEntry",
    "JournalEntryType",
    "RunJournal",
    "RunTimeline",
]
