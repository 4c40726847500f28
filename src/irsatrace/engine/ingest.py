"""Event ingest: raw audit-log records to ``AuditEvent``.

Parsing is driven by a ``FieldMapping`` of dotted key paths, so the same
ingestor handles CloudTrail records and pre-flattened exports. Records that
cannot be parsed raise ``MalformedRecord`` from ``parse_record``; ``ingest``
skips and counts them instead.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
from collections.abc import Iterable
from collections.abc import Iterator
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timezone
from typing import Any

from irsatrace.config import FieldMapping
from irsatrace.errors import MalformedRecord
from irsatrace.models.events import AuditEvent
from irsatrace.models.events import IdentityType

logger = logging.getLogger(__name__)

_MISSING = object()

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _lookup(record: Any, path: str) -> Any:
    """Follow a dotted *path* through nested dicts; ``_MISSING`` if absent."""
    current = record
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _assign(record: dict, path: str, value: Any) -> None:
    parts = path.split(".")
    current = record
    for part in parts[:-1]:
        nested = current.get(part)
        if not isinstance(nested, dict):
            nested = {}
            current[part] = nested
        current = nested
    current[parts[-1]] = value


def parse_instant(value: Any) -> datetime:
    """Parse *value* as an absolute instant, normalized to UTC.

    Accepts tz-aware datetimes, ISO-8601 strings carrying an offset or ``Z``,
    and epoch seconds. Naive timestamps are rejected: they name no instant.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        msg = f"boolean is not a timestamp: {value!r}"
        raise MalformedRecord(msg)
    elif isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            msg = f"epoch timestamp out of range: {value!r}"
            raise MalformedRecord(msg) from exc
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            msg = f"unparseable timestamp: {value!r}"
            raise MalformedRecord(msg) from exc
    else:
        msg = f"unsupported timestamp type: {type(value).__name__}"
        raise MalformedRecord(msg)

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        msg = f"timestamp has no UTC offset: {value!r}"
        raise MalformedRecord(msg)
    return parsed.astimezone(timezone.utc)


def _record_digest(record: dict) -> str:
    """Deterministic id for records that carry none."""
    canonical = json.dumps(record, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _resource_ids(value: Any) -> tuple[str, ...]:
    """Normalize a resource field into a sorted tuple of distinct ids.

    Items may be plain strings or CloudTrail ``{"ARN": ...}`` objects.
    """
    if value is _MISSING or value is None:
        return ()
    items = value if isinstance(value, list) else [value]
    ids: set[str] = set()
    for item in items:
        if isinstance(item, str) and item:
            ids.add(item)
        elif isinstance(item, dict):
            arn = item.get("ARN") or item.get("arn")
            if isinstance(arn, str) and arn:
                ids.add(arn)
    return tuple(sorted(ids))


# ---------------------------------------------------------------------------
# Ingest run
# ---------------------------------------------------------------------------


class IngestRun:
    """Lazy, restartable stream of events over one input sequence.

    Each full iteration re-reads the input and resets ``parsed``,
    ``skipped`` and ``skip_reasons``.
    """

    def __init__(self, ingestor: EventIngestor, records: Sequence[dict]) -> None:
        self._ingestor = ingestor
        self._records = records
        self.parsed = 0
        self.skipped = 0
        self.skip_reasons: list[str] = []

    def __iter__(self) -> Iterator[AuditEvent]:
        self.parsed = 0
        self.skipped = 0
        self.skip_reasons = []
        for index, record in enumerate(self._records):
            try:
                event = self._ingestor.parse_record(record, index=index)
            except MalformedRecord as exc:
                self.skipped += 1
                self.skip_reasons.append(str(exc))
                logger.warning("skipping malformed record: %s", exc)
                continue
            self.parsed += 1
            yield event


@dataclass
class ShardedIngestResult:
    """Merged output of several independently ingested shards."""

    events: list[AuditEvent] = field(default_factory=list)
    skipped: int = 0
    skip_reasons: list[str] = field(default_factory=list)


def merge_by_event_time(streams: Iterable[Iterable[AuditEvent]]) -> list[AuditEvent]:
    """Concatenate *streams* and stable-sort on ``event_time``.

    Events with equal times keep their shard order, then their order within
    the shard.
    """
    merged: list[AuditEvent] = []
    for stream in streams:
        merged.extend(stream)
    return sorted(merged, key=lambda event: event.event_time)


# ---------------------------------------------------------------------------
# EventIngestor
# ---------------------------------------------------------------------------


class EventIngestor:
    """Turn raw records into ``AuditEvent`` objects using a field mapping."""

    def __init__(self, mapping: FieldMapping | None = None) -> None:
        self._mapping = mapping or FieldMapping()

    @property
    def mapping(self) -> FieldMapping:
        return self._mapping

    def ingest(self, records: Sequence[dict]) -> IngestRun:
        return IngestRun(self, records)

    def ingest_shards(self, shards: Sequence[Sequence[dict]]) -> ShardedIngestResult:
        """Ingest each shard, then merge the events by stable time sort."""
        runs = [self.ingest(shard) for shard in shards]
        streams = [list(run) for run in runs]
        result = ShardedIngestResult(events=merge_by_event_time(streams))
        for run in runs:
            result.skipped += run.skipped
            result.skip_reasons.extend(run.skip_reasons)
        return result

    def parse_record(self, record: Any, *, index: int | None = None) -> AuditEvent:
        """Parse one raw record; raise ``MalformedRecord`` on failure."""
        if not isinstance(record, dict):
            msg = f"expected an object, got {type(record).__name__}"
            raise MalformedRecord(msg, index=index)

        m = self._mapping
        try:
            event_time = parse_instant(self._required(record, m.event_time))
            event_name = self._required_str(record, m.event_name)
            source_address = self._required_str(record, m.source_address)
            principal = _lookup(record, m.principal_subject)
            if (principal is _MISSING or principal in (None, "")) and m.principal_fallback:
                principal = _lookup(record, m.principal_fallback)
            if not isinstance(principal, str) or not principal:
                msg = f"missing field {m.principal_subject!r}"
                raise MalformedRecord(msg)
        except MalformedRecord as exc:
            raise MalformedRecord(exc.reason, index=index) from exc

        identity_type = _lookup(record, m.identity_type)
        event_id = _lookup(record, m.event_id) if m.event_id else _MISSING
        access_key = _lookup(record, m.access_key_id) if m.access_key_id else _MISSING
        issuer = (
            _lookup(record, m.session_issuer_arn) if m.session_issuer_arn else _MISSING
        )
        resources = (
            _lookup(record, m.resource_identifiers) if m.resource_identifiers else _MISSING
        )

        return AuditEvent(
            event_id=(
                event_id
                if isinstance(event_id, str) and event_id
                else _record_digest(record)
            ),
            event_time=event_time,
            event_name=event_name,
            source_address=source_address,
            principal_subject=principal,
            identity_type=IdentityType.parse(
                identity_type if isinstance(identity_type, str) else None
            ),
            identity_type_raw=(
                identity_type if isinstance(identity_type, str) and identity_type else None
            ),
            access_key_id=access_key if isinstance(access_key, str) and access_key else None,
            session_issuer_arn=issuer if isinstance(issuer, str) and issuer else None,
            resource_identifiers=_resource_ids(resources),
            raw=record,
        )

    def to_record(self, event: AuditEvent) -> dict:
        """Serialize *event* back into the mapped record layout.

        Starts from the event's raw record and only rewrites fields whose
        stored value no longer parses to the event's value, so an ingested
        record round-trips unchanged.
        """
        m = self._mapping
        record = copy.deepcopy(event.raw)

        def _set_if_changed(path: str | None, value: Any, current_ok: bool) -> None:
            if path and not current_ok:
                _assign(record, path, value)

        # Digest ids are checked before any field is rewritten
        if m.event_id:
            current_id = _lookup(record, m.event_id)
            id_ok = current_id == event.event_id or (
                current_id in (_MISSING, None, "")
                and _record_digest(record) == event.event_id
            )
            _set_if_changed(m.event_id, event.event_id, id_ok)

        current_time = _lookup(record, m.event_time)
        try:
            time_ok = (
                current_time is not _MISSING
                and parse_instant(current_time) == event.event_time
            )
        except MalformedRecord:
            time_ok = False
        _set_if_changed(m.event_time, event.event_time.isoformat(), time_ok)
        _set_if_changed(
            m.event_name, event.event_name, _lookup(record, m.event_name) == event.event_name
        )
        _set_if_changed(
            m.source_address,
            event.source_address,
            _lookup(record, m.source_address) == event.source_address,
        )
        subject_ok = _lookup(record, m.principal_subject) == event.principal_subject or (
            _lookup(record, m.principal_subject) in (_MISSING, None, "")
            and m.principal_fallback is not None
            and _lookup(record, m.principal_fallback) == event.principal_subject
        )
        _set_if_changed(m.principal_subject, event.principal_subject, subject_ok)
        type_name = event.identity_type_name
        if type_name is not None:
            _set_if_changed(
                m.identity_type,
                type_name,
                _lookup(record, m.identity_type) == type_name,
            )
        if event.access_key_id is not None and m.access_key_id:
            _set_if_changed(
                m.access_key_id,
                event.access_key_id,
                _lookup(record, m.access_key_id) == event.access_key_id,
            )
        if event.session_issuer_arn is not None and m.session_issuer_arn:
            _set_if_changed(
                m.session_issuer_arn,
                event.session_issuer_arn,
                _lookup(record, m.session_issuer_arn) == event.session_issuer_arn,
            )
        if event.resource_identifiers:
            current_resources = (
                _lookup(record, m.resource_identifiers) if m.resource_identifiers else _MISSING
            )
            _set_if_changed(
                m.resource_identifiers,
                list(event.resource_identifiers),
                _resource_ids(current_resources) == event.resource_identifiers,
            )
        return record

    # ------------------------------------------------------------------
    # Field access
    # ------------------------------------------------------------------

    @staticmethod
    def _required(record: dict, path: str) -> Any:
        value = _lookup(record, path)
        if value is _MISSING or value is None:
            msg = f"missing field {path!r}"
            raise MalformedRecord(msg)
        return value

    @classmethod
    def _required_str(cls, record: dict, path: str) -> str:
        value = cls._required(record, path)
        if not isinstance(value, str) or not value.strip():
            msg = f"field {path!r} must be a non-empty string"
            raise MalformedRecord(msg)
        return value
