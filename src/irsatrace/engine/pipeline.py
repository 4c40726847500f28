"""Correlation pipeline orchestrator.

Wires ingest, identity resolution, workload matching and bundling into a
single ``CorrelationPipeline.run(...)`` call. Stages run strictly in order;
cancellation is honoured between stages, never inside one. A run that fails
or is cancelled returns a result without a bundle, which the caller turns
into a ``DiagnosticReport``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter
from collections.abc import Mapping
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field

from irsatrace.config import CorrelationConfig
from irsatrace.config import FieldMapping
from irsatrace.engine.bundler import EvidenceBundler
from irsatrace.engine.ingest import EventIngestor
from irsatrace.engine.matcher import WorkloadMatcher
from irsatrace.engine.resolver import IdentityResolver
from irsatrace.engine.resolver import service_accounts_for_role
from irsatrace.engine.sources import LogSource
from irsatrace.engine.sources import ServiceAccountSource
from irsatrace.engine.sources import SnapshotSource
from irsatrace.engine.sources import bounded_fetch
from irsatrace.errors import BundleAlreadyFinalized
from irsatrace.errors import MalformedRecord
from irsatrace.errors import PipelineCancelled
from irsatrace.errors import UnresolvedIdentity
from irsatrace.errors import UpstreamTimeout
from irsatrace.journal.schemas import JournalEntry
from irsatrace.journal.schemas import JournalEntryType
from irsatrace.journal.schemas import RunTimeline
from irsatrace.journal.store import RunJournal
from irsatrace.models.bundle import EvidenceBundle
from irsatrace.models.events import AuditEvent
from irsatrace.models.matches import Finding
from irsatrace.models.matches import FindingKind
from irsatrace.models.matches import MatchConfidence
from irsatrace.models.matches import MatchResult
from irsatrace.models.matches import ResolvedIdentity
from irsatrace.models.workloads import ServiceAccountBinding
from irsatrace.models.workloads import WorkloadRecord
from irsatrace.observability import stage_metrics_snapshot
from irsatrace.observability import timed_stage

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Run control and results
# ---------------------------------------------------------------------------


class CancellationToken:
    """Set by the operator; checked by the pipeline between stages."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class RunStatus(str, Enum):
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


@dataclass
class CorrelationRunResult:
    """Summary of a single correlation pass."""

    run_id: str
    incident_id: str
    status: RunStatus = RunStatus.completed
    records_fetched: int = 0
    events_ingested: int = 0
    records_skipped: int = 0
    skip_reasons: list[str] = field(default_factory=list)
    identities_resolved: int = 0
    unresolved_identities: int = 0
    flagged_pods: int = 0
    events: list[AuditEvent] = field(default_factory=list)
    matches: list[MatchResult] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)
    bundle: EvidenceBundle | None = None
    failed_stage: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def confidence_counts(self) -> dict[str, int]:
        counts = Counter(m.confidence.value for m in self.matches)
        return dict(sorted(counts.items()))


class DiagnosticReport(BaseModel):
    """What was ingested, what failed and why; written instead of a bundle."""

    run_id: str
    incident_id: str
    status: RunStatus
    failed_stage: str | None = None
    errors: list[str] = Field(default_factory=list)
    records_fetched: int = 0
    events_ingested: int = 0
    records_skipped: int = 0
    skip_reasons: list[str] = Field(default_factory=list)
    identities_resolved: int = 0
    unresolved_identities: int = 0
    flagged_pods: int = 0
    confidence_counts: dict[str, int] = Field(default_factory=dict)
    findings: list[Finding] = Field(default_factory=list)
    stage_metrics: dict[str, Any] = Field(default_factory=dict)
    timeline: RunTimeline | None = Field(
        default=None,
        description="Journal view of the run, when a journal was kept.",
    )

    @classmethod
    def from_run(
        cls,
        result: CorrelationRunResult,
        timeline: RunTimeline | None = None,
    ) -> DiagnosticReport:
        return cls(
            run_id=result.run_id,
            incident_id=result.incident_id,
            status=result.status,
            failed_stage=result.failed_stage,
            errors=list(result.errors),
            records_fetched=result.records_fetched,
            events_ingested=result.events_ingested,
            records_skipped=result.records_skipped,
            skip_reasons=list(result.skip_reasons),
            identities_resolved=result.identities_resolved,
            unresolved_identities=result.unresolved_identities,
            flagged_pods=result.flagged_pods,
            confidence_counts=result.confidence_counts,
            findings=list(result.findings),
            stage_metrics=stage_metrics_snapshot(),
            timeline=timeline,
        )


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------


def _finding(kind: FindingKind, event: AuditEvent, detail: str, **extra: Any) -> Finding:
    return Finding(
        kind=kind,
        event_id=event.event_id,
        event_name=event.event_name,
        event_time=event.event_time,
        detail=detail,
        **extra,
    )


def _pod_list(records: Sequence[WorkloadRecord]) -> str:
    return ", ".join(f"{r.namespace}/{r.pod_name}" for r in records)


def findings_for_match(result: MatchResult, identity: ResolvedIdentity) -> list[Finding]:
    """Flag every correlation outcome a human has to look at."""
    event = result.event
    findings: list[Finding] = []
    if result.confidence is MatchConfidence.address_only:
        own = [
            c
            for c in result.candidates
            if c.namespace == identity.namespace
            and c.service_account == identity.service_account
        ]
        others = [c for c in result.candidates if c not in own]
        if others:
            detail = (
                f"{event.source_address} matches {_pod_list(others)} but not the "
                f"claimed identity {event.principal_subject!r}: possible spoofing "
                "or stale snapshot"
            )
        else:
            detail = (
                f"{event.source_address} was held by the claimed identity "
                f"{event.principal_subject!r} ({_pod_list(own)}) only outside its "
                "observed windows: stale snapshot or clock skew"
            )
        findings.append(_finding(FindingKind.address_only_match, event, detail))
    elif result.confidence is MatchConfidence.none:
        findings.append(
            _finding(
                FindingKind.no_match,
                event,
                f"no workload in the snapshot matches {event.principal_subject!r} "
                f"from {event.source_address}",
            )
        )
    if result.ambiguous:
        findings.append(
            _finding(
                FindingKind.ambiguous_match,
                event,
                f"{len(result.candidates)} {result.confidence.value} candidates "
                f"({_pod_list(result.candidates)}); manual review required",
            )
        )
    return findings


def findings_for_unresolved(
    exc: UnresolvedIdentity, bindings: Sequence[ServiceAccountBinding] = ()
) -> Finding:
    """Finding for an event made by a non-workload principal.

    Assumed-role sessions name their role; service accounts annotated with
    that role are listed as leads.
    """
    kind = (
        FindingKind.static_credential
        if exc.static_credential
        else FindingKind.unresolved_identity
    )
    session = exc.session
    if session is None:
        return _finding(kind, exc.event, str(exc))
    accounts = service_accounts_for_role(session, bindings)
    detail = str(exc)
    if accounts:
        detail += f"; role bound to {', '.join(accounts)}"
    return _finding(
        kind,
        exc.event,
        detail,
        role_name=session.role_name,
        session_name=session.session_name,
        service_accounts=accounts,
    )


def findings_for_snapshot(snapshot: Sequence[WorkloadRecord]) -> list[Finding]:
    """One finding per pod whose spec sets static AWS credentials."""
    findings: dict[tuple[str, str], Finding] = {}
    for record in snapshot:
        key = (record.namespace, record.pod_name)
        if not record.credential_env or key in findings:
            continue
        findings[key] = Finding(
            kind=FindingKind.static_credential_env,
            namespace=record.namespace,
            pod_name=record.pod_name,
            detail=(
                f"pod {record.namespace}/{record.pod_name} "
                f"(service account {record.service_account}) sets "
                f"{', '.join(record.credential_env)} in its spec"
            ),
        )
    return [findings[key] for key in sorted(findings)]


# ---------------------------------------------------------------------------
# CorrelationPipeline
# ---------------------------------------------------------------------------


class CorrelationPipeline:
    """Run Ingest -> Resolver -> Matcher -> Bundler for one investigation."""

    def __init__(
        self,
        bundler: EvidenceBundler,
        *,
        config: CorrelationConfig | None = None,
        mapping: FieldMapping | None = None,
        journal: RunJournal | None = None,
    ) -> None:
        self._config = config or CorrelationConfig()
        self._ingestor = EventIngestor(mapping)
        self._resolver = IdentityResolver(self._config)
        self._matcher = WorkloadMatcher(self._config)
        self._bundler = bundler
        self._journal = journal

    async def run(
        self,
        incident_id: str,
        log_sources: Sequence[LogSource],
        snapshot_source: SnapshotSource,
        *,
        account_source: ServiceAccountSource | None = None,
        artifacts: Mapping[str, bytes] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CorrelationRunResult:
        """Execute one correlation pass.

        Timeouts, unreadable inputs and cancellation end the run with
        ``status`` set and no bundle. ``BundleAlreadyFinalized`` is raised:
        re-running a closed incident is a caller error.
        """
        result = CorrelationRunResult(
            run_id=f"run_{uuid.uuid4().hex[:12]}", incident_id=incident_id
        )
        token = cancel_token or CancellationToken()
        await self._log(result, JournalEntryType.RUN_STARTED, None, {})

        stage = "fetch_logs"
        try:
            # --- Fetch + ingest ---
            self._checkpoint(token, stage)
            with timed_stage(stage):
                shards = [
                    await bounded_fetch(
                        stage, source.fetch_records(), self._config.timeout_seconds
                    )
                    for source in log_sources
                ]
            result.records_fetched = sum(len(shard) for shard in shards)

            stage = "ingest"
            self._checkpoint(token, stage)
            with timed_stage(stage):
                ingested = self._ingestor.ingest_shards(shards)
            result.events = ingested.events
            result.events_ingested = len(ingested.events)
            result.records_skipped = ingested.skipped
            result.skip_reasons.extend(ingested.skip_reasons)
            await self._log(
                result,
                JournalEntryType.INGEST_COMPLETED,
                stage,
                {"events": result.events_ingested, "skipped": result.records_skipped},
            )

            # --- Snapshot ---
            stage = "fetch_snapshot"
            self._checkpoint(token, stage)
            with timed_stage(stage):
                snapshot = tuple(
                    await bounded_fetch(
                        stage,
                        snapshot_source.fetch_snapshot(),
                        self._config.timeout_seconds,
                    )
                )
                bindings: tuple[ServiceAccountBinding, ...] = ()
                if account_source is not None:
                    bindings = tuple(
                        await bounded_fetch(
                            stage,
                            account_source.fetch_service_accounts(),
                            self._config.timeout_seconds,
                        )
                    )
            await self._flag_snapshot(result, snapshot, stage)

            # --- Resolve ---
            stage = "resolve"
            self._checkpoint(token, stage)
            with timed_stage(stage):
                identities = await self._resolve_all(result, bindings)

            # --- Match ---
            stage = "match"
            self._checkpoint(token, stage)
            with timed_stage(stage):
                await self._match_all(result, identities, snapshot)

            # --- Bundle ---
            stage = "bundle"
            self._checkpoint(token, stage)
            with timed_stage(stage):
                result.bundle = await asyncio.to_thread(
                    self._bundler.finalize,
                    incident_id,
                    result.matches,
                    artifacts,
                    events=result.events,
                    findings=result.findings,
                )
        except PipelineCancelled as exc:
            result.status = RunStatus.cancelled
            result.failed_stage = exc.stage
            result.errors.append(str(exc))
            logger.warning("run cancelled run_id=%s before=%s", result.run_id, exc.stage)
            await self._log(result, JournalEntryType.RUN_CANCELLED, exc.stage, {})
            return result
        except BundleAlreadyFinalized as exc:
            result.status = RunStatus.failed
            result.failed_stage = stage
            result.errors.append(str(exc))
            await self._log(result, JournalEntryType.RUN_FAILED, stage, {"error": str(exc)})
            raise
        except (UpstreamTimeout, OSError, ValueError) as exc:
            result.status = RunStatus.failed
            result.failed_stage = stage
            result.errors.append(f"{type(exc).__name__}: {exc}")
            logger.error("run failed run_id=%s stage=%s error=%s", result.run_id, stage, exc)
            await self._log(result, JournalEntryType.RUN_FAILED, stage, {"error": str(exc)})
            return result

        await self._log(
            result,
            JournalEntryType.BUNDLE_FINALIZED,
            stage,
            {
                "integrity_hash": result.bundle.integrity_hash,
                "confidence_counts": result.confidence_counts,
            },
        )
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _flag_snapshot(
        self,
        result: CorrelationRunResult,
        snapshot: tuple[WorkloadRecord, ...],
        stage: str,
    ) -> None:
        flagged = findings_for_snapshot(snapshot)
        result.flagged_pods = len(flagged)
        result.findings.extend(flagged)
        for finding in flagged:
            logger.warning("static credentials in pod spec: %s", finding.detail)
            await self._log(
                result,
                JournalEntryType.SNAPSHOT_FLAGGED,
                stage,
                {"namespace": finding.namespace, "pod_name": finding.pod_name},
            )

    async def _resolve_all(
        self,
        result: CorrelationRunResult,
        bindings: tuple[ServiceAccountBinding, ...],
    ) -> list[ResolvedIdentity]:
        identities: list[ResolvedIdentity] = []
        for event in result.events:
            try:
                identities.append(self._resolver.resolve(event))
            except UnresolvedIdentity as exc:
                result.unresolved_identities += 1
                finding = findings_for_unresolved(exc, bindings)
                result.findings.append(finding)
                payload: dict[str, Any] = {
                    "event_id": event.event_id,
                    "kind": finding.kind.value,
                    "detail": finding.detail,
                }
                if finding.role_name:
                    payload["role_name"] = finding.role_name
                    payload["service_accounts"] = list(finding.service_accounts)
                await self._log(
                    result, JournalEntryType.IDENTITY_UNRESOLVED, "resolve", payload
                )
            except MalformedRecord as exc:
                result.records_skipped += 1
                result.skip_reasons.append(f"event {event.event_id}: {exc.reason}")
                logger.warning("unparseable identity in event %s: %s", event.event_id, exc)
        result.identities_resolved = len(identities)
        return identities

    async def _match_all(
        self,
        result: CorrelationRunResult,
        identities: list[ResolvedIdentity],
        snapshot: tuple[WorkloadRecord, ...],
    ) -> None:
        for identity in identities:
            for match in self._matcher.correlate(identity, snapshot):
                result.matches.append(match)
                result.findings.extend(findings_for_match(match, identity))
                if match.needs_review:
                    await self._log(
                        result,
                        JournalEntryType.MATCH_FLAGGED,
                        "match",
                        {
                            "event_id": match.event.event_id,
                            "confidence": match.confidence.value,
                            "candidates": [c.pod_name for c in match.candidates],
                        },
                    )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _checkpoint(token: CancellationToken, stage: str) -> None:
        if token.cancelled:
            raise PipelineCancelled(stage)

    async def _log(
        self,
        result: CorrelationRunResult,
        entry_type: JournalEntryType,
        stage: str | None,
        payload: dict,
    ) -> None:
        if self._journal is None:
            return
        await self._journal.record(
            JournalEntry(
                run_id=result.run_id,
                incident_id=result.incident_id,
                entry_type=entry_type,
                stage=stage,
                payload=payload,
            )
        )
