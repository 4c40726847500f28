"""Workload matching against a cluster-state snapshot.

The matcher is **pure logic**: it takes a resolved identity plus a snapshot
of ``WorkloadRecord`` objects and returns a ``MatchResult``. It never guesses:

    1. Identity filter: namespace and service account, case-sensitive
    2. Time filter: the observed window contains the event time (± slop)
    3. Address check: pod address equals the event's source address
       -> ``exact``; time/identity matches without it -> ``identity_only``
    4. No active identity match, but the address appears in the snapshot
       -> ``address_only`` (possible spoofing or a stale snapshot)
    5. Nothing -> ``none``

Several candidates at the same level are all returned, ordered by pod name,
and flagged for review. A stale or incomplete snapshot degrades confidence;
it is not treated as an error.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from datetime import timedelta

from irsatrace.config import CorrelationConfig
from irsatrace.models.matches import MatchConfidence
from irsatrace.models.matches import MatchResult
from irsatrace.models.matches import ResolvedIdentity
from irsatrace.models.workloads import WorkloadRecord

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _ordered(records: Iterable[WorkloadRecord]) -> tuple[WorkloadRecord, ...]:
    return tuple(
        sorted(records, key=lambda r: (r.pod_name, r.observed_window.start))
    )


def _same_identity(record: WorkloadRecord, identity: ResolvedIdentity) -> bool:
    return (
        record.namespace == identity.namespace
        and record.service_account == identity.service_account
    )


def find_window_overlaps(
    snapshot: Iterable[WorkloadRecord],
) -> list[tuple[WorkloadRecord, WorkloadRecord]]:
    """Return every pair of records for one pod whose windows overlap.

    A clean snapshot returns an empty list. Pairs are ordered by pod name,
    then window start.
    """
    by_pod: dict[str, list[WorkloadRecord]] = defaultdict(list)
    for record in snapshot:
        by_pod[record.pod_name].append(record)

    overlaps: list[tuple[WorkloadRecord, WorkloadRecord]] = []
    for _pod_name, records in sorted(by_pod.items()):
        ordered = _ordered(records)
        for i, first in enumerate(ordered):
            for second in ordered[i + 1 :]:
                if first.observed_window.overlaps(second.observed_window):
                    overlaps.append((first, second))
    return overlaps


# ---------------------------------------------------------------------------
# WorkloadMatcher
# ---------------------------------------------------------------------------


class WorkloadMatcher:
    """Correlate a resolved identity with snapshot workloads."""

    def __init__(self, config: CorrelationConfig | None = None) -> None:
        self._config = config or CorrelationConfig()
        self._slop = timedelta(seconds=self._config.time_window_slop_seconds)

    def match(
        self,
        identity: ResolvedIdentity,
        snapshot: Iterable[WorkloadRecord],
    ) -> MatchResult:
        """Return the primary correlation outcome for *identity*."""
        return self.correlate(identity, snapshot)[0]

    def correlate(
        self,
        identity: ResolvedIdentity,
        snapshot: Iterable[WorkloadRecord],
    ) -> list[MatchResult]:
        """Return the primary outcome, then any secondary flagged outcome.

        When the primary outcome is ``identity_only`` and the source address
        belongs to a *different* identity active at the event time, that is
        returned as a separate ``address_only`` result. Neither outcome is
        ranked above the other.
        """
        records = tuple(snapshot)
        t = identity.event_time
        address = identity.source_address

        identity_matches = [r for r in records if _same_identity(r, identity)]
        active = [
            r for r in identity_matches if r.observed_window.contains(t, self._slop)
        ]

        # --- Level 1: identity + time + address ---
        exact = [r for r in active if r.pod_address == address]
        if exact:
            notes: list[str] = []
            if len(exact) > 1:
                notes.append(
                    f"{len(exact)} workloads hold {address} as "
                    f"{identity.namespace}/{identity.service_account} at "
                    f"{t.isoformat()}; overlapping windows in snapshot, "
                    "manual review required"
                )
            return [self._result(identity, exact, MatchConfidence.exact, notes)]

        # --- Level 2: identity + time, address mismatch ---
        if active:
            primary = self._result(
                identity,
                active,
                MatchConfidence.identity_only,
                [f"no active {identity.namespace}/{identity.service_account} pod holds {address}"],
            )
            others = [
                r
                for r in records
                if r.pod_address == address
                and not _same_identity(r, identity)
                and r.observed_window.contains(t, self._slop)
            ]
            if not others:
                return [primary]
            secondary = self._result(
                identity,
                others,
                MatchConfidence.address_only,
                [f"{address} belonged to a different identity at {t.isoformat()}"],
            )
            return [primary, secondary]

        # --- Level 3: address only ---
        notes = []
        if identity_matches:
            notes.append(
                f"{identity.namespace}/{identity.service_account} is in the snapshot "
                f"but no window contains {t.isoformat()}"
            )
        by_address = [r for r in records if r.pod_address == address]
        in_window = [r for r in by_address if r.observed_window.contains(t, self._slop)]
        if in_window:
            notes.append(f"{address} is held by a different identity")
            return [
                self._result(identity, in_window, MatchConfidence.address_only, notes)
            ]
        if by_address:
            notes.append(
                f"{address} appears only outside observed windows; snapshot may be stale"
            )
            return [
                self._result(identity, by_address, MatchConfidence.address_only, notes)
            ]

        # --- Level 4: nothing ---
        return [self._result(identity, [], MatchConfidence.none, notes)]

    @staticmethod
    def _result(
        identity: ResolvedIdentity,
        candidates: list[WorkloadRecord],
        confidence: MatchConfidence,
        notes: list[str],
    ) -> MatchResult:
        ordered = _ordered(candidates)
        needs_review = confidence is not MatchConfidence.exact or len(ordered) > 1
        return MatchResult(
            event=identity.event,
            candidates=ordered,
            confidence=confidence,
            needs_review=needs_review,
            notes=tuple(notes),
        )
