"""Error taxonomy for a correlation pass.

Record-level errors (``MalformedRecord``, ``UnresolvedIdentity``) are
recovered locally by the pipeline. Stage-level errors abort the run without
finalizing a bundle.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from irsatrace.models.events import AuditEvent
    from irsatrace.models.matches import RoleSession


class CorrelationError(Exception):
    """Base class for every error raised by irsatrace."""


class MalformedRecord(CorrelationError):
    """A raw record is missing a required field or has an unparseable time."""

    def __init__(self, reason: str, *, index: int | None = None) -> None:
        self.reason = reason
        self.index = index
        prefix = f"record {index}: " if index is not None else ""
        super().__init__(f"{prefix}{reason}")


class UnresolvedIdentity(CorrelationError):
    """The event was made by a principal that is not a workload identity.

    This is a finding, not a parse failure: the event was understood, but it
    cannot be attributed to a pod.
    """

    def __init__(
        self,
        event: AuditEvent,
        *,
        static_credential: bool,
        session: RoleSession | None = None,
    ) -> None:
        self.event = event
        self.static_credential = static_credential
        self.session = session
        kind = "static long-lived credential" if static_credential else "non-workload principal"
        if session is not None:
            kind += f"; role {session.role_name}"
            if session.session_name:
                kind += f", session {session.session_name}"
        super().__init__(
            f"{event.event_name} by {event.identity_type_name or 'untyped principal'} "
            f"{event.principal_subject!r} ({kind})"
        )


class UpstreamTimeout(CorrelationError):
    """An external fetch did not complete within the configured timeout."""

    def __init__(self, stage: str, timeout_seconds: float) -> None:
        self.stage = stage
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{stage} fetch exceeded {timeout_seconds:g}s")


class PipelineCancelled(CorrelationError):
    """The operator cancelled the run between stages."""

    def __init__(self, stage: str) -> None:
        self.stage = stage
        super().__init__(f"run cancelled before {stage}")


class BundleAlreadyFinalized(CorrelationError):
    """A bundle for this incident id has already been written."""

    def __init__(self, incident_id: str) -> None:
        self.incident_id = incident_id
        super().__init__(f"bundle {incident_id!r} is already finalized")


class BundleIntegrityError(CorrelationError):
    """A stored bundle no longer matches its recorded integrity hash."""
