"""Resolution and correlation results.

Only ``MatchConfidence.exact`` ties an event to a workload with identity,
address and time corroboration. Every other confidence is advisory: callers
must treat it as a lead for a human, never as proof.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel
from pydantic import Field

from irsatrace.models.events import AuditEvent
from irsatrace.models.workloads import WorkloadRecord

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class MatchConfidence(str, Enum):
    """How strongly a candidate workload is tied to an event."""

    exact = "exact"
    address_only = "address_only"
    identity_only = "identity_only"
    none = "none"


class FindingKind(str, Enum):
    """Conditions that must be shown to the operator."""

    unresolved_identity = "unresolved_identity"
    static_credential = "static_credential"
    address_only_match = "address_only_match"
    ambiguous_match = "ambiguous_match"
    no_match = "no_match"
    static_credential_env = "static_credential_env"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class ResolvedIdentity(BaseModel):
    """Workload identity extracted from one event."""

    model_config = {"frozen": True}

    event: AuditEvent
    namespace: str
    service_account: str
    source_address: str
    event_time: datetime


class MatchResult(BaseModel):
    """Candidates for one event and the confidence of the correlation."""

    model_config = {"frozen": True}

    event: AuditEvent
    candidates: tuple[WorkloadRecord, ...] = ()
    confidence: MatchConfidence = MatchConfidence.none
    needs_review: bool = Field(
        default=True,
        description="Set for every advisory or ambiguous result.",
    )
    notes: tuple[str, ...] = ()

    @property
    def advisory(self) -> bool:
        return self.confidence is not MatchConfidence.exact

    @property
    def ambiguous(self) -> bool:
        return len(self.candidates) > 1


class RoleSession(BaseModel):
    """Role and session named by an ``assumed-role/<role>/<session>`` principal."""

    model_config = {"frozen": True}

    role_name: str
    session_name: str | None = None
    account_id: str | None = None
    role_arn: str | None = Field(
        default=None,
        description="IAM role ARN, from the session issuer or rebuilt from the STS ARN.",
    )


class Finding(BaseModel):
    """A flagged condition surfaced alongside the match results.

    Event findings carry the event fields; snapshot findings (pods holding
    static credentials) carry the pod fields instead.
    """

    model_config = {"frozen": True}

    kind: FindingKind
    detail: str
    event_id: str | None = None
    event_name: str | None = None
    event_time: datetime | None = None
    role_name: str | None = None
    session_name: str | None = None
    service_accounts: tuple[str, ...] = Field(
        default=(),
        description="``namespace/name`` of service accounts bound to the role.",
    )
    namespace: str | None = None
    pod_name: str | None = None
