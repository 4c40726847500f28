"""Evidence bundle and its archive manifest."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel
from pydantic import Field

from irsatrace.models.events import AuditEvent
from irsatrace.models.matches import Finding
from irsatrace.models.matches import MatchResult


class EvidenceBundle(BaseModel):
    """Finalized, write-once evidence for one investigation."""

    model_config = {"frozen": True}

    incident_id: str
    collected_at: datetime
    events: tuple[AuditEvent, ...] = ()
    matches: tuple[MatchResult, ...] = ()
    findings: tuple[Finding, ...] = ()
    artifacts: dict[str, bytes] = Field(
        default_factory=dict,
        description="Named raw artifacts (policy documents, log excerpts).",
    )
    integrity_hash: str = Field(description="sha256 hex digest of the content.")


class BundleManifest(BaseModel):
    """``manifest.json`` at the root of a bundle archive."""

    incident_id: str
    collected_at: datetime
    integrity_hash: str
    event_count: int = 0
    match_count: int = 0
    finding_count: int = 0
    confidence_counts: dict[str, int] = Field(default_factory=dict)
    artifact_digests: dict[str, str] = Field(
        default_factory=dict,
        description="Artifact name -> sha256 hex digest.",
    )
    tool_version: str = "irsatrace/0.1.0"
