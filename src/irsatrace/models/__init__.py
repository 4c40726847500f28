"""Layer 0 models: events, workloads, matches and bundles."""

from irsatrace.models.bundle import BundleManifest
from irsatrace.models.bundle import EvidenceBundle
from irsatrace.models.events import AuditEvent
from irsatrace.models.events import IdentityType
from irsatrace.models.matches import Finding
from irsatrace.models.matches import FindingKind
from irsatrace.models.matches import MatchConfidence
from irsatrace.models.matches import MatchResult
from irsatrace.models.matches import ResolvedIdentity
from irsatrace.models.matches import RoleSession
from irsatrace.models.workloads import ObservedWindow
from irsatrace.models.workloads import ServiceAccountBinding
from irsatrace.models.workloads import WorkloadRecord

__all__ = [
    "AuditEvent",
    "BundleManifest",
    "EvidenceBundle",
    "Finding",
    "FindingKind",
    "IdentityType",
    "MatchConfidence",
    "MatchResult",
    "ObservedWindow",
    "ResolvedIdentity",
    "RoleSession",
    "ServiceAccountBinding",
    "WorkloadRecord",
]
