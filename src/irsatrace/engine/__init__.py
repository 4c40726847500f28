"""Engine domain: the four pipeline stages and their orchestrator."""

from irsatrace.engine.bundler import BundleStore
from irsatrace.engine.bundler import EvidenceBundler
from irsatrace.engine.bundler import bundle_digest
from irsatrace.engine.ingest import EventIngestor
from irsatrace.engine.ingest import IngestRun
from irsatrace.engine.ingest import ShardedIngestResult
from irsatrace.engine.ingest import merge_by_event_time
from irsatrace.engine.ingest import parse_instant
from irsatrace.engine.matcher import WorkloadMatcher
from irsatrace.engine.matcher import find_window_overlaps
from irsatrace.engine.pipeline import CancellationToken
from irsatrace.engine.pipeline import CorrelationPipeline
from irsatrace.engine.pipeline import CorrelationRunResult
from irsatrace.engine.pipeline import DiagnosticReport
from irsatrace.engine.pipeline import RunStatus
from irsatrace.engine.pipeline import findings_for_match
from irsatrace.engine.pipeline import findings_for_snapshot
from irsatrace.engine.pipeline import findings_for_unresolved
from irsatrace.engine.resolver import IdentityResolver
from irsatrace.engine.resolver import parse_role_session
from irsatrace.engine.resolver import service_accounts_for_role
from irsatrace.engine.resolver import split_subject
from irsatrace.engine.sources import JsonLogFile
from irsatrace.engine.sources import JsonServiceAccountFile
from irsatrace.engine.sources import JsonSnapshotFile
from irsatrace.engine.sources import LogSource
from irsatrace.engine.sources import ServiceAccountSource
from irsatrace.engine.sources import SnapshotSource
from irsatrace.engine.sources import StaticLogSource
from irsatrace.engine.sources import StaticServiceAccountSource
from irsatrace.engine.sources import StaticSnapshotSource
from irsatrace.engine.sources import bounded_fetch
from irsatrace.engine.sources import cloudtrail_records
from irsatrace.engine.sources import service_accounts_from_list
from irsatrace.engine.sources import snapshot_from_payload
from irsatrace.engine.sources import workloads_from_pod_list

__all__ = [
    "BundleStore",
    "CancellationToken",
    "CorrelationPipeline",
    "CorrelationRunResult",
    "DiagnosticReport",
    "EventIngestor",
    "EvidenceBundler",
    "IdentityResolver",
    "IngestRun",
    "JsonLogFile",
    "JsonServiceAccountFile",
    "JsonSnapshotFile",
    "LogSource",
    "RunStatus",
    "ServiceAccountSource",
    "ShardedIngestResult",
    "SnapshotSource",
    "StaticLogSource",
    "StaticServiceAccountSource",
    "StaticSnapshotSource",
    "WorkloadMatcher",
    "bounded_fetch",
    "bundle_digest",
    "cloudtrail_records",
    "find_window_overlaps",
    "findings_for_match",
    "findings_for_snapshot",
    "findings_for_unresolved",
    "merge_by_event_time",
    "parse_instant",
    "parse_role_session",
    "service_accounts_for_role",
    "service_accounts_from_list",
    "snapshot_from_payload",
    "split_subject",
    "workloads_from_pod_list",
]
