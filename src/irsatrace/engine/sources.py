"""Pre-fetched inputs: audit-log records and cluster snapshots.

Sources read data that external tools already produced (CloudTrail
delivery files, ``aws cloudtrail lookup-events`` output, ``kubectl get pods
-o json`` and ``kubectl get serviceaccounts -o json`` output). Every fetch
goes through ``bounded_fetch`` so a slow upstream fails the stage with
``UpstreamTimeout`` instead of hanging.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable
from pathlib import Path
from typing import Any
from typing import Protocol
from typing import TypeVar
from typing import runtime_checkable

from pydantic import ValidationError

from irsatrace.engine.ingest import parse_instant
from irsatrace.errors import MalformedRecord
from irsatrace.errors import UpstreamTimeout
from irsatrace.models.workloads import ObservedWindow
from irsatrace.models.workloads import ServiceAccountBinding
from irsatrace.models.workloads import WorkloadRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Source protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class LogSource(Protocol):
    """Anything that can hand over raw audit-log records."""

    async def fetch_records(self) -> list[dict]: ...


@runtime_checkable
class SnapshotSource(Protocol):
    """Anything that can hand over a cluster-state snapshot."""

    async def fetch_snapshot(self) -> list[WorkloadRecord]: ...


@runtime_checkable
class ServiceAccountSource(Protocol):
    """Anything that can hand over service account role bindings."""

    async def fetch_service_accounts(self) -> list[ServiceAccountBinding]: ...


async def bounded_fetch(stage: str, fetch: Awaitable[T], timeout_seconds: float) -> T:
    """Await *fetch*, converting a timeout into ``UpstreamTimeout``."""
    try:
        return await asyncio.wait_for(fetch, timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        logger.error("fetch timed out stage=%s timeout=%.3fs", stage, timeout_seconds)
        raise UpstreamTimeout(stage, timeout_seconds) from exc


# ---------------------------------------------------------------------------
# CloudTrail payloads
# ---------------------------------------------------------------------------


def _s3_resources(record: dict) -> list[dict]:
    params = record.get("requestParameters")
    if not isinstance(params, dict):
        return []
    bucket = params.get("bucketName")
    if not isinstance(bucket, str) or not bucket:
        return []
    resources = [{"ARN": f"arn:aws:s3:::{bucket}", "type": "AWS::S3::Bucket"}]
    key = params.get("key")
    if isinstance(key, str) and key:
        resources.append({"ARN": f"arn:aws:s3:::{bucket}/{key}", "type": "AWS::S3::Object"})
    return resources


def _unwrap(item: Any) -> Any:
    if not isinstance(item, dict):
        return item
    embedded = item.get("CloudTrailEvent")
    if isinstance(embedded, str):
        try:
            item = json.loads(embedded)
        except json.JSONDecodeError:
            logger.warning("unparseable CloudTrailEvent in EventId=%s", item.get("EventId"))
            return item
    if isinstance(item, dict) and "resources" not in item:
        resources = _s3_resources(item)
        if resources:
            item = {**item, "resources": resources}
    return item


def cloudtrail_records(payload: Any) -> list:
    """Flatten a CloudTrail payload into a list of raw records.

    Accepts delivery files (``{"Records": [...]}``), ``lookup-events``
    output (``{"Events": [{"CloudTrailEvent": "<json>"}]}``), a bare list or
    a single record. Items that are not objects are passed through so that
    ingest counts them as malformed.
    """
    if isinstance(payload, dict):
        if isinstance(payload.get("Records"), list):
            items = payload["Records"]
        elif isinstance(payload.get("Events"), list):
            items = payload["Events"]
        else:
            items = [payload]
    elif isinstance(payload, list):
        items = payload
    else:
        msg = f"unsupported CloudTrail payload type: {type(payload).__name__}"
        raise ValueError(msg)
    return [_unwrap(item) for item in items]


# ---------------------------------------------------------------------------
# kubectl payloads
# ---------------------------------------------------------------------------

IRSA_ROLE_ANNOTATION = "eks.amazonaws.com/role-arn"
STATIC_CREDENTIAL_ENV = ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY")


def _mapping(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _finished_at(container_status: Any) -> str | None:
    terminated = _mapping(_mapping(_mapping(container_status).get("state")).get("terminated"))
    finished = terminated.get("finishedAt")
    return finished if isinstance(finished, str) and finished else None


def _pod_window(pod: dict) -> ObservedWindow:
    metadata = _mapping(pod.get("metadata"))
    status = _mapping(pod.get("status"))
    start_raw = status.get("startTime") or metadata.get("creationTimestamp")
    if start_raw is None:
        msg = "pod has no startTime or creationTimestamp"
        raise MalformedRecord(msg)
    start = parse_instant(start_raw)

    end_raw = metadata.get("deletionTimestamp")
    if end_raw is None and status.get("phase") in ("Succeeded", "Failed"):
        statuses = status.get("containerStatuses")
        finished = [
            instant
            for instant in map(_finished_at, statuses if isinstance(statuses, list) else [])
            if instant is not None
        ]
        if finished:
            end_raw = max(finished, key=parse_instant)
    end = parse_instant(end_raw) if end_raw is not None else None
    return ObservedWindow(start=start, end=end)


def _credential_env(spec: dict) -> tuple[str, ...]:
    """Static AWS credential variables set directly on any container."""
    names: set[str] = set()
    for group in ("initContainers", "containers"):
        containers = spec.get(group)
        for container in containers if isinstance(containers, list) else []:
            env = _mapping(container).get("env")
            for var in env if isinstance(env, list) else []:
                name = _mapping(var).get("name")
                if name in STATIC_CREDENTIAL_ENV:
                    names.add(name)
    return tuple(sorted(names))


def workloads_from_pod_list(payload: Any) -> list[WorkloadRecord]:
    """Convert ``kubectl get pods -o json`` output into workload records.

    Dual-stack pods yield one record per address. Pods without an address
    or a start time, and items that are not objects, are skipped with a
    warning.
    """
    items = payload.get("items", []) if isinstance(payload, dict) else payload
    records: list[WorkloadRecord] = []
    for index, pod in enumerate(items or []):
        if not isinstance(pod, dict):
            logger.warning("skipping pod list item %d: not an object", index)
            continue
        metadata = _mapping(pod.get("metadata"))
        spec = _mapping(pod.get("spec"))
        status = _mapping(pod.get("status"))
        name = metadata.get("name")
        pod_ips = status.get("podIPs")
        addresses = [
            entry["ip"]
            for entry in (pod_ips if isinstance(pod_ips, list) else [])
            if isinstance(entry, dict) and entry.get("ip")
        ] or ([status["podIP"]] if status.get("podIP") else [])
        if not name or not addresses:
            logger.warning("skipping pod without name or address: %s", name)
            continue
        try:
            window = _pod_window(pod)
        except MalformedRecord as exc:
            logger.warning("skipping pod %s: %s", name, exc)
            continue
        credential_env = _credential_env(spec)
        for address in addresses:
            records.append(
                WorkloadRecord(
                    namespace=metadata.get("namespace") or "default",
                    service_account=spec.get("serviceAccountName") or "default",
                    pod_name=name,
                    pod_address=address,
                    observed_window=window,
                    credential_env=credential_env,
                )
            )
    return records


def snapshot_from_payload(payload: Any) -> list[WorkloadRecord]:
    """Accept either a kubectl pod list or a list of record dicts."""
    if isinstance(payload, dict) and payload.get("kind") == "PodList":
        return workloads_from_pod_list(payload)
    if isinstance(payload, dict) and "items" in payload:
        return workloads_from_pod_list(payload)
    if not isinstance(payload, list):
        msg = f"unsupported snapshot payload type: {type(payload).__name__}"
        raise ValueError(msg)
    records: list[WorkloadRecord] = []
    for index, item in enumerate(payload):
        try:
            records.append(WorkloadRecord.model_validate(item))
        except ValidationError as exc:
            msg = f"snapshot entry {index} is invalid: {exc}"
            raise ValueError(msg) from exc
    return records


def service_accounts_from_list(payload: Any) -> list[ServiceAccountBinding]:
    """Role bindings from ``kubectl get serviceaccounts -o json`` output.

    Only accounts carrying the ``eks.amazonaws.com/role-arn`` annotation are
    returned. A plain list of ``{namespace, name, role_arn}`` objects is
    accepted too.
    """
    if isinstance(payload, dict):
        items = payload.get("items", [])
    elif isinstance(payload, list):
        items = payload
    else:
        msg = f"unsupported service account payload type: {type(payload).__name__}"
        raise ValueError(msg)
    bindings: list[ServiceAccountBinding] = []
    for index, item in enumerate(items or []):
        if not isinstance(item, dict):
            logger.warning("skipping service account item %d: not an object", index)
            continue
        if "role_arn" in item:
            try:
                bindings.append(ServiceAccountBinding.model_validate(item))
            except ValidationError as exc:
                msg = f"service account entry {index} is invalid: {exc}"
                raise ValueError(msg) from exc
            continue
        metadata = _mapping(item.get("metadata"))
        role_arn = _mapping(metadata.get("annotations")).get(IRSA_ROLE_ANNOTATION)
        name = metadata.get("name")
        if not role_arn or not name:
            continue
        bindings.append(
            ServiceAccountBinding(
                namespace=metadata.get("namespace") or "default",
                name=name,
                role_arn=role_arn,
            )
        )
    return bindings


# ---------------------------------------------------------------------------
# File-backed sources
# ---------------------------------------------------------------------------


def _read_json(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".jsonl":
        return [json.loads(line) for line in text.splitlines() if line.strip()]
    return json.loads(text)


class JsonLogFile:
    """Audit-log records from a CloudTrail JSON or JSONL file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def fetch_records(self) -> list[dict]:
        payload = await asyncio.to_thread(_read_json, self.path)
        return cloudtrail_records(payload)


class JsonSnapshotFile:
    """Cluster snapshot from a kubectl pod list or a record list."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def fetch_snapshot(self) -> list[WorkloadRecord]:
        payload = await asyncio.to_thread(_read_json, self.path)
        return snapshot_from_payload(payload)


class StaticLogSource:
    """In-memory records, for callers that fetched data themselves."""

    def __init__(self, records: list[dict]) -> None:
        self._records = records

    async def fetch_records(self) -> list[dict]:
        return list(self._records)


class StaticSnapshotSource:
    def __init__(self, records: list[WorkloadRecord]) -> None:
        self._records = records

    async def fetch_snapshot(self) -> list[WorkloadRecord]:
        return list(self._records)


class JsonServiceAccountFile:
    """Role bindings from a kubectl service account list or a binding list."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def fetch_service_accounts(self) -> list[ServiceAccountBinding]:
        payload = await asyncio.to_thread(_read_json, self.path)
        return service_accounts_from_list(payload)


class StaticServiceAccountSource:
    def __init__(self, bindings: list[ServiceAccountBinding]) -> None:
        self._bindings = bindings

    async def fetch_service_accounts(self) -> list[ServiceAccountBinding]:
        return list(self._bindings)
