"""Check a cluster snapshot before correlating.

Fails on overlapping pod windows and on pods that set static AWS credentials
in their spec.

Usage:
    uv run python scripts/check_snapshot.py \
      --snapshot snapshots/pods.json \
      --output reports/snapshot-check.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
from collections import Counter
from pathlib import Path

from irsatrace.engine.matcher import find_window_overlaps
from irsatrace.engine.pipeline import findings_for_snapshot
from irsatrace.engine.sources import JsonSnapshotFile
from irsatrace.models.workloads import WorkloadRecord


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    parser.add_argument("--snapshot", required=True)
    parser.add_argument("--output", default="reports/snapshot-check.json")
    return parser.parse_args()


def _describe(record: WorkloadRecord) -> dict:
    window = record.observed_window
    return {
        "namespace": record.namespace,
        "service_account": record.service_account,
        "pod_name": record.pod_name,
        "pod_address": record.pod_address,
        "start": window.start.isoformat(),
        "end": window.end.isoformat() if window.end is not None else None,
    }


def _shared_addresses(records: list[WorkloadRecord]) -> list[dict]:
    """Addresses used by more than one pod: legitimate after reuse, worth a look."""
    pods_by_address: dict[str, set[str]] = {}
    for record in records:
        pods_by_address.setdefault(record.pod_address, set()).add(record.pod_name)
    return [
        {"pod_address": address, "pods": sorted(pods)}
        for address, pods in sorted(pods_by_address.items())
        if len(pods) > 1
    ]


async def _main() -> int:
    args = _parse_args()
    snapshot_path = Path(args.snapshot)
    output_path = Path(args.output)

    records = await JsonSnapshotFile(snapshot_path).fetch_snapshot()
    overlaps = find_window_overlaps(records)
    credential_pods = findings_for_snapshot(records)
    identities = Counter(f"{r.namespace}/{r.service_account}" for r in records)

    report = {
        "input_snapshot": str(snapshot_path),
        "record_count": len(records),
        "pod_count": len({r.pod_name for r in records}),
        "identities": dict(sorted(identities.items())),
        "overlapping_windows": [
            {"first": _describe(a), "second": _describe(b)} for a, b in overlaps
        ],
        "shared_addresses": _shared_addresses(records),
        "static_credential_pods": [
            {"namespace": f.namespace, "pod_name": f.pod_name, "detail": f.detail}
            for f in credential_pods
        ],
        "overall_pass": not overlaps and not credential_pods,
    }

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as handle:
        json.dump(report, handle, indent=2, sort_keys=True, ensure_ascii=True)
        handle.write("\n")

    print(json.dumps(report, indent=2, sort_keys=True, ensure_ascii=True))
    return 0 if report["overall_pass"] else 1


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_main()))
