"""Command-line entry point.

Usage:
    irsatrace correlate --incident-id INC-42 \
      --logs cloudtrail.json --snapshot pods.json \
      --service-accounts serviceaccounts.json --journal journal.jsonl \
      --output-dir evidence --artifact role-policy=policy.json

    irsatrace verify --incident-id INC-42 --output-dir evidence \
      --journal journal.jsonl

Exit codes: 0 on success, 1 when the run failed (a diagnostic report is
written instead of a bundle) or verification failed, 2 on usage errors.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
from pathlib import Path

from irsatrace.config import BundleConfig
from irsatrace.config import CorrelationConfig
from irsatrace.config import FieldMapping
from irsatrace.config import JournalConfig
from irsatrace.config import flat_field_mapping
from irsatrace.engine.bundler import BundleStore
from irsatrace.engine.bundler import EvidenceBundler
from irsatrace.engine.pipeline import CancellationToken
from irsatrace.engine.pipeline import CorrelationPipeline
from irsatrace.engine.pipeline import DiagnosticReport
from irsatrace.engine.pipeline import RunStatus
from irsatrace.engine.sources import JsonLogFile
from irsatrace.engine.sources import JsonServiceAccountFile
from irsatrace.engine.sources import JsonSnapshotFile
from irsatrace.errors import BundleAlreadyFinalized
from irsatrace.errors import BundleIntegrityError
from irsatrace.journal.store import RunJournal

logger = logging.getLogger("irsatrace")

EXIT_OK = 0
EXIT_FAILED = 1


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="irsatrace")
    parser.add_argument("--log-level", default="WARNING")
    sub = parser.add_subparsers(dest="command", required=True)

    correlate = sub.add_parser("correlate", help="run one correlation pass")
    correlate.add_argument("--incident-id", required=True)
    correlate.add_argument(
        "--logs",
        action="append",
        required=True,
        help="CloudTrail JSON/JSONL file; repeat for several shards",
    )
    correlate.add_argument("--snapshot", required=True)
    correlate.add_argument(
        "--service-accounts",
        default=None,
        metavar="PATH",
        help="kubectl service account list; maps assumed roles to accounts",
    )
    correlate.add_argument("--output-dir", default=BundleConfig.output_dir)
    correlate.add_argument(
        "--artifact",
        action="append",
        default=[],
        metavar="NAME=PATH",
        help="raw artifact to include in the bundle",
    )
    correlate.add_argument("--identity-prefix", default=CorrelationConfig.identity_prefix)
    correlate.add_argument(
        "--slop", type=float, default=CorrelationConfig.time_window_slop_seconds
    )
    correlate.add_argument(
        "--timeout", type=float, default=CorrelationConfig.timeout_seconds
    )
    correlate.add_argument(
        "--flat-records",
        action="store_true",
        help="records use flat keys (event_time, principal_subject, ...)",
    )
    correlate.add_argument("--journal", default=None)
    correlate.add_argument("--report", default=None)

    verify = sub.add_parser("verify", help="check a finalized bundle's integrity")
    verify.add_argument("--incident-id", required=True)
    verify.add_argument("--output-dir", default=BundleConfig.output_dir)
    verify.add_argument(
        "--journal", default=None, help="report which journaled run wrote the bundle"
    )

    return parser.parse_args(argv)


def _load_artifacts(specs: list[str]) -> dict[str, bytes]:
    artifacts: dict[str, bytes] = {}
    for spec in specs:
        name, sep, path = spec.partition("=")
        if not sep or not name or not path:
            msg = f"artifact must be NAME=PATH, got {spec!r}"
            raise ValueError(msg)
        artifacts[name] = Path(path).read_bytes()
    return artifacts


def _emit(payload: dict) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=True))


def _write_report(path: Path, report: DiagnosticReport) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(report.model_dump_json(indent=2) + "\n", encoding="utf-8")


async def _correlate(args: argparse.Namespace) -> int:
    config = CorrelationConfig(
        identity_prefix=args.identity_prefix,
        time_window_slop_seconds=args.slop,
        timeout_seconds=args.timeout,
    )
    mapping = flat_field_mapping() if args.flat_records else FieldMapping()
    store = BundleStore(BundleConfig(output_dir=args.output_dir))
    journal = (
        RunJournal(JournalConfig(file_path=args.journal)) if args.journal else None
    )
    pipeline = CorrelationPipeline(
        EvidenceBundler(store), config=config, mapping=mapping, journal=journal
    )
    report_path = (
        Path(args.report)
        if args.report
        else Path(args.output_dir) / f"{args.incident_id}.diagnostic.json"
    )

    try:
        artifacts = _load_artifacts(args.artifact)
    except (OSError, ValueError) as exc:
        logger.error("cannot read artifacts: %s", exc)
        return EXIT_FAILED

    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGINT cancellation unavailable on this platform")

    try:
        result = await pipeline.run(
            args.incident_id,
            [JsonLogFile(path) for path in args.logs],
            JsonSnapshotFile(args.snapshot),
            account_source=(
                JsonServiceAccountFile(args.service_accounts)
                if args.service_accounts
                else None
            ),
            artifacts=artifacts,
            cancel_token=token,
        )
    except BundleAlreadyFinalized as exc:
        logger.error("%s", exc)
        _emit({"incident_id": args.incident_id, "status": "failed", "error": str(exc)})
        return EXIT_FAILED

    timeline = await journal.timeline(result.run_id) if journal is not None else None
    report = DiagnosticReport.from_run(result, timeline)
    if result.status is not RunStatus.completed or result.bundle is None:
        _write_report(report_path, report)
        _emit(report.model_dump(mode="json"))
        return EXIT_FAILED

    _emit(
        {
            "incident_id": result.incident_id,
            "run_id": result.run_id,
            "status": result.status.value,
            "bundle": str(store.path_for(result.incident_id)),
            "integrity_hash": result.bundle.integrity_hash,
            "events_ingested": result.events_ingested,
            "records_skipped": result.records_skipped,
            "flagged_pods": result.flagged_pods,
            "confidence_counts": result.confidence_counts,
            "findings": [f.model_dump(mode="json") for f in result.findings],
        }
    )
    return EXIT_OK


async def _verify(args: argparse.Namespace) -> int:
    store = BundleStore(BundleConfig(output_dir=args.output_dir))
    try:
        bundle = store.load(args.incident_id)
    except (BundleIntegrityError, OSError, ValueError) as exc:
        _emit({"incident_id": args.incident_id, "verified": False, "error": str(exc)})
        return EXIT_FAILED
    payload: dict = {
        "incident_id": bundle.incident_id,
        "verified": True,
        "integrity_hash": bundle.integrity_hash,
        "events": len(bundle.events),
        "matches": len(bundle.matches),
        "findings": len(bundle.findings),
    }
    if args.journal:
        journal = RunJournal(JournalConfig(file_path=args.journal))
        finalizing = await journal.finalizing_run(bundle.incident_id)
        payload["finalized_by"] = finalizing.run_id if finalizing else None
        if finalizing is not None and finalizing.integrity_hash != bundle.integrity_hash:
            payload["verified"] = False
            payload["error"] = (
                f"journal records hash {finalizing.integrity_hash} for run "
                f"{finalizing.run_id}, bundle holds {bundle.integrity_hash}"
            )
            _emit(payload)
            return EXIT_FAILED
    _emit(payload)
    return EXIT_OK


async def _main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command == "verify":
        return await _verify(args)
    return await _correlate(args)


def main() -> None:
    raise SystemExit(asyncio.run(_main()))


if __name__ == "__main__":
    main()
