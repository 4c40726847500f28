"""Evidence bundler: write-once, hash-sealed investigation archives.

A bundle is one zip archive per incident::

    <incident_id>.zip
      manifest.json        BundleManifest (incident id, time, integrity hash)
      events.jsonl         one AuditEvent per line, in event-time order
      matches.jsonl        one MatchResult per line
      findings.jsonl       one Finding per line
      artifacts/<name>     raw artifact bytes

The integrity hash is a SHA-256 over the canonical JSON of everything except
the hash itself; artifacts contribute their own SHA-256.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
import zipfile
from collections import Counter
from collections.abc import Iterable
from collections.abc import Mapping
from collections.abc import Sequence
from datetime import datetime
from datetime import timezone
from pathlib import Path
from typing import IO

from pydantic import ValidationError

from irsatrace.config import BundleConfig
from irsatrace.errors import BundleAlreadyFinalized
from irsatrace.errors import BundleIntegrityError
from irsatrace.models.bundle import BundleManifest
from irsatrace.models.bundle import EvidenceBundle
from irsatrace.models.events import AuditEvent
from irsatrace.models.matches import Finding
from irsatrace.models.matches import MatchResult

logger = logging.getLogger(__name__)

_INCIDENT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_ARTIFACT_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*(/[A-Za-z0-9][A-Za-z0-9._-]*)*$")

_MANIFEST = "manifest.json"
_EVENTS = "events.jsonl"
_MATCHES = "matches.jsonl"
_FINDINGS = "findings.jsonl"
_ARTIFACTS_DIR = "artifacts/"

# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def bundle_digest(
    *,
    incident_id: str,
    collected_at: datetime,
    events: Sequence[AuditEvent],
    matches: Sequence[MatchResult],
    findings: Sequence[Finding],
    artifacts: Mapping[str, bytes],
) -> str:
    """Content-addressed integrity hash of a bundle."""
    content = {
        "incident_id": incident_id,
        "collected_at": collected_at.isoformat(),
        "events": [e.model_dump(mode="json") for e in events],
        "matches": [m.model_dump(mode="json") for m in matches],
        "findings": [f.model_dump(mode="json") for f in findings],
        "artifacts": {name: _sha256(artifacts[name]) for name in sorted(artifacts)},
    }
    canonical = json.dumps(
        content, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str
    )
    return _sha256(canonical.encode("utf-8"))


def _validate_incident_id(incident_id: str) -> str:
    if not _INCIDENT_ID_RE.match(incident_id):
        msg = f"invalid incident id {incident_id!r}: use letters, digits, '.', '_', '-'"
        raise ValueError(msg)
    return incident_id


def _validate_artifact_name(name: str) -> str:
    if not _ARTIFACT_NAME_RE.match(name):
        msg = f"invalid artifact name {name!r}"
        raise ValueError(msg)
    return name


# ---------------------------------------------------------------------------
# BundleStore
# ---------------------------------------------------------------------------


class BundleStore:
    """Directory of finalized bundle archives.

    Writes are all-or-nothing: the archive is built in a temp file in the
    same directory, fsynced, then hard-linked to its final name. The link
    fails if the name exists, so two writers cannot both finalize one id.
    """

    def __init__(self, config: BundleConfig | None = None) -> None:
        self.config = config or BundleConfig()

    @property
    def directory(self) -> Path:
        return Path(self.config.output_dir)

    def path_for(self, incident_id: str) -> Path:
        return self.directory / f"{_validate_incident_id(incident_id)}.zip"

    def exists(self, incident_id: str) -> bool:
        return self.path_for(incident_id).exists()

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def write(self, bundle: EvidenceBundle) -> Path:
        """Persist *bundle*; raise ``BundleAlreadyFinalized`` if present."""
        final_path = self.path_for(bundle.incident_id)
        if final_path.exists():
            raise BundleAlreadyFinalized(bundle.incident_id)

        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{bundle.incident_id}.", suffix=".partial", dir=self.directory
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as handle:
                self._write_archive(handle, bundle)
                handle.flush()
                os.fsync(handle.fileno())
            try:
                os.link(tmp_path, final_path)
            except FileExistsError as exc:
                raise BundleAlreadyFinalized(bundle.incident_id) from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        return final_path

    @staticmethod
    def _write_archive(handle: IO[bytes], bundle: EvidenceBundle) -> None:
        confidence_counts = Counter(m.confidence.value for m in bundle.matches)
        manifest = BundleManifest(
            incident_id=bundle.incident_id,
            collected_at=bundle.collected_at,
            integrity_hash=bundle.integrity_hash,
            event_count=len(bundle.events),
            match_count=len(bundle.matches),
            finding_count=len(bundle.findings),
            confidence_counts=dict(sorted(confidence_counts.items())),
            artifact_digests={
                name: _sha256(bundle.artifacts[name]) for name in sorted(bundle.artifacts)
            },
        )
        stamp = bundle.collected_at.astimezone(timezone.utc).timetuple()[:6]

        def _entry(name: str) -> zipfile.ZipInfo:
            info = zipfile.ZipInfo(name, date_time=stamp)
            info.compress_type = zipfile.ZIP_DEFLATED
            return info

        def _jsonl(models: Iterable) -> str:
            return "".join(m.model_dump_json() + "\n" for m in models)

        with zipfile.ZipFile(handle, "w") as archive:
            archive.writestr(_entry(_MANIFEST), manifest.model_dump_json(indent=2) + "\n")
            archive.writestr(_entry(_EVENTS), _jsonl(bundle.events))
            archive.writestr(_entry(_MATCHES), _jsonl(bundle.matches))
            archive.writestr(_entry(_FINDINGS), _jsonl(bundle.findings))
            for name in sorted(bundle.artifacts):
                archive.writestr(_entry(_ARTIFACTS_DIR + name), bundle.artifacts[name])

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def load(self, incident_id: str) -> EvidenceBundle:
        """Read a finalized bundle back and verify its integrity hash."""
        path = self.path_for(incident_id)
        try:
            with zipfile.ZipFile(path) as archive:
                manifest = BundleManifest.model_validate_json(archive.read(_MANIFEST))
                events = self._read_jsonl(archive, _EVENTS, AuditEvent)
                matches = self._read_jsonl(archive, _MATCHES, MatchResult)
                findings = self._read_jsonl(archive, _FINDINGS, Finding)
                artifacts = {
                    name[len(_ARTIFACTS_DIR) :]: archive.read(name)
                    for name in archive.namelist()
                    if name.startswith(_ARTIFACTS_DIR)
                }
        except (KeyError, zipfile.BadZipFile, ValidationError) as exc:
            msg = f"bundle {incident_id!r} is unreadable: {exc}"
            raise BundleIntegrityError(msg) from exc

        digest = bundle_digest(
            incident_id=manifest.incident_id,
            collected_at=manifest.collected_at,
            events=events,
            matches=matches,
            findings=findings,
            artifacts=artifacts,
        )
        if digest != manifest.integrity_hash or manifest.incident_id != incident_id:
            msg = (
                f"bundle {incident_id!r} integrity hash mismatch: "
                f"manifest {manifest.integrity_hash}, content {digest}"
            )
            raise BundleIntegrityError(msg)

        return EvidenceBundle(
            incident_id=manifest.incident_id,
            collected_at=manifest.collected_at,
            events=tuple(events),
            matches=tuple(matches),
            findings=tuple(findings),
            artifacts=artifacts,
            integrity_hash=manifest.integrity_hash,
        )

    @staticmethod
    def _read_jsonl(archive: zipfile.ZipFile, name: str, model: type) -> list:
        text = archive.read(name).decode("utf-8")
        return [model.model_validate_json(line) for line in text.splitlines() if line.strip()]


# ---------------------------------------------------------------------------
# EvidenceBundler
# ---------------------------------------------------------------------------


class EvidenceBundler:
    """Sole writer of ``EvidenceBundle``; finalizes each incident once."""

    def __init__(self, store: BundleStore) -> None:
        self._store = store
        self._finalized: set[str] = set()

    @property
    def store(self) -> BundleStore:
        return self._store

    def is_finalized(self, incident_id: str) -> bool:
        return incident_id in self._finalized or self._store.exists(incident_id)

    def finalize(
        self,
        incident_id: str,
        matches: Sequence[MatchResult],
        artifacts: Mapping[str, bytes] | None = None,
        *,
        events: Sequence[AuditEvent] | None = None,
        findings: Sequence[Finding] = (),
        collected_at: datetime | None = None,
    ) -> EvidenceBundle:
        """Assemble, hash and persist the bundle for *incident_id*.

        *events* defaults to the distinct events referenced by *matches*.
        Events are stored in stable event-time order. A failure before the
        archive is linked leaves no trace, so the call can be retried.
        """
        _validate_incident_id(incident_id)
        if self.is_finalized(incident_id):
            raise BundleAlreadyFinalized(incident_id)

        artifacts = dict(artifacts or {})
        for name in artifacts:
            _validate_artifact_name(name)

        if events is None:
            seen: dict[str, AuditEvent] = {}
            for match in matches:
                seen.setdefault(match.event.event_id, match.event)
            events = list(seen.values())
        ordered_events = tuple(sorted(events, key=lambda e: e.event_time))
        collected_at = (collected_at or datetime.now(timezone.utc)).astimezone(timezone.utc)

        digest = bundle_digest(
            incident_id=incident_id,
            collected_at=collected_at,
            events=ordered_events,
            matches=matches,
            findings=findings,
            artifacts=artifacts,
        )
        bundle = EvidenceBundle(
            incident_id=incident_id,
            collected_at=collected_at,
            events=ordered_events,
            matches=tuple(matches),
            findings=tuple(findings),
            artifacts=artifacts,
            integrity_hash=digest,
        )

        path = self._store.write(bundle)
        self._finalized.add(incident_id)
        logger.info(
            "bundle finalized incident_id=%s path=%s events=%d matches=%d hash=%s",
            incident_id,
            path,
            len(ordered_events),
            len(bundle.matches),
            digest,
        )
        return bundle
