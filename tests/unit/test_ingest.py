"""Unit tests for event ingest."""

from __future__ import annotations

from datetime import datetime
from datetime import timezone

import pytest

from irsatrace.config import flat_field_mapping
from irsatrace.engine.ingest import EventIngestor
from irsatrace.engine.ingest import merge_by_event_time
from irsatrace.engine.ingest import parse_instant
from irsatrace.errors import MalformedRecord
from irsatrace.models import AuditEvent
from irsatrace.models import IdentityType

T = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _record(
    event_id: str | None = "ev-1",
    *,
    time: object = "2024-05-01T12:00:00Z",
    name: str = "GetObject",
    subject: str = "system:serviceaccount:payments:api",
    address: str = "10.0.1.5",
    identity_type: str = "WebIdentityUser",
) -> dict:
    record = {
        "eventVersion": "1.08",
        "eventTime": time,
        "eventName": name,
        "eventSource": "s3.amazonaws.com",
        "sourceIPAddress": address,
        "userIdentity": {"type": identity_type, "userName": subject},
    }
    if event_id is not None:
        record["eventID"] = event_id
    return record


# ---------------------------------------------------------------------------
# parse_instant
# ---------------------------------------------------------------------------


class TestParseInstant:
    def test_z_suffix(self):
        assert parse_instant("2024-05-01T12:00:00Z") == T

    def test_offset_is_normalized_to_utc(self):
        parsed = parse_instant("2024-05-01T14:00:00+02:00")
        assert parsed == T
        assert parsed.utcoffset().total_seconds() == 0

    def test_epoch_seconds(self):
        assert parse_instant(1714564800) == T

    def test_aware_datetime_passes_through(self):
        assert parse_instant(T) == T

    @pytest.mark.parametrize(
        "value",
        ["2024-05-01T12:00:00", "yesterday", True, None, ["2024"]],
    )
    def test_rejects_values_naming_no_instant(self, value):
        with pytest.raises(MalformedRecord):
            parse_instant(value)


# ---------------------------------------------------------------------------
# parse_record
# ---------------------------------------------------------------------------


class TestParseRecord:
    def test_cloudtrail_record(self):
        event = EventIngestor().parse_record(_record())
        assert event.event_id == "ev-1"
        assert event.event_time == T
        assert event.event_name == "GetObject"
        assert event.source_address == "10.0.1.5"
        assert event.principal_subject == "system:serviceaccount:payments:api"
        assert event.identity_type is IdentityType.web_identity_user

    def test_missing_event_id_gets_stable_digest(self):
        ingestor = EventIngestor()
        first = ingestor.parse_record(_record(event_id=None))
        second = ingestor.parse_record(_record(event_id=None))
        assert len(first.event_id) == 64
        assert first.event_id == second.event_id

    def test_principal_falls_back_to_arn(self):
        record = _record()
        record["userIdentity"] = {
            "type": "AssumedRole",
            "arn": "arn:aws:sts::111122223333:assumed-role/ops/alice",
        }
        event = EventIngestor().parse_record(record)
        assert event.principal_subject == "arn:aws:sts::111122223333:assumed-role/ops/alice"
        assert event.identity_type is IdentityType.assumed_role

    def test_access_key_and_resources(self):
        record = _record()
        record["userIdentity"]["accessKeyId"] = "AKIAEXAMPLE"
        record["resources"] = [
            {"ARN": "arn:aws:s3:::evidence/b.txt"},
            {"ARN": "arn:aws:s3:::evidence"},
            {"ARN": "arn:aws:s3:::evidence"},
        ]
        event = EventIngestor().parse_record(record)
        assert event.access_key_id == "AKIAEXAMPLE"
        assert event.resource_identifiers == (
            "arn:aws:s3:::evidence",
            "arn:aws:s3:::evidence/b.txt",
        )

    def test_missing_field_reports_index(self):
        record = _record()
        del record["sourceIPAddress"]
        with pytest.raises(MalformedRecord) as exc_info:
            EventIngestor().parse_record(record, index=7)
        assert exc_info.value.index == 7
        assert "sourceIPAddress" in exc_info.value.reason
        assert str(exc_info.value).startswith("record 7: ")

    def test_flat_mapping(self):
        record = {
            "event_id": "ev-9",
            "event_time": "2024-05-01T12:00:00Z",
            "event_name": "PutObject",
            "principal_subject": "system:serviceaccount:batch:worker",
            "source_address": "10.0.2.8",
            "identity_type": "WebIdentityUser",
        }
        event = EventIngestor(flat_field_mapping()).parse_record(record)
        assert event.event_id == "ev-9"
        assert event.principal_subject == "system:serviceaccount:batch:worker"

    def test_flat_record_without_identity_type(self):
        record = {
            "event_time": "2024-05-01T12:00:00Z",
            "event_name": "GetObject",
            "principal_subject": "system:serviceaccount:harbor:harbor-registry",
            "source_address": "10.0.2.9",
        }
        event = EventIngestor(flat_field_mapping()).parse_record(record)
        assert event.identity_type is IdentityType.unknown
        assert event.identity_type_raw is None
        assert event.identity_type_name is None

    def test_session_issuer_arn(self):
        record = _record(
            subject="arn:aws:sts::123456789012:assumed-role/harbor-s3/botocore-1",
            identity_type="AssumedRole",
        )
        record["userIdentity"]["sessionContext"] = {
            "sessionIssuer": {"arn": "arn:aws:iam::123456789012:role/harbor-s3"}
        }
        event = EventIngestor().parse_record(record)
        assert event.session_issuer_arn == "arn:aws:iam::123456789012:role/harbor-s3"


# ---------------------------------------------------------------------------
# IngestRun
# ---------------------------------------------------------------------------


class TestIngestRun:
    def test_malformed_records_are_skipped_and_counted(self):
        records = [
            _record("ev-1"),
            {**_record("ev-2"), "eventName": ""},
            "not an object",
            _record("ev-4", time="2024-05-01T12:00:00"),
            _record("ev-5"),
        ]
        run = EventIngestor().ingest(records)
        events = list(run)

        assert [e.event_id for e in events] == ["ev-1", "ev-5"]
        assert run.parsed == 2
        assert run.skipped == 3
        assert run.skip_reasons[0].startswith("record 1: ")
        assert run.skip_reasons[2].startswith("record 3: ")

    def test_run_is_restartable(self):
        run = EventIngestor().ingest([_record("ev-1"), "bad", _record("ev-3")])
        first = list(run)
        second = list(run)

        assert first == second
        assert run.parsed == 2
        assert run.skipped == 1

    def test_run_is_lazy(self):
        run = EventIngestor().ingest([_record("ev-1"), _record("ev-2")])
        iterator = iter(run)
        assert next(iterator).event_id == "ev-1"
        assert run.parsed == 1


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


class TestToRecord:
    def test_ingested_record_round_trips_unchanged(self):
        ingestor = EventIngestor()
        original = _record(time="2024-05-01T14:00:00+02:00")
        original["requestParameters"] = {"bucketName": "evidence"}

        event = ingestor.parse_record(original)
        assert ingestor.to_record(event) == original

    def test_digest_id_round_trips_unchanged(self):
        ingestor = EventIngestor()
        original = _record(event_id=None)
        event = ingestor.parse_record(original)
        assert ingestor.to_record(event) == original

    def test_constructed_event_serializes_to_parseable_record(self):
        ingestor = EventIngestor()
        event = AuditEvent(
            event_id="ev-77",
            event_time=T,
            event_name="DeleteObject",
            source_address="10.0.3.3",
            principal_subject="system:serviceaccount:payments:api",
            identity_type=IdentityType.web_identity_user,
            access_key_id="ASIAEXAMPLE",
            resource_identifiers=("arn:aws:s3:::evidence",),
        )
        record = ingestor.to_record(event)
        reparsed = ingestor.parse_record(record)

        ignored = {"raw", "identity_type_raw"}
        assert reparsed.model_dump(exclude=ignored) == event.model_dump(exclude=ignored)
        assert reparsed.identity_type_name == event.identity_type_name == "WebIdentityUser"

    def test_unlisted_identity_type_round_trips(self):
        ingestor = EventIngestor()
        event = ingestor.parse_record(_record(identity_type="SAMLUser"))
        assert event.identity_type is IdentityType.unknown
        assert event.identity_type_raw == "SAMLUser"

        relabeled = event.model_copy(update={"identity_type_raw": "FederatedUser"})
        record = ingestor.to_record(relabeled)

        assert record["userIdentity"]["type"] == "FederatedUser"
        assert ingestor.parse_record(record).identity_type_name == "FederatedUser"

    def test_model_json_round_trip_after_ingest(self):
        event = EventIngestor().parse_record(_record())
        assert AuditEvent.model_validate_json(event.model_dump_json()) == event


# ---------------------------------------------------------------------------
# Shards
# ---------------------------------------------------------------------------


class TestShards:
    def test_shards_merge_by_stable_time_sort(self):
        early = "2024-05-01T12:00:00Z"
        late = "2024-05-01T12:05:00Z"
        shard_a = [_record("a-late", time=late), _record("a-early", time=early)]
        shard_b = [_record("b-early", time=early), _record("b-late", time=late)]

        result = EventIngestor().ingest_shards([shard_a, shard_b])

        assert [e.event_id for e in result.events] == [
            "a-early",
            "b-early",
            "a-late",
            "b-late",
        ]

    def test_shard_skips_are_summed(self):
        result = EventIngestor().ingest_shards([[_record("a"), "bad"], [None]])
        assert len(result.events) == 1
        assert result.skipped == 2
        assert len(result.skip_reasons) == 2

    def test_merge_matches_single_sequence_ingest(self):
        ingestor = EventIngestor()
        records = [
            _record("e1", time="2024-05-01T12:00:00Z"),
            _record("e2", time="2024-05-01T12:01:00Z"),
            _record("e3", time="2024-05-01T12:02:00Z"),
        ]
        whole = list(ingestor.ingest(records))
        merged = merge_by_event_time(
            [list(ingestor.ingest(records[:1])), list(ingestor.ingest(records[1:]))]
        )
        assert merged == whole
