"""Application configuration dataclasses.

Frozen dataclasses with sensible defaults for each stage of a correlation
pass. No env-var loading or YAML parsing, just plain defaults that can be
overridden at construction time and passed explicitly to each component.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class CorrelationConfig:
    """Identity and timing rules shared by the resolver and matcher."""

    # Literal prefix in front of ``<namespace>:<service-account>`` subjects
    identity_prefix: str = "system:serviceaccount"
    # Tolerance applied to both ends of an observed window
    time_window_slop_seconds: float = 0.0
    # Upper bound for each external fetch (log query, cluster snapshot)
    timeout_seconds: float = 30.0
    workload_identity_types: tuple[str, ...] = ("WebIdentityUser",)
    static_credential_types: tuple[str, ...] = ("IAMUser", "Root")
    static_access_key_prefix: str = "AKIA"


@dataclass(frozen=True)
class FieldMapping:
    """Dotted key paths locating each required field in a raw record.

    Defaults follow the CloudTrail record layout.
    """

    event_time: str = "eventTime"
    event_name: str = "eventName"
    principal_subject: str = "userIdentity.userName"
    source_address: str = "sourceIPAddress"
    identity_type: str = "userIdentity.type"
    # Optional fields: absent values are not an error
    # Root and AssumedRole records carry no userName, only an ARN
    principal_fallback: str | None = "userIdentity.arn"
    event_id: str | None = "eventID"
    access_key_id: str | None = "userIdentity.accessKeyId"
    session_issuer_arn: str | None = "userIdentity.sessionContext.sessionIssuer.arn"
    resource_identifiers: str | None = "resources"


@dataclass(frozen=True)
class BundleConfig:
    """Where finalized evidence archives are written."""

    output_dir: str = "evidence"


@dataclass(frozen=True)
class JournalConfig:
    """Settings for the JSONL run journal."""

    file_path: str = "irsatrace_journal.jsonl"
    enabled: bool = True


def flat_field_mapping() -> FieldMapping:
    """Mapping for pre-flattened records (one key per field)."""
    return FieldMapping(
        event_time="event_time",
        event_name="event_name",
        principal_subject="principal_subject",
        source_address="source_address",
        identity_type="identity_type",
        principal_fallback=None,
        event_id="event_id",
        access_key_id="access_key_id",
        session_issuer_arn="session_issuer_arn",
        resource_identifiers="resource_identifiers",
    )
