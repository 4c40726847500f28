"""Normalized cloud audit-log event."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field


class IdentityType(str, Enum):
    """Principal kinds reported in CloudTrail ``userIdentity.type``."""

    web_identity_user = "WebIdentityUser"
    assumed_role = "AssumedRole"
    iam_user = "IAMUser"
    root = "Root"
    aws_service = "AWSService"
    federated_user = "FederatedUser"
    unknown = "Unknown"

    @classmethod
    def parse(cls, value: str | None) -> IdentityType:
        """Map a raw type string, falling back to ``unknown``."""
        for member in cls:
            if member.value == value:
                return member
        return cls.unknown


class AuditEvent(BaseModel):
    """One ingested audit-log record. Immutable once created."""

    model_config = {"frozen": True}

    event_id: str = Field(description="Record id, or a digest of the raw record.")
    event_time: datetime = Field(description="Absolute instant (tz-aware).")
    event_name: str = Field(description="API action, e.g. ``DeleteObject``.")
    source_address: str = Field(description="Caller network address.")
    principal_subject: str = Field(
        description="Identity claim as logged (e.g. the federated token subject).",
    )
    identity_type: IdentityType = Field(default=IdentityType.unknown)
    identity_type_raw: str | None = Field(
        default=None,
        description="Type string exactly as logged; None when the record has none.",
    )
    access_key_id: str | None = Field(default=None)
    session_issuer_arn: str | None = Field(
        default=None,
        description="ARN of the role behind a temporary session, if logged.",
    )
    resource_identifiers: tuple[str, ...] = Field(
        default=(),
        description="Distinct resource ids touched by the call, sorted.",
    )
    raw: dict[str, Any] = Field(
        default_factory=dict,
        description="The record exactly as ingested.",
    )

    @property
    def identity_type_name(self) -> str | None:
        """The logged type string, or the enum value for constructed events."""
        if self.identity_type_raw is not None:
            return self.identity_type_raw
        if self.identity_type is IdentityType.unknown:
            return None
        return self.identity_type.value
