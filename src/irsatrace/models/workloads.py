"""Cluster-state snapshot records."""

from __future__ import annotations

from datetime import datetime
from datetime import timedelta

from pydantic import BaseModel
from pydantic import Field


class ObservedWindow(BaseModel):
    """Half-open interval ``[start, end)`` during which a pod was observed.

    ``end=None`` means the pod was still running when the snapshot was taken.
    """

    model_config = {"frozen": True}

    start: datetime
    end: datetime | None = None

    def contains(self, instant: datetime, slop: timedelta = timedelta(0)) -> bool:
        """Whether *instant* falls inside the window widened by *slop*."""
        if instant < self.start - slop:
            return False
        if self.end is None:
            return True
        return instant < self.end + slop

    def overlaps(self, other: ObservedWindow) -> bool:
        # Half-open: touching boundaries do not overlap
        self_ends_after = self.end is None or self.end > other.start
        other_ends_after = other.end is None or other.end > self.start
        return self_ends_after and other_ends_after


class WorkloadRecord(BaseModel):
    """One pod incarnation (identity + address) over a time window."""

    model_config = {"frozen": True}

    namespace: str
    service_account: str
    pod_name: str
    pod_address: str
    observed_window: ObservedWindow = Field(
        description="When this pod held this address.",
    )
    credential_env: tuple[str, ...] = Field(
        default=(),
        description="Static AWS credential variables set in the pod spec.",
    )


class ServiceAccountBinding(BaseModel):
    """A service account annotated with the IAM role its pods assume."""

    model_config = {"frozen": True}

    namespace: str
    name: str
    role_arn: str

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}/{self.name}"
