"""Identity resolution: which workload identity made this call?

The resolver is **pure logic**: it reads one ``AuditEvent`` and either
returns a ``ResolvedIdentity`` or raises. Two failure modes are kept apart:

- ``MalformedRecord``: the event claims a workload identity but its subject
  does not have the ``<prefix>:<namespace>:<service-account>`` shape.
- ``UnresolvedIdentity``: the event was made by some other principal. For
  static long-lived credentials this is itself a finding.

Records that carry no identity type at all are judged by their subject
alone: a well-formed workload subject resolves, anything else is
unresolved.

Assumed-role principals are not workload identities, but their role and
session names are parsed so the finding can point at the service accounts
bound to that role.
"""

from __future__ import annotations

from collections.abc import Iterable

from irsatrace.config import CorrelationConfig
from irsatrace.errors import MalformedRecord
from irsatrace.errors import UnresolvedIdentity
from irsatrace.models.events import AuditEvent
from irsatrace.models.matches import ResolvedIdentity
from irsatrace.models.matches import RoleSession
from irsatrace.models.workloads import ServiceAccountBinding

SUBJECT_DELIMITER = ":"
ASSUMED_ROLE_MARKER = "assumed-role/"


def split_subject(subject: str, prefix: str) -> tuple[str, str]:
    """Split ``<prefix>:<namespace>:<service-account>`` into its two parts.

    Raises ``MalformedRecord`` when the prefix is absent or the remainder is
    not exactly two non-empty segments.
    """
    expected = f"{prefix}{SUBJECT_DELIMITER}" if prefix else ""
    if not subject.startswith(expected):
        msg = f"subject {subject!r} does not start with {expected!r}"
        raise MalformedRecord(msg)
    parts = subject[len(expected) :].split(SUBJECT_DELIMITER)
    if len(parts) != 2 or not all(parts):
        msg = f"subject {subject!r} is not <namespace>:<service-account>"
        raise MalformedRecord(msg)
    return parts[0], parts[1]


def _arn_account(arn: str) -> str | None:
    # arn:partition:service:region:account:resource
    fields = arn.split(":", 5)
    if len(fields) == 6 and fields[0] == "arn" and fields[4]:
        return fields[4]
    return None


def _role_from_arn(arn: str) -> str | None:
    """Role name from ``arn:aws:iam::<account>:role/<path>/<name>``."""
    fields = arn.split(":", 5)
    if len(fields) != 6 or not fields[5].startswith("role/"):
        return None
    return fields[5].rsplit("/", 1)[-1] or None


def parse_role_session(event: AuditEvent) -> RoleSession | None:
    """Role and session behind an assumed-role principal, or None.

    Accepts the STS form ``arn:aws:sts::<account>:assumed-role/<role>/<session>``
    as well as a bare ``assumed-role/<role>/<session>`` subject. When the
    subject carries no role, the session issuer ARN is used instead.
    """
    subject = event.principal_subject
    issuer = event.session_issuer_arn
    marker = subject.find(ASSUMED_ROLE_MARKER)
    if marker != -1:
        role_name, _, session_name = subject[marker + len(ASSUMED_ROLE_MARKER) :].partition("/")
        if not role_name:
            return None
        account_id = _arn_account(subject) or (_arn_account(issuer) if issuer else None)
        role_arn = issuer
        if role_arn is None and account_id:
            role_arn = f"arn:aws:iam::{account_id}:role/{role_name}"
        return RoleSession(
            role_name=role_name,
            session_name=session_name or None,
            account_id=account_id,
            role_arn=role_arn,
        )
    if issuer:
        role_name = _role_from_arn(issuer)
        if role_name:
            return RoleSession(
                role_name=role_name,
                account_id=_arn_account(issuer),
                role_arn=issuer,
            )
    return None


def service_accounts_for_role(
    session: RoleSession, bindings: Iterable[ServiceAccountBinding]
) -> tuple[str, ...]:
    """``namespace/name`` of every service account annotated with the role.

    Bindings are matched on the role name; when both sides name an account,
    the accounts must agree too.
    """
    matched: set[str] = set()
    for binding in bindings:
        if _role_from_arn(binding.role_arn) != session.role_name:
            continue
        bound_account = _arn_account(binding.role_arn)
        if session.account_id and bound_account and bound_account != session.account_id:
            continue
        matched.add(binding.qualified_name)
    return tuple(sorted(matched))


class IdentityResolver:
    """Extract (namespace, service account) from workload-identity events."""

    def __init__(self, config: CorrelationConfig | None = None) -> None:
        self._config = config or CorrelationConfig()

    def is_static_credential(self, event: AuditEvent) -> bool:
        if event.identity_type_name in self._config.static_credential_types:
            return True
        prefix = self._config.static_access_key_prefix
        return bool(
            prefix and event.access_key_id and event.access_key_id.startswith(prefix)
        )

    def resolve(self, event: AuditEvent) -> ResolvedIdentity:
        """Resolve *event* to a workload identity."""
        # Static keys win over the type: a workload type with an AKIA key is
        # still a long-lived credential
        if self.is_static_credential(event):
            raise UnresolvedIdentity(event, static_credential=True)

        type_name = event.identity_type_name
        if type_name is None:
            # Untyped record: the subject shape decides
            try:
                namespace, service_account = split_subject(
                    event.principal_subject, self._config.identity_prefix
                )
            except MalformedRecord:
                raise UnresolvedIdentity(
                    event,
                    static_credential=False,
                    session=parse_role_session(event),
                ) from None
        elif type_name in self._config.workload_identity_types:
            namespace, service_account = split_subject(
                event.principal_subject, self._config.identity_prefix
            )
        else:
            raise UnresolvedIdentity(
                event,
                static_credential=False,
                session=parse_role_session(event),
            )

        return ResolvedIdentity(
            event=event,
            namespace=namespace,
            service_account=service_account,
            source_address=event.source_address,
            event_time=event.event_time,
        )
