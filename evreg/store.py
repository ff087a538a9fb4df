"""
EVREG Stores

    EvidenceStore    evidence records keyed by identifier; owns the global
                     submission counter
    ExtraInfoStore   side-channel records attached to a parent evidence

Both stores draw sub-mode identifiers from one shared AttachmentCounters
instance. Attached evidence and attached extra info for the same parent
therefore consume distinct counter values and can never collide.

Write path (all validation happens before any counter moves):

    validate ─▶ allocate counter ─▶ derive id ─▶ write record ─▶ publish event
                └──────────── lock held ────────────┘
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Union

from evreg.authorization import ProviderGate
from evreg.events import EventBus, EvidenceSubmitted, ExtraInfoAttached, ResourcesUpdated
from evreg.hardening import (
    InvariantViolation,
    ThreadSafeDict,
    UnsupportedOperationError,
    ValidationError,
    Validators,
    ZERO_DIGEST,
    normalize_identifier,
)
from evreg.identifiers import (
    AttachmentCounters,
    SubmissionCounter,
    derive_main,
    derive_sub,
)
from evreg.observability import RegistryLayer, get_logger, timed_operation
from evreg.records import (
    EMPTY_EVIDENCE,
    EMPTY_EXTRA_INFO,
    Evidence,
    ExtraInfo,
    Link,
    LinkKind,
    RegistryVariant,
)

SIDE_CHANNEL = RegistryVariant.SIDE_CHANNEL.value
CHAINED = RegistryVariant.CHAINED.value

_evidence_logger = get_logger("evidence", RegistryLayer.STORE)
_extra_logger = get_logger("extra_info", RegistryLayer.EXTRA_INFO)

Signature = Union[bytes, bytearray, str, None]


def _normalize_link(link: Optional[Link], variant: str) -> Link:
    if link is None or link.kind == LinkKind.NONE:
        return Link.none()

    expected = LinkKind.MAIN if variant == SIDE_CHANNEL else LinkKind.PRIOR
    if link.kind != expected:
        raise ValidationError(
            "link",
            f"{link.kind.value} links are not accepted by the {variant} variant",
            link,
        )

    target = normalize_identifier(link.target)
    if target is None:
        raise ValidationError("link", "Link target must be a 64 hex char identifier", link.target)
    if target == ZERO_DIGEST:
        return Link.none()
    return Link(link.kind, target)


class EvidenceStore:
    """
    Immutable evidence records keyed by derived identifier.

    Reads are total: an unknown or malformed identifier yields EMPTY_EVIDENCE.
    The only mutation after creation is `update_resources`, available in the
    side-channel variant and gated on the record's provider.
    """

    def __init__(
        self,
        *,
        bus: EventBus,
        gate: ProviderGate,
        attachments: AttachmentCounters,
        domain_id: str,
        hash_algorithm: str = "sha256",
        variant: str = SIDE_CHANNEL,
        submissions: Optional[SubmissionCounter] = None,
    ):
        self._bus = bus
        self._gate = gate
        self._attachments = attachments
        self._submissions = submissions or SubmissionCounter()
        self._records: ThreadSafeDict[Evidence] = ThreadSafeDict()
        self.domain_id = domain_id
        self.hash_algorithm = hash_algorithm
        self.variant = variant

    @property
    def submission_counter(self) -> int:
        return self._submissions.value

    @timed_operation(_evidence_logger, "submit_evidence")
    def submit_evidence(
        self,
        header: str,
        link: Optional[Link],
        prior_refs: Sequence[str],
        content_hash: Union[str, bytes],
        account: str,
        signature: Signature,
        payload: str,
        *,
        caller: str,
    ) -> str:
        """
        Record a new evidence and return its identifier.

        An unset link derives a main identifier from the global counter; a
        set link derives a sub identifier from the parent's attachment
        counter. Identical arguments always produce a new record. A single
        string passed as `prior_refs` is one reference.

        Raises:
            ValidationError: content hash missing, malformed or zero; or a
                link of the wrong kind for this variant
        """
        digest = Validators.validate_content_hash(content_hash)
        digest.raise_if_invalid()
        sig = Validators.validate_signature(signature)
        sig.raise_if_invalid()
        link = _normalize_link(link, self.variant)
        if isinstance(prior_refs, str):
            prior_refs = (prior_refs,)
        refs = tuple(str(ref) for ref in (prior_refs or ()))

        def build(evidence_id: str) -> Evidence:
            return Evidence(
                evidence_id=evidence_id,
                content_hash=digest.sanitized_value,
                account=account,
                signature=sig.sanitized_value,
                link=link,
                prior_refs=refs,
                header=header or "",
                payload=payload or "",
                resources="",
                provider=caller,
            )

        if link.is_set:
            with self._attachments.allocate(link.target) as counter:
                evidence_id = derive_sub(link.target, counter, self.hash_algorithm)
                record = self._write(build(evidence_id))
        else:
            with self._submissions.allocate() as counter:
                evidence_id = derive_main(
                    self.domain_id,
                    digest.sanitized_value,
                    account,
                    counter,
                    self.hash_algorithm,
                )
                record = self._write(build(evidence_id))

        _evidence_logger.info(
            "Evidence submitted",
            operation="submit_evidence",
            evidence_id=evidence_id,
            link_kind=link.kind.value,
            provider=caller,
        )
        self._bus.publish(EvidenceSubmitted(
            evidence_id=evidence_id,
            link_kind=link.kind.value,
            link_target=link.target if link.is_set else "",
            prior_refs=list(refs),
            content_hash=record.content_hash,
            account=record.account,
            signature=record.signature.hex(),
            provider=record.provider,
        ))
        return evidence_id

    def _write(self, record: Evidence) -> Evidence:
        with self._records.transaction() as records:
            if record.evidence_id in records:
                raise InvariantViolation(f"Identifier already assigned: {record.evidence_id}")
            records[record.evidence_id] = record
        return record

    def fetch_evidence(self, evidence_id: str) -> Evidence:
        """Return the record, or EMPTY_EVIDENCE when the identifier is unknown."""
        record = self.lookup_evidence(evidence_id)
        return record if record is not None else EMPTY_EVIDENCE

    def lookup_evidence(self, evidence_id: str) -> Optional[Evidence]:
        """Return the record, or None when the identifier is unknown."""
        key = normalize_identifier(evidence_id)
        if key is None:
            return None
        record = self._records.get(key)
        if record is None:
            return None
        return record.with_extra_count(self._attachments.get(key))

    @timed_operation(_evidence_logger, "update_resources")
    def update_resources(
        self,
        evidence_id: str,
        resources: str,
        account: str,
        signature: Signature,
        *,
        caller: str,
    ) -> Evidence:
        """
        Replace the resource locator of an evidence record.

        Raises:
            UnsupportedOperationError: the registry runs the chained variant
            AuthorizationError: `caller` is not the record's provider (the
                record is left untouched)
        """
        if self.variant != SIDE_CHANNEL:
            raise UnsupportedOperationError(
                f"update_resources is not available in the {self.variant} variant"
            )
        sig = Validators.validate_signature(signature)
        sig.raise_if_invalid()

        key = normalize_identifier(evidence_id) or str(evidence_id)
        with self._records.transaction() as records:
            current = records.get(key) or EMPTY_EVIDENCE
            self._gate.authorize(key, current, caller)
            updated = current.with_resources(resources or "")
            records[key] = updated

        _evidence_logger.info(
            "Evidence resources updated",
            operation="update_resources",
            evidence_id=key,
        )
        self._bus.publish(ResourcesUpdated(
            evidence_id=key,
            resources=updated.resources,
            account=account,
            signature=sig.sanitized_value.hex(),
            provider=updated.provider,
        ))
        return updated.with_extra_count(self._attachments.get(key))

    def records(self) -> List[Evidence]:
        """All stored records, ordered by identifier."""
        return [record for _, record in sorted(self._records.items_snapshot())]

    def __len__(self) -> int:
        return len(self._records)

    def restore(self, records: Iterable[Evidence], submission_counter: int) -> None:
        """Load persisted records and the global counter into an empty store."""
        if len(self._records):
            raise InvariantViolation("Cannot restore into a non-empty evidence store")
        self._submissions.restore(submission_counter)
        for record in records:
            self._write(record.with_extra_count(0))


class ExtraInfoStore:
    """
    Side-channel operation records attached to a parent evidence.

    The parent is never checked for existence: attaching to an unknown
    identifier creates its counter entry.
    """

    def __init__(
        self,
        *,
        bus: EventBus,
        attachments: AttachmentCounters,
        hash_algorithm: str = "sha256",
    ):
        self._bus = bus
        self._attachments = attachments
        self._records: ThreadSafeDict[ExtraInfo] = ThreadSafeDict()
        self.hash_algorithm = hash_algorithm

    @timed_operation(_extra_logger, "attach_extra_info")
    def attach_extra_info(
        self,
        parent_id: str,
        account: str,
        signature: Signature,
        operation_hash: Optional[str],
        payload: str,
        *,
        caller: str,
    ) -> str:
        """
        Attach an operation record to `parent_id` and return its identifier.

        `operation_hash` and `payload` are stored verbatim. Any identifier is
        accepted as parent, including the zero identifier.

        Raises:
            ValidationError: `parent_id` does not decode to 32 bytes
        """
        parent = normalize_identifier(parent_id)
        if parent is None:
            raise ValidationError("parent_id", "Parent must be a 64 hex char identifier", parent_id)
        op_hash = operation_hash or ""
        sig = Validators.validate_signature(signature)
        sig.raise_if_invalid()

        with self._attachments.allocate(parent) as counter:
            extra_id = derive_sub(parent, counter, self.hash_algorithm)
            record = self._write(ExtraInfo(
                extra_id=extra_id,
                parent_id=parent,
                account=account,
                signature=sig.sanitized_value,
                operation_hash=op_hash,
                payload=payload or "",
                provider=caller,
            ))

        _extra_logger.info(
            "Extra info attached",
            operation="attach_extra_info",
            extra_id=extra_id,
            parent_id=parent,
            attachment_index=counter,
        )
        self._bus.publish(ExtraInfoAttached(
            extra_id=extra_id,
            parent_id=parent,
            operation_hash=op_hash,
            account=account,
            signature=record.signature.hex(),
            provider=caller,
            attachment_index=counter,
        ))
        return extra_id

    def _write(self, record: ExtraInfo) -> ExtraInfo:
        with self._records.transaction() as records:
            if record.extra_id in records:
                raise InvariantViolation(f"Identifier already assigned: {record.extra_id}")
            records[record.extra_id] = record
        return record

    def fetch_extra_info(self, extra_id: str) -> ExtraInfo:
        """Return the record, or EMPTY_EXTRA_INFO when the identifier is unknown."""
        record = self.lookup_extra_info(extra_id)
        return record if record is not None else EMPTY_EXTRA_INFO

    def lookup_extra_info(self, extra_id: str) -> Optional[ExtraInfo]:
        """Return the record, or None when the identifier is unknown."""
        key = normalize_identifier(extra_id)
        if key is None:
            return None
        return self._records.get(key)

    def records(self) -> List[ExtraInfo]:
        """All stored records, ordered by identifier."""
        return [record for _, record in sorted(self._records.items_snapshot())]

    def __len__(self) -> int:
        return len(self._records)

    def restore(self, records: Iterable[ExtraInfo]) -> None:
        """Load persisted records into an empty store."""
        if len(self._records):
            raise InvariantViolation("Cannot restore into a non-empty extra-info store")
        for record in records:
            self._write(record)
