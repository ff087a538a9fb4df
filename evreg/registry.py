"""
EVREG Registry

The public entry point. Wires the identifier counters, both stores, the
authorization gate and the notification channel together according to the
configured variant.

Example:
    registry = EvidenceRegistry()

    evidence_id = registry.submit_evidence(
        header='{"kind": "report"}',
        link=None,
        prior_refs=[],
        content_hash=content_digest(b"file-contents"),
        account="0xAAA",
        signature=b"...",
        payload="{}",
        caller="0xAAA",
    )
    record = registry.fetch_evidence(evidence_id)
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence, Union

from evreg.authorization import ProviderGate
from evreg.config import RegistryConfig, get_config
from evreg.events import EventBus, EventJournal
from evreg.hardening import UnsupportedOperationError, normalize_identifier
from evreg.identifiers import HASH_ALGORITHMS, AttachmentCounters, SubmissionCounter
from evreg.records import Evidence, ExtraInfo, Link, RegistryVariant
from evreg.store import SIDE_CHANNEL, EvidenceStore, ExtraInfoStore, Signature
from evreg.version import PROTOCOL_VERSION


class EvidenceRegistry:
    """
    Evidence registry facade.

    Args:
        config: configuration tree; defaults to the process-wide config
        bus: event bus to publish on; a private bus is created if omitted
        variant: overrides `registry.variant` from config
        domain_id: overrides `identifiers.domain_id` from config
        hash_algorithm: overrides `identifiers.hash_algorithm` from config
    """

    def __init__(
        self,
        config: Optional[RegistryConfig] = None,
        *,
        bus: Optional[EventBus] = None,
        variant: Union[str, RegistryVariant, None] = None,
        domain_id: Optional[str] = None,
        hash_algorithm: Optional[str] = None,
    ):
        config = config or get_config()
        selected = variant or config.registry.variant.get()
        try:
            self.variant = RegistryVariant(selected).value
        except ValueError:
            raise ValueError(f"Unknown registry variant: {selected}") from None
        self.domain_id = domain_id or config.identifiers.domain_id.get()
        self.hash_algorithm = hash_algorithm or config.identifiers.hash_algorithm.get()
        if self.hash_algorithm not in HASH_ALGORITHMS:
            raise ValueError(f"Unsupported hash algorithm: {self.hash_algorithm}")

        self.bus = bus or EventBus()
        self.journal: Optional[EventJournal] = None
        if config.events.journal_enabled.get():
            self.journal = EventJournal()
            self.journal.attach(self.bus)

        self.gate = ProviderGate()
        self.submissions = SubmissionCounter()
        self.attachments = AttachmentCounters()
        self.evidence = EvidenceStore(
            bus=self.bus,
            gate=self.gate,
            attachments=self.attachments,
            submissions=self.submissions,
            domain_id=self.domain_id,
            hash_algorithm=self.hash_algorithm,
            variant=self.variant,
        )
        self.extra_info = ExtraInfoStore(
            bus=self.bus,
            attachments=self.attachments,
            hash_algorithm=self.hash_algorithm,
        )

    # -- evidence -----------------------------------------------------------

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
        return self.evidence.submit_evidence(
            header, link, prior_refs, content_hash, account, signature, payload,
            caller=caller,
        )

    def fetch_evidence(self, evidence_id: str) -> Evidence:
        return self.evidence.fetch_evidence(evidence_id)

    def lookup_evidence(self, evidence_id: str) -> Optional[Evidence]:
        return self.evidence.lookup_evidence(evidence_id)

    def update_resources(
        self,
        evidence_id: str,
        resources: str,
        account: str,
        signature: Signature,
        *,
        caller: str,
    ) -> Evidence:
        return self.evidence.update_resources(
            evidence_id, resources, account, signature, caller=caller,
        )

    # -- extra info ---------------------------------------------------------

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
        self._require_side_channel("attach_extra_info")
        return self.extra_info.attach_extra_info(
            parent_id, account, signature, operation_hash, payload, caller=caller,
        )

    def fetch_extra_info(self, extra_id: str) -> ExtraInfo:
        self._require_side_channel("fetch_extra_info")
        return self.extra_info.fetch_extra_info(extra_id)

    def lookup_extra_info(self, extra_id: str) -> Optional[ExtraInfo]:
        self._require_side_channel("lookup_extra_info")
        return self.extra_info.lookup_extra_info(extra_id)

    def attachment_count(self, parent_id: str) -> int:
        """Current attachment counter of `parent_id` (0 if never attached to)."""
        key = normalize_identifier(parent_id)
        return self.attachments.get(key) if key else 0

    def _require_side_channel(self, operation: str) -> None:
        if self.variant != SIDE_CHANNEL:
            raise UnsupportedOperationError(
                f"{operation} is not available in the {self.variant} variant"
            )

    # -- reporting ----------------------------------------------------------

    def version(self) -> str:
        return PROTOCOL_VERSION

    def stats(self) -> Dict[str, Any]:
        return {
            "variant": self.variant,
            "evidence_count": len(self.evidence),
            "extra_info_count": len(self.extra_info),
            "submission_counter": self.submissions.value,
            "events": self.bus.metrics,
        }
