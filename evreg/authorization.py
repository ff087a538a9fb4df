"""
EVREG Authorization Gate

The resource locator is the only mutable field of an evidence record, and
only the provider that created the record may change it. Every decision,
granted or denied, is written to the hash-chained audit trail.
"""

from __future__ import annotations

from typing import Optional

from evreg.hardening import AuthorizationError, CryptoUtils
from evreg.observability import AuditTrail, RegistryLayer, get_logger
from evreg.records import Evidence


class ProviderGate:
    """Allows a mutation only when the caller is the record's provider."""

    ACTION_UPDATE_RESOURCES = "update_resources"

    def __init__(self, audit: Optional[AuditTrail] = None):
        self._logger = get_logger("gate", RegistryLayer.AUTHORIZATION)
        self.audit = audit or AuditTrail(self._logger)

    def is_provider(self, record: Evidence, caller: str) -> bool:
        # Sentinel records have no provider; nobody may mutate them.
        if record.is_empty or not record.provider:
            return False
        return CryptoUtils.secure_compare_str(record.provider, caller)

    def authorize(
        self,
        evidence_id: str,
        record: Evidence,
        caller: str,
        action: str = ACTION_UPDATE_RESOURCES,
    ) -> None:
        """Raise AuthorizationError unless `caller` provided `record`."""
        if not self.is_provider(record, caller):
            self.audit.record(caller, action, evidence_id, "denied")
            self._logger.warning(
                "Rejected mutation by non-provider",
                operation=action,
                evidence_id=evidence_id,
                caller=caller,
            )
            raise AuthorizationError(evidence_id, caller)

        self.audit.record(caller, action, evidence_id, "granted")
