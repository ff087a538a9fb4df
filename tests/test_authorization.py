"""
Provider gate and audit trail tests.
"""

import pytest

from evreg.authorization import ProviderGate
from evreg.hardening import AuthorizationError
from evreg.observability import GENESIS_HASH
from evreg.records import EMPTY_EVIDENCE, Evidence


RECORD = Evidence(evidence_id="11" * 32, content_hash="22" * 32, account="0xAAA", provider="0xAAA")


class TestProviderGate:
    """Only the provider may mutate."""

    def test_provider_allowed(self):
        gate = ProviderGate()
        gate.authorize(RECORD.evidence_id, RECORD, "0xAAA")
        assert gate.audit.entries[-1].outcome == "granted"

    def test_other_denied(self):
        gate = ProviderGate()
        with pytest.raises(AuthorizationError):
            gate.authorize(RECORD.evidence_id, RECORD, "0xBBB")
        entry = gate.audit.entries[-1]
        assert entry.outcome == "denied"
        assert entry.actor == "0xBBB"
        assert entry.evidence_id == RECORD.evidence_id

    def test_comparison_is_exact(self):
        gate = ProviderGate()
        assert not gate.is_provider(RECORD, "0xaaa")
        assert not gate.is_provider(RECORD, "0xAAA ")

    def test_sentinel_never_authorized(self):
        gate = ProviderGate()
        assert not gate.is_provider(EMPTY_EVIDENCE, "")

    def test_empty_provider_never_authorized(self):
        gate = ProviderGate()
        record = Evidence(evidence_id="11" * 32, content_hash="22" * 32, provider="")
        assert not gate.is_provider(record, "")


class TestAuditChain:
    """Decisions are hash-chained."""

    def test_chain_verifies(self, registry, submit):
        evidence_id = submit()
        registry.update_resources(evidence_id, "a", "0xAAA", b"", caller="0xAAA")
        with pytest.raises(AuthorizationError):
            registry.update_resources(evidence_id, "b", "0xBBB", b"", caller="0xBBB")

        entries = registry.gate.audit.entries
        assert [e.outcome for e in entries] == ["granted", "denied"]
        assert [e.sequence for e in entries] == [1, 2]
        assert entries[0].previous_hash == GENESIS_HASH
        assert entries[1].previous_hash == entries[0].entry_hash
        assert registry.gate.audit.verify()

    def test_tampering_detected(self):
        gate = ProviderGate()
        gate.authorize(RECORD.evidence_id, RECORD, "0xAAA")
        gate.authorize(RECORD.evidence_id, RECORD, "0xAAA")
        gate.audit._entries[0].outcome = "denied"
        assert gate.audit.first_broken() == 0
        assert not gate.audit.verify()

    def test_relinked_entry_detected(self):
        gate = ProviderGate()
        for _ in range(3):
            gate.authorize(RECORD.evidence_id, RECORD, "0xAAA")
        gate.audit._entries[2].previous_hash = GENESIS_HASH
        assert gate.audit.first_broken() == 2
