"""
Notification channel tests: one event per successful mutation, none for
rejected calls, handler isolation, and the journal.
"""

import pytest

from evreg.events import (
    EventBus,
    EventHandlerError,
    EventJournal,
    EvidenceSubmitted,
    ExtraInfoAttached,
    ResourcesUpdated,
    event_from_dict,
)
from evreg.hardening import AuthorizationError, ValidationError
from evreg.records import Link
from evreg.registry import EvidenceRegistry


@pytest.fixture
def captured(registry):
    events = []
    registry.bus.subscribe()(events.append)
    return events


class TestRegistryEvents:
    """Each mutating call publishes exactly one event after commit."""

    def test_submit_emits(self, registry, submit, captured):
        evidence_id = submit(prior_refs=["r1"])
        assert len(captured) == 1
        event = captured[0]
        assert isinstance(event, EvidenceSubmitted)
        assert event.evidence_id == evidence_id
        assert event.link_kind == "none"
        assert event.link_target == ""
        assert event.prior_refs == ["r1"]
        assert event.provider == "0xAAA"
        assert event.signature == "0102"

    def test_sub_submit_carries_parent(self, submit, captured):
        parent = submit()
        child = submit(link=Link.main(parent))
        assert captured[1].evidence_id == child
        assert captured[1].link_kind == "main"
        assert captured[1].link_target == parent

    def test_update_emits(self, registry, submit, captured):
        evidence_id = submit()
        registry.update_resources(evidence_id, "loc", "0xAAA", b"\x09", caller="0xAAA")
        event = captured[-1]
        assert isinstance(event, ResourcesUpdated)
        assert event.evidence_id == evidence_id
        assert event.resources == "loc"
        assert event.signature == "09"

    def test_attach_emits(self, registry, submit, captured):
        parent = submit()
        extra_id = registry.attach_extra_info(parent, "0xAAA", b"", "", "", caller="0xAAA")
        event = captured[-1]
        assert isinstance(event, ExtraInfoAttached)
        assert event.extra_id == extra_id
        assert event.parent_id == parent
        assert event.attachment_index == 1

    def test_rejected_calls_emit_nothing(self, registry, submit, captured):
        with pytest.raises(ValidationError):
            submit(content_hash="")
        evidence_id = submit()
        with pytest.raises(AuthorizationError):
            registry.update_resources(evidence_id, "x", "0xBBB", b"", caller="0xBBB")
        with pytest.raises(ValidationError):
            registry.attach_extra_info("", "0xAAA", b"", "", "", caller="0xAAA")
        assert len(captured) == 1

    def test_failing_handler_does_not_fail_write(self):
        errors = []
        bus = EventBus(on_error=errors.append)
        registry = EvidenceRegistry(bus=bus)

        @bus.subscribe(EvidenceSubmitted)
        def broken(event):
            raise RuntimeError("indexer down")

        evidence_id = registry.submit_evidence(
            "", None, [], "ab" * 32, "0xAAA", b"", "", caller="0xAAA"
        )
        assert registry.lookup_evidence(evidence_id) is not None
        assert len(errors) == 1
        assert isinstance(errors[0], EventHandlerError)
        assert bus.metrics["error_count"] == 1


class TestEventBus:
    """Bus mechanics."""

    def test_typed_subscription(self):
        bus = EventBus()
        seen = []
        bus.subscribe(ResourcesUpdated)(seen.append)
        bus.publish(EvidenceSubmitted(evidence_id="a"))
        bus.publish(ResourcesUpdated(evidence_id="a"))
        assert [type(e) for e in seen] == [ResourcesUpdated]

    def test_priority_then_subscription_order(self):
        bus = EventBus()
        order = []
        bus.subscribe(priority=1)(lambda e: order.append("low"))
        bus.subscribe(priority=10)(lambda e: order.append("high"))
        bus.subscribe(priority=1)(lambda e: order.append("low-2"))
        bus.publish(EvidenceSubmitted())
        assert order == ["high", "low", "low-2"]

    def test_failure_does_not_stop_delivery(self):
        bus = EventBus()
        seen = []

        @bus.subscribe(priority=5)
        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe()(seen.append)
        bus.publish(EvidenceSubmitted(evidence_id="x"))
        assert [e.evidence_id for e in seen] == ["x"]
        assert bus.metrics["error_count"] == 1
        assert bus.metrics["handled_count"] == 1

    def test_raising_error_callback_contained(self):
        def on_error(error):
            raise RuntimeError("alerting down")

        bus = EventBus(on_error=on_error)
        registry = EvidenceRegistry(bus=bus)

        @bus.subscribe(EvidenceSubmitted)
        def broken(event):
            raise RuntimeError("indexer down")

        evidence_id = registry.submit_evidence(
            "", None, [], "ab" * 32, "0xAAA", b"", "", caller="0xAAA"
        )
        assert registry.lookup_evidence(evidence_id) is not None
        assert bus.metrics["error_count"] == 1

    def test_event_dict_round_trip(self):
        event = ExtraInfoAttached(extra_id="e", parent_id="p", attachment_index=3)
        restored = event_from_dict(event.to_dict())
        assert restored == event
        assert restored.digest() == event.digest()

    def test_unknown_event_type(self):
        with pytest.raises(ValueError):
            event_from_dict({"event_type": "Nope"})


class TestEventJournal:
    """Journal attached by the registry."""

    def test_registry_journals_by_default(self, registry, submit):
        parent = submit()
        registry.attach_extra_info(parent, "0xAAA", b"", "", "", caller="0xAAA")
        registry.update_resources(parent, "x", "0xAAA", b"", caller="0xAAA")
        journal = registry.journal
        assert len(journal) == 3
        assert [e.event_type for e in journal.stream(parent)] == [
            "EvidenceSubmitted", "ExtraInfoAttached", "ResourcesUpdated",
        ]

    def test_journal_sees_events_before_failing_handler(self, registry, submit):
        @registry.bus.subscribe()
        def broken(event):
            raise RuntimeError("boom")

        submit()
        assert len(registry.journal) == 1

    def test_journal_disabled(self):
        from evreg.config import get_config_manager

        get_config_manager().set("events.journal_enabled", False)
        assert EvidenceRegistry().journal is None

    def test_sequence_and_versions(self):
        journal = EventJournal()
        e1 = journal.append(EvidenceSubmitted(evidence_id="a"))
        e2 = journal.append(ResourcesUpdated(evidence_id="a"))
        e3 = journal.append(EvidenceSubmitted(evidence_id="b"))
        assert [e.sequence for e in (e1, e2, e3)] == [1, 2, 3]
        assert [e.version for e in (e1, e2, e3)] == [1, 2, 1]
        assert journal.entries(start=1) == [e2, e3]
        assert e2.to_dict()["event"]["event_type"] == "ResourcesUpdated"
