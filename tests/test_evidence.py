"""
Evidence submission, lookup and resource update tests (side-channel variant).
"""

import hashlib

import pytest

from evreg.hardening import AuthorizationError, ValidationError, ZERO_DIGEST
from evreg.records import EMPTY_EVIDENCE, Link, LinkKind, content_digest

DOMAIN = "evreg:evidence:v1"
DIGEST = hashlib.sha256(b"file-contents").hexdigest()


def _main_id(counter: int, account: str = "0xAAA") -> str:
    return hashlib.sha256(
        DOMAIN.encode()
        + bytes.fromhex(DIGEST)
        + account.encode()
        + counter.to_bytes(32, "big")
    ).hexdigest()


class TestSubmitMain:
    """Main-mode submissions."""

    def test_first_and_second_identical_submissions(self, submit):
        first = submit()
        second = submit()
        assert first == _main_id(1)
        assert second == _main_id(2)

    def test_identical_arguments_never_repeat(self, submit):
        ids = {submit() for _ in range(20)}
        assert len(ids) == 20

    def test_round_trip_preserves_fields(self, registry, submit):
        evidence_id = submit(header="H", payload="D", signature=b"\xde\xad")
        record = registry.fetch_evidence(evidence_id)
        assert record.evidence_id == evidence_id
        assert record.content_hash == DIGEST
        assert record.account == "0xAAA"
        assert record.signature == b"\xde\xad"
        assert record.header == "H"
        assert record.payload == "D"
        assert record.provider == "0xAAA"
        assert record.resources == ""
        assert record.link.kind == LinkKind.NONE
        assert not record.is_empty

    def test_provider_is_caller_not_account(self, registry, submit):
        evidence_id = submit(account="0xAAA", caller="0xRELAYER")
        record = registry.fetch_evidence(evidence_id)
        assert record.account == "0xAAA"
        assert record.provider == "0xRELAYER"

    def test_content_hash_as_bytes(self, registry, submit):
        evidence_id = submit(content_hash=bytes.fromhex(DIGEST))
        assert evidence_id == _main_id(1)
        assert registry.fetch_evidence(evidence_id).content_hash == DIGEST

    def test_content_hash_normalized(self, registry, submit):
        evidence_id = submit(content_hash="0x" + DIGEST.upper())
        assert evidence_id == _main_id(1)

    def test_prior_refs_kept_verbatim(self, registry, submit):
        evidence_id = submit(prior_refs=["urn:doc:1", "ab" * 32])
        assert registry.fetch_evidence(evidence_id).prior_refs == ("urn:doc:1", "ab" * 32)

    def test_bare_string_prior_ref_is_one_ref(self, registry, submit):
        evidence_id = submit(prior_refs="urn:doc:1")
        assert registry.fetch_evidence(evidence_id).prior_refs == ("urn:doc:1",)

    def test_content_digest_helper(self):
        assert content_digest(b"file-contents") == DIGEST


class TestSubmitValidation:
    """Rejected submissions leave no trace."""

    @pytest.mark.parametrize("bad", [None, "", b"", ZERO_DIGEST, "xyz", "ab" * 31])
    def test_bad_content_hash(self, registry, submit, bad):
        with pytest.raises(ValidationError) as exc:
            submit(content_hash=bad)
        assert exc.value.field == "content_hash"
        assert len(registry.evidence) == 0
        assert registry.submissions.value == 0

    def test_counter_continues_after_rejection(self, submit):
        with pytest.raises(ValidationError):
            submit(content_hash=ZERO_DIGEST)
        assert submit() == _main_id(1)

    def test_prior_link_rejected_in_side_channel(self, registry, submit):
        parent = submit()
        with pytest.raises(ValidationError) as exc:
            submit(link=Link.prior(parent))
        assert exc.value.field == "link"
        assert len(registry.evidence) == 1

    def test_malformed_link_target(self, submit):
        with pytest.raises(ValidationError):
            submit(link=Link.main("not-an-id"))

    def test_bad_signature_hex(self, submit):
        with pytest.raises(ValidationError):
            submit(signature="zz")


class TestSubmitSub:
    """Evidence attached to a main evidence."""

    def test_sub_identifier_from_parent_counter(self, registry, submit):
        parent = submit()
        child = submit(link=Link.main(parent))
        expected = hashlib.sha256(bytes.fromhex(parent) + (1).to_bytes(32, "big")).hexdigest()
        assert child == expected
        record = registry.fetch_evidence(child)
        assert record.link == Link.main(parent)

    def test_sub_does_not_advance_global_counter(self, registry, submit):
        parent = submit()
        submit(link=Link.main(parent))
        assert registry.submissions.value == 1
        assert registry.attachment_count(parent) == 1

    def test_zero_link_target_is_main_mode(self, registry, submit):
        evidence_id = submit(link=Link.main(ZERO_DIGEST))
        assert evidence_id == _main_id(1)

    def test_unknown_parent_accepted(self, registry, submit):
        parent = "cd" * 32
        child = submit(link=Link.main(parent))
        assert registry.lookup_evidence(parent) is None
        assert registry.fetch_evidence(child).link.target == parent
        assert registry.attachment_count(parent) == 1

    def test_parent_extra_count_reflects_attachments(self, registry, submit):
        parent = submit()
        submit(link=Link.main(parent))
        submit(link=Link.main(parent))
        assert registry.fetch_evidence(parent).extra_count == 2


class TestReads:
    """fetch returns sentinels; lookup returns None."""

    def test_unknown_fetch_is_sentinel(self, registry):
        record = registry.fetch_evidence("12" * 32)
        assert record == EMPTY_EVIDENCE
        assert record.is_empty

    def test_malformed_fetch_is_sentinel(self, registry):
        assert registry.fetch_evidence("nope").is_empty

    def test_lookup(self, registry, submit):
        evidence_id = submit()
        assert registry.lookup_evidence(evidence_id).evidence_id == evidence_id
        assert registry.lookup_evidence("12" * 32) is None

    def test_lookup_accepts_uppercase(self, registry, submit):
        evidence_id = submit()
        assert registry.lookup_evidence(evidence_id.upper()) is not None


class TestUpdateResources:
    """The resource locator is mutable by the provider only."""

    def test_provider_updates(self, registry, submit):
        evidence_id = submit()
        updated = registry.update_resources(
            evidence_id, "ipfs://bafy", "0xAAA", b"\x05", caller="0xAAA"
        )
        assert updated.resources == "ipfs://bafy"
        assert registry.fetch_evidence(evidence_id).resources == "ipfs://bafy"

    def test_only_resources_change(self, registry, submit):
        evidence_id = submit()
        before = registry.fetch_evidence(evidence_id)
        registry.update_resources(evidence_id, "s3://x", "0xAAA", b"", caller="0xAAA")
        after = registry.fetch_evidence(evidence_id)
        assert after.with_resources("") == before

    def test_update_repeatedly(self, registry, submit):
        evidence_id = submit()
        for locator in ("a", "b", "c"):
            registry.update_resources(evidence_id, locator, "0xAAA", b"", caller="0xAAA")
        assert registry.fetch_evidence(evidence_id).resources == "c"

    def test_non_provider_rejected(self, registry, submit):
        evidence_id = submit()
        with pytest.raises(AuthorizationError) as exc:
            registry.update_resources(evidence_id, "evil", "0xBBB", b"", caller="0xBBB")
        assert exc.value.evidence_id == evidence_id
        assert exc.value.caller == "0xBBB"
        assert registry.fetch_evidence(evidence_id).resources == ""

    def test_account_argument_does_not_authorize(self, registry, submit):
        evidence_id = submit()
        with pytest.raises(AuthorizationError):
            registry.update_resources(evidence_id, "evil", "0xAAA", b"", caller="0xBBB")

    def test_unknown_evidence_rejected(self, registry):
        with pytest.raises(AuthorizationError):
            registry.update_resources("12" * 32, "x", "0xAAA", b"", caller="0xAAA")
        assert registry.lookup_evidence("12" * 32) is None

    def test_empty_caller_never_matches_sentinel(self, registry):
        with pytest.raises(AuthorizationError):
            registry.update_resources(ZERO_DIGEST, "x", "", b"", caller="")


class TestVersion:
    """Protocol version reporting."""

    def test_registry_version(self, registry):
        from evreg.version import PROTOCOL_VERSION, protocol_version

        assert registry.version() == PROTOCOL_VERSION == protocol_version()

    def test_stats(self, registry, submit):
        submit()
        stats = registry.stats()
        assert stats["evidence_count"] == 1
        assert stats["submission_counter"] == 1
        assert stats["events"]["published_count"] == 1
