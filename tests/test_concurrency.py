"""
Concurrency tests: counters never hand out a value twice under contention.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from evreg.records import Link


def _submit(registry, link=None, account="0xAAA"):
    return registry.submit_evidence(
        "", link, [], "ab" * 32, account, b"", "", caller=account,
    )


class TestConcurrentSubmission:
    """Many writers, one registry."""

    def test_main_submissions_unique(self, registry):
        with ThreadPoolExecutor(max_workers=8) as pool:
            ids = list(pool.map(lambda i: _submit(registry, account=f"0x{i % 3}"), range(200)))
        assert len(set(ids)) == 200
        assert registry.submissions.value == 200
        assert len(registry.evidence) == 200

    def test_mixed_attachments_unique(self, registry):
        parent = _submit(registry)

        def work(i):
            if i % 2:
                return _submit(registry, Link.main(parent))
            return registry.attach_extra_info(parent, "0xAAA", b"", "", "", caller="0xAAA")

        with ThreadPoolExecutor(max_workers=8) as pool:
            ids = list(pool.map(work, range(100)))

        assert len(set(ids)) == 100
        assert registry.attachment_count(parent) == 100
        assert len(registry.evidence) + len(registry.extra_info) == 101

    def test_concurrent_updates_last_writer_wins(self, registry):
        evidence_id = _submit(registry)

        def update(i):
            return registry.update_resources(evidence_id, f"loc-{i}", "0xAAA", b"", caller="0xAAA")

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(update, range(50)))

        final = registry.fetch_evidence(evidence_id).resources
        assert final in {r.resources for r in results}
        assert len(registry.journal.stream(evidence_id)) == 51

    @pytest.mark.slow
    def test_heavy_contention(self, registry):
        parents = [_submit(registry, account=f"0x{i}") for i in range(10)]

        def work(i):
            parent = parents[i % len(parents)]
            if i % 3 == 0:
                return _submit(registry, account=f"0x{i}")
            if i % 3 == 1:
                return _submit(registry, Link.main(parent))
            return registry.attach_extra_info(parent, "0xAAA", b"", "", "", caller="0xAAA")

        with ThreadPoolExecutor(max_workers=32) as pool:
            ids = list(pool.map(work, range(5000)))

        assert len(set(ids)) == 5000
        assert sum(registry.attachment_count(p) for p in parents) == 5000 - 1667
