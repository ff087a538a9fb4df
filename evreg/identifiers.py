"""
EVREG Identifier Derivation

Deterministic 32-byte identifiers for evidence and attached records.

Derivation
──────────

    main:  id = H(domain_id ‖ content_hash ‖ account ‖ counter)
    sub:   id = H(parent_id ‖ parent_counter)

    domain_id       UTF-8 bytes of the configured domain-separation constant
    content_hash    32 raw bytes
    account         UTF-8 bytes of the submitting identity
    parent_id       32 raw bytes
    counter         32-byte big-endian unsigned integer

Every field except the account is fixed width, so the concatenation is
unambiguous. H is SHA-256 unless configured otherwise.

Counters
────────

Uniqueness of identifiers rests on the counters, not on the inputs: the same
(content_hash, account) pair may be submitted any number of times. A counter
is read, incremented and written as one step by the allocator that owns it,
and the allocator's lock is held until the caller has derived the identifier
and written the record. Two derivations can therefore never consume the same
counter value.

    with submissions.allocate() as counter:
        evidence_id = derive_main(domain_id, content_hash, account, counter)
        records[evidence_id] = record
"""

from __future__ import annotations

import hashlib
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Tuple

from evreg.hardening import InvariantChecker


COUNTER_WIDTH_BYTES = 32

HASH_ALGORITHMS: Dict[str, Callable[[bytes], bytes]] = {
    "sha256": lambda data: hashlib.sha256(data).digest(),
    "sha3_256": lambda data: hashlib.sha3_256(data).digest(),
    "blake2b": lambda data: hashlib.blake2b(data, digest_size=32).digest(),
}


def _hash(algorithm: str, data: bytes) -> str:
    try:
        fn = HASH_ALGORITHMS[algorithm]
    except KeyError:
        raise ValueError(f"Unsupported hash algorithm: {algorithm}") from None
    return fn(data).hex()


def encode_counter(counter: int) -> bytes:
    """Encode a counter as a 32-byte big-endian unsigned integer."""
    if counter < 0:
        raise ValueError(f"Counter must be non-negative, got {counter}")
    return counter.to_bytes(COUNTER_WIDTH_BYTES, "big")


def derive_main(
    domain_id: str,
    content_hash: str,
    account: str,
    counter: int,
    algorithm: str = "sha256",
) -> str:
    """Derive the identifier of an independent (main) evidence record."""
    data = (
        domain_id.encode("utf-8")
        + bytes.fromhex(content_hash)
        + account.encode("utf-8")
        + encode_counter(counter)
    )
    return _hash(algorithm, data)


def derive_sub(parent_id: str, parent_counter: int, algorithm: str = "sha256") -> str:
    """Derive the identifier of a record attached to `parent_id`."""
    return _hash(algorithm, bytes.fromhex(parent_id) + encode_counter(parent_counter))


# ════════════════════════════════════════════════════════════════════════════
# COUNTER ALLOCATORS
# ════════════════════════════════════════════════════════════════════════════


class SubmissionCounter:
    """Global counter for main-mode derivations, guarded by a single lock."""

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    @contextmanager
    def allocate(self) -> Iterator[int]:
        """Advance the counter and hold the lock until the block exits.

        The value is consumed even if the block raises, so a counter value
        is never handed out twice.
        """
        with self._lock:
            self._value += 1
            yield self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def restore(self, value: int) -> None:
        with self._lock:
            InvariantChecker.check_monotonic_increase("submission_counter", self._value, value)
            self._value = value


class AttachmentCounters:
    """Per-parent attachment counters, each guarded by its own lock.

    A counter entry is created the first time a parent is referenced,
    whether or not the parent was ever submitted.
    """

    def __init__(self):
        self._values: Dict[str, int] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, parent_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(parent_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[parent_id] = lock
            return lock

    @contextmanager
    def allocate(self, parent_id: str) -> Iterator[int]:
        """Advance `parent_id`'s counter and hold its lock until the block exits."""
        with self._lock_for(parent_id):
            with self._guard:
                value = self._values.get(parent_id, 0) + 1
                self._values[parent_id] = value
            yield value

    def get(self, parent_id: str) -> int:
        with self._guard:
            return self._values.get(parent_id, 0)

    def items(self) -> List[Tuple[str, int]]:
        with self._guard:
            return sorted(self._values.items())

    def restore(self, parent_id: str, value: int) -> None:
        with self._lock_for(parent_id):
            with self._guard:
                InvariantChecker.check_monotonic_increase(
                    f"attachment_counter[{parent_id}]",
                    self._values.get(parent_id, 0),
                    value,
                )
                self._values[parent_id] = value
