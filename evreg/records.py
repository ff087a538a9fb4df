"""
EVREG Records

Immutable record types stored by the registry:

    Evidence    A content hash asserted by an account, with provenance
    ExtraInfo   A side-channel operation record attached to a parent evidence
    Link        The parent/prior reference carried by an evidence record

Unknown identifiers resolve to the zero-valued sentinels EMPTY_EVIDENCE and
EMPTY_EXTRA_INFO rather than raising. `is_empty` recognizes a sentinel: a
zero content hash for evidence, a zero parent for extra info.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Tuple

from evreg.hardening import ZERO_DIGEST


class RegistryVariant(Enum):
    """Which record model a registry runs."""
    SIDE_CHANNEL = "side-channel"   # main links, mutable locator, extra info
    CHAINED = "chained"             # prior links, fully immutable records


class LinkKind(Enum):
    """What an evidence record's link points at."""
    NONE = "none"
    MAIN = "main"     # attached to a main evidence (side-channel variant)
    PRIOR = "prior"   # next record in a chain (chained variant)


@dataclass(frozen=True)
class Link:
    """Parent reference of an evidence record."""
    kind: LinkKind = LinkKind.NONE
    target: str = ZERO_DIGEST

    @classmethod
    def none(cls) -> "Link":
        return cls()

    @classmethod
    def main(cls, evidence_id: str) -> "Link":
        return cls(LinkKind.MAIN, evidence_id)

    @classmethod
    def prior(cls, evidence_id: str) -> "Link":
        return cls(LinkKind.PRIOR, evidence_id)

    @property
    def is_set(self) -> bool:
        return self.kind != LinkKind.NONE and self.target != ZERO_DIGEST

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind.value, "target": self.target}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "Link":
        return cls(LinkKind(data["kind"]), data["target"])


@dataclass(frozen=True)
class Evidence:
    """
    An evidence record.

    Everything except `resources` and `extra_count` is fixed at creation.
    `extra_count` mirrors the attachment counter of this identifier at the
    time the record was read.
    """
    evidence_id: str = ZERO_DIGEST
    content_hash: str = ZERO_DIGEST
    account: str = ""
    signature: bytes = b""
    link: Link = field(default_factory=Link)
    prior_refs: Tuple[str, ...] = ()
    header: str = ""
    payload: str = ""
    resources: str = ""
    provider: str = ""
    extra_count: int = 0

    @property
    def is_empty(self) -> bool:
        """True for the not-found sentinel."""
        return self.content_hash == ZERO_DIGEST

    def with_resources(self, resources: str) -> "Evidence":
        return replace(self, resources=resources)

    def with_extra_count(self, extra_count: int) -> "Evidence":
        return replace(self, extra_count=extra_count)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "evidence_id": self.evidence_id,
            "content_hash": self.content_hash,
            "account": self.account,
            "signature": self.signature.hex(),
            "link": self.link.to_dict(),
            "prior_refs": list(self.prior_refs),
            "header": self.header,
            "payload": self.payload,
            "resources": self.resources,
            "provider": self.provider,
            "extra_count": self.extra_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Evidence":
        return cls(
            evidence_id=data["evidence_id"],
            content_hash=data["content_hash"],
            account=data["account"],
            signature=bytes.fromhex(data["signature"]),
            link=Link.from_dict(data["link"]),
            prior_refs=tuple(data.get("prior_refs", ())),
            header=data.get("header", ""),
            payload=data.get("payload", ""),
            resources=data.get("resources", ""),
            provider=data["provider"],
            extra_count=data.get("extra_count", 0),
        )


@dataclass(frozen=True)
class ExtraInfo:
    """An operation record attached to a parent evidence."""
    extra_id: str = ZERO_DIGEST
    parent_id: str = ZERO_DIGEST
    account: str = ""
    signature: bytes = b""
    operation_hash: str = ""
    payload: str = ""
    provider: str = ""

    @property
    def is_empty(self) -> bool:
        """True for the not-found sentinel."""
        return self.extra_id == ZERO_DIGEST

    def to_dict(self) -> Dict[str, Any]:
        return {
            "extra_id": self.extra_id,
            "parent_id": self.parent_id,
            "account": self.account,
            "signature": self.signature.hex(),
            "operation_hash": self.operation_hash,
            "payload": self.payload,
            "provider": self.provider,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtraInfo":
        return cls(
            extra_id=data["extra_id"],
            parent_id=data["parent_id"],
            account=data["account"],
            signature=bytes.fromhex(data["signature"]),
            operation_hash=data["operation_hash"],
            payload=data.get("payload", ""),
            provider=data["provider"],
        )


EMPTY_EVIDENCE = Evidence()
EMPTY_EXTRA_INFO = ExtraInfo()


def content_digest(data: bytes) -> str:
    """SHA-256 of raw content, for clients computing a content hash."""
    return hashlib.sha256(data).hexdigest()

