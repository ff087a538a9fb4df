"""
EVREG Snapshots

Persists a registry's full state (records and every counter) as one
canonical JSON document, so a restored registry continues the identifier
sequence exactly where the original stopped.

    with state_lock("state.json"):
        registry = load_snapshot("state.json")
        ...
        digest = write_snapshot("state.json", registry)

The document is validated against SNAPSHOT_SCHEMA before anything is
restored. Events are not replayed on restore; the journal of a restored
registry starts empty.
"""

from __future__ import annotations

import pathlib
import sys
from contextlib import contextmanager
from functools import lru_cache
from typing import IO, Any, Dict, Iterator, Optional, Union

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from evreg.config import HASH_ALGORITHM_NAMES, VARIANTS, RegistryConfig
from evreg.core import load_json, write_canonical_json
from evreg.events import EventBus
from evreg.hardening import InvariantViolation, SnapshotError
from evreg.observability import RegistryLayer, get_logger
from evreg.records import Evidence, ExtraInfo
from evreg.registry import EvidenceRegistry
from evreg.version import PROTOCOL_VERSION

_logger = get_logger("snapshot", RegistryLayer.SNAPSHOT)

_SCHEMA_BASE = "https://schemas.evreg.dev/"
_HEX64 = {"type": "string", "pattern": "^[0-9a-f]{64}$"}
_HEX = {"type": "string", "pattern": "^([0-9a-f]{2})*$"}

EVIDENCE_RECORD_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "$id": _SCHEMA_BASE + "evidence-record.schema.json",
    "type": "object",
    "required": [
        "evidence_id", "content_hash", "account", "signature", "link",
        "prior_refs", "header", "payload", "resources", "provider",
    ],
    "properties": {
        "evidence_id": _HEX64,
        "content_hash": _HEX64,
        "account": {"type": "string"},
        "signature": _HEX,
        "link": {
            "type": "object",
            "required": ["kind", "target"],
            "additionalProperties": False,
            "properties": {
                "kind": {"enum": ["none", "main", "prior"]},
                "target": _HEX64,
            },
        },
        "prior_refs": {"type": "array", "items": {"type": "string"}},
        "header": {"type": "string"},
        "payload": {"type": "string"},
        "resources": {"type": "string"},
        "provider": {"type": "string"},
        "extra_count": {"type": "integer", "minimum": 0},
    },
}

EXTRA_INFO_RECORD_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "$id": _SCHEMA_BASE + "extra-info-record.schema.json",
    "type": "object",
    "required": [
        "extra_id", "parent_id", "account", "signature", "operation_hash",
        "payload", "provider",
    ],
    "properties": {
        "extra_id": _HEX64,
        "parent_id": _HEX64,
        "account": {"type": "string"},
        "signature": _HEX,
        "operation_hash": {"type": "string"},
        "payload": {"type": "string"},
        "provider": {"type": "string"},
    },
}

SNAPSHOT_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "$id": _SCHEMA_BASE + "snapshot.schema.json",
    "title": "EVREG registry snapshot",
    "type": "object",
    "required": [
        "protocol",
        "variant",
        "domain_id",
        "hash_algorithm",
        "submission_counter",
        "attachment_counters",
        "evidence",
        "extra_info",
    ],
    "additionalProperties": False,
    "properties": {
        "protocol": {"type": "string", "minLength": 1},
        "variant": {"enum": list(VARIANTS)},
        "domain_id": {"type": "string", "minLength": 1},
        "hash_algorithm": {"enum": list(HASH_ALGORITHM_NAMES)},
        "submission_counter": {"type": "integer", "minimum": 0},
        "attachment_counters": {
            "type": "object",
            "propertyNames": {"pattern": "^[0-9a-f]{64}$"},
            "additionalProperties": {"type": "integer", "minimum": 0},
        },
        "evidence": {
            "type": "array",
            "items": {"$ref": "evidence-record.schema.json"},
        },
        "extra_info": {
            "type": "array",
            "items": {"$ref": "extra-info-record.schema.json"},
        },
    },
}


@lru_cache(maxsize=1)
def _schema_registry() -> Registry:
    """Registry resolving the record schemas referenced by SNAPSHOT_SCHEMA."""
    return Registry().with_resources(
        (schema["$id"], Resource.from_contents(schema, default_specification=DRAFT202012))
        for schema in (EVIDENCE_RECORD_SCHEMA, EXTRA_INFO_RECORD_SCHEMA)
    )


def _validator() -> Draft202012Validator:
    return Draft202012Validator(SNAPSHOT_SCHEMA, registry=_schema_registry())


def validate_snapshot(data: Any) -> None:
    """Raise SnapshotError listing every schema violation in `data`."""
    errors = sorted(_validator().iter_errors(data), key=lambda e: list(e.absolute_path))
    if errors:
        messages = []
        for err in errors:
            path = "/".join(str(p) for p in err.absolute_path) or "<root>"
            messages.append(f"{path}: {err.message}")
        raise SnapshotError("Invalid snapshot: " + "; ".join(messages))


def export_state(registry: EvidenceRegistry) -> Dict[str, Any]:
    """Capture records and counters of `registry` as a JSON-ready dict."""
    evidence = []
    for record in registry.evidence.records():
        entry = record.to_dict()
        # Derived from the attachment counters on read.
        entry.pop("extra_count", None)
        evidence.append(entry)

    return {
        "protocol": PROTOCOL_VERSION,
        "variant": registry.variant,
        "domain_id": registry.domain_id,
        "hash_algorithm": registry.hash_algorithm,
        "submission_counter": registry.submissions.value,
        "attachment_counters": dict(registry.attachments.items()),
        "evidence": evidence,
        "extra_info": [record.to_dict() for record in registry.extra_info.records()],
    }


def restore_state(
    data: Dict[str, Any],
    config: Optional[RegistryConfig] = None,
    *,
    bus: Optional[EventBus] = None,
) -> EvidenceRegistry:
    """
    Build a registry from an exported state document.

    Variant, domain and hash algorithm come from the document, not from
    `config`, since identifiers derived under other settings would not match.

    Raises:
        SnapshotError: the document fails validation or is internally
            inconsistent
    """
    validate_snapshot(data)
    if data["protocol"] != PROTOCOL_VERSION:
        _logger.warning(
            "Restoring snapshot from another protocol revision",
            operation="restore_state",
            snapshot_protocol=data["protocol"],
            protocol=PROTOCOL_VERSION,
        )

    registry = EvidenceRegistry(
        config,
        bus=bus,
        variant=data["variant"],
        domain_id=data["domain_id"],
        hash_algorithm=data["hash_algorithm"],
    )
    try:
        for parent_id, value in sorted(data["attachment_counters"].items()):
            registry.attachments.restore(parent_id, value)
        registry.evidence.restore(
            (Evidence.from_dict(entry) for entry in data["evidence"]),
            data["submission_counter"],
        )
        registry.extra_info.restore(ExtraInfo.from_dict(entry) for entry in data["extra_info"])
    except (InvariantViolation, KeyError, ValueError) as exc:
        raise SnapshotError(f"Inconsistent snapshot: {exc}") from exc

    _logger.info(
        "Snapshot restored",
        operation="restore_state",
        evidence_count=len(registry.evidence),
        extra_info_count=len(registry.extra_info),
    )
    return registry


def write_snapshot(path: Union[str, pathlib.Path], registry: EvidenceRegistry) -> str:
    """Write `registry` as canonical JSON and return the SHA-256 of the bytes."""
    digest = write_canonical_json(pathlib.Path(path), export_state(registry))
    _logger.info("Snapshot written", operation="write_snapshot", path=str(path), digest=digest)
    return digest


def load_snapshot(
    path: Union[str, pathlib.Path],
    config: Optional[RegistryConfig] = None,
    *,
    bus: Optional[EventBus] = None,
) -> EvidenceRegistry:
    """Restore a registry from a file written by `write_snapshot`."""
    path = pathlib.Path(path)
    if not path.exists():
        raise SnapshotError(f"Snapshot not found: {path}")
    try:
        data = load_json(path)
    except ValueError as exc:
        raise SnapshotError(f"Snapshot is not valid JSON: {path}: {exc}") from exc
    return restore_state(data, config, bus=bus)


# ════════════════════════════════════════════════════════════════════════════
# INTER-PROCESS LOCK
# ════════════════════════════════════════════════════════════════════════════


if sys.platform == "win32":
    import msvcrt

    def _acquire(handle: IO[bytes]) -> None:
        handle.seek(0)
        while True:
            try:
                msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, 1)
                return
            except OSError:
                # LK_LOCK gives up after ten one-second attempts.
                continue

    def _release(handle: IO[bytes]) -> None:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)

else:
    import fcntl

    def _acquire(handle: IO[bytes]) -> None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)

    def _release(handle: IO[bytes]) -> None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@contextmanager
def state_lock(path: Union[str, pathlib.Path]) -> Iterator[pathlib.Path]:
    """
    Hold an exclusive inter-process lock for the snapshot at `path`.

    Processes sharing a snapshot file must hold this lock across load,
    mutation and write; otherwise two of them can restore the same counters
    and the later write drops the other's records. The lock is taken on a
    sibling `<name>.lock` file, which is left in place afterwards.
    """
    path = pathlib.Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    lock_path = path.with_name(path.name + ".lock")
    with open(lock_path, "a+b") as handle:
        _acquire(handle)
        _logger.debug("State lock acquired", operation="state_lock", path=str(lock_path))
        try:
            yield lock_path
        finally:
            _release(handle)
