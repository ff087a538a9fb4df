"""
EVREG: Evidence Registry

Append-only registry of evidence records: content hashes asserted by an
account, identified by deterministic counter-derived identifiers, linked
into parent/child trees or prior-chains, and announced on an event channel.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                           EVIDENCE REGISTRY                              │
    │                                                                          │
    │  SURFACE                                                                 │
    │    registry.py       Facade wiring stores, counters, gate and bus        │
    │    cli.py            Command line over a snapshot file                   │
    │    snapshot.py       Canonical JSON export and restore                   │
    │                                                                          │
    │  STATE                                                                   │
    │    store.py          Evidence and extra-info stores                      │
    │    identifiers.py    Main/sub derivation and counter allocators          │
    │    records.py        Immutable record types and sentinels                │
    │    authorization.py  Provider gate with audit trail                      │
    │                                                                          │
    │  INFRASTRUCTURE                                                          │
    │    events.py         Event bus, journal and projections                  │
    │    graph.py          Evidence graph read model                           │
    │    config.py         YAML and environment configuration                  │
    │    observability.py  Structured logging and audit chain                  │
    │    hardening.py      Errors, validators and thread-safe containers       │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Variants
────────

    side-channel   Evidence may link to a main evidence; the resource locator
                   is mutable by the provider; extra info can be attached.
    chained        Evidence may link to a prior evidence; records are fully
                   immutable; extra info is not available.
"""

from evreg.version import __version__, PROTOCOL_VERSION


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import EVREG modules on first access."""

    if name in ("EvidenceRegistry",):
        from evreg import registry
        return getattr(registry, name)

    if name in ("Evidence", "ExtraInfo", "Link", "LinkKind", "RegistryVariant",
                "EMPTY_EVIDENCE", "EMPTY_EXTRA_INFO", "content_digest"):
        from evreg import records
        return getattr(records, name)

    if name in ("RegistryError", "ValidationError", "AuthorizationError",
                "UnsupportedOperationError", "SnapshotError", "InvariantViolation"):
        from evreg import hardening
        return getattr(hardening, name)

    if name in ("EventBus", "EventJournal", "EvidenceSubmitted",
                "ResourcesUpdated", "ExtraInfoAttached"):
        from evreg import events
        return getattr(events, name)

    if name in ("EvidenceGraph",):
        from evreg import graph
        return getattr(graph, name)

    if name in ("export_state", "restore_state", "write_snapshot", "load_snapshot"):
        from evreg import snapshot
        return getattr(snapshot, name)

    if name in ("derive_main", "derive_sub"):
        from evreg import identifiers
        return getattr(identifiers, name)

    raise AttributeError(f"module 'evreg' has no attribute '{name}'")


__all__ = [
    "__version__",
    "PROTOCOL_VERSION",
    "EvidenceRegistry",
    "Evidence",
    "ExtraInfo",
    "Link",
    "LinkKind",
    "RegistryVariant",
    "EMPTY_EVIDENCE",
    "EMPTY_EXTRA_INFO",
    "content_digest",
    "RegistryError",
    "ValidationError",
    "AuthorizationError",
    "UnsupportedOperationError",
    "SnapshotError",
    "InvariantViolation",
    "EventBus",
    "EventJournal",
    "EvidenceSubmitted",
    "ResourcesUpdated",
    "ExtraInfoAttached",
    "EvidenceGraph",
    "export_state",
    "restore_state",
    "write_snapshot",
    "load_snapshot",
    "derive_main",
    "derive_sub",
]
