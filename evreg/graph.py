"""
EVREG Evidence Graph

Read model an external indexer builds from registry events alone, without
access to registry state. Feed it live from the bus or rebuild it from the
journal:

    graph = EvidenceGraph()
    graph.attach(registry.bus)          # live
    graph.rebuild(registry.journal)     # replay

Links are lazy: an edge may point at an identifier the graph has never seen
a submission for.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from evreg.events import (
    Event,
    EventBus,
    EvidenceSubmitted,
    ExtraInfoAttached,
    Projection,
    ResourcesUpdated,
)


@dataclass
class EvidenceNode:
    """What the graph knows about one evidence identifier."""
    evidence_id: str
    content_hash: str = ""
    provider: str = ""
    parent_id: str = ""
    link_kind: str = "none"
    prior_refs: List[str] = field(default_factory=list)
    resources: str = ""


class EvidenceGraph(Projection):
    """Parent/child, prior-reference and attachment edges keyed by identifier."""

    def __init__(self):
        super().__init__()
        self._lock = threading.RLock()
        self._reset()

    def _reset(self) -> None:
        with self._lock:
            self.nodes: Dict[str, EvidenceNode] = {}
            self._children: Dict[str, List[str]] = defaultdict(list)
            self._extras: Dict[str, List[str]] = defaultdict(list)
            self._referenced_by: Dict[str, List[str]] = defaultdict(list)

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(EvidenceSubmitted, ResourcesUpdated, ExtraInfoAttached)(self.handle_event)

    def handle_event(self, event: Event) -> None:
        with self._lock:
            if isinstance(event, EvidenceSubmitted):
                node = EvidenceNode(
                    evidence_id=event.evidence_id,
                    content_hash=event.content_hash,
                    provider=event.provider,
                    parent_id=event.link_target,
                    link_kind=event.link_kind,
                    prior_refs=list(event.prior_refs),
                )
                self.nodes[event.evidence_id] = node
                if event.link_target:
                    self._children[event.link_target].append(event.evidence_id)
                for ref in event.prior_refs:
                    self._referenced_by[ref].append(event.evidence_id)
            elif isinstance(event, ResourcesUpdated):
                node = self.nodes.get(event.evidence_id)
                if node is not None:
                    node.resources = event.resources
            elif isinstance(event, ExtraInfoAttached):
                self._extras[event.parent_id].append(event.extra_id)

    def children(self, evidence_id: str) -> List[str]:
        """Evidence linked to `evidence_id`, in submission order."""
        with self._lock:
            return list(self._children.get(evidence_id, ()))

    def extra_infos(self, evidence_id: str) -> List[str]:
        """Extra-info records attached to `evidence_id`, in attachment order."""
        with self._lock:
            return list(self._extras.get(evidence_id, ()))

    def referenced_by(self, evidence_id: str) -> List[str]:
        """Evidence naming `evidence_id` among its prior references."""
        with self._lock:
            return list(self._referenced_by.get(evidence_id, ()))

    def lineage(self, evidence_id: str) -> List[str]:
        """Walk parent links from `evidence_id` back to its root.

        The result starts with `evidence_id`. It ends at the first record
        without a parent, or at a parent the graph has no submission for.
        """
        with self._lock:
            path = [evidence_id]
            seen: Set[str] = {evidence_id}
            node: Optional[EvidenceNode] = self.nodes.get(evidence_id)
            while node is not None and node.parent_id:
                parent = node.parent_id
                if parent in seen:
                    break
                path.append(parent)
                seen.add(parent)
                node = self.nodes.get(parent)
            return path

    def descendants(self, evidence_id: str) -> List[str]:
        """All evidence transitively linked below `evidence_id`, breadth first."""
        with self._lock:
            out: List[str] = []
            seen: Set[str] = {evidence_id}
            frontier = [evidence_id]
            while frontier:
                next_frontier: List[str] = []
                for current in frontier:
                    for child in self._children.get(current, ()):
                        if child not in seen:
                            seen.add(child)
                            out.append(child)
                            next_frontier.append(child)
                frontier = next_frontier
            return out
