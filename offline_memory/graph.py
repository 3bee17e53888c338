"""Knowledge graph computed on demand from stored facts.

Every fact ``(subject, predicate, object)`` is an undirected edge between two
entities.  Nothing here is persisted: each call reloads the facts, so the
graph always reflects the current fact store.

Path finding is breadth-first with two visitation rules:

* a directed traversal ``(u, v)`` is explored at most once per search, which
  bounds total work on dense graphs; an edge consumed by one path is not
  reused by a later one
* a path never revisits one of its own nodes

Between any pair of entities only the highest-confidence fact is walked.
"""

from __future__ import annotations

import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple

from .facts import Fact, FactStore

logger = logging.getLogger(__name__)

TOP_N = 10


@dataclass
class GraphPath:
    """A chain of facts linking two entities."""
    nodes: List[str]
    edges: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def length(self) -> int:
        return len(self.edges)

    def to_dict(self) -> Dict[str, Any]:
        return {"nodes": list(self.nodes), "edges": list(self.edges), "length": self.length}


def _edge_dict(fact: Fact) -> Dict[str, Any]:
    return {
        "subject": fact.subject,
        "predicate": fact.predicate,
        "object": fact.object,
        "confidence": fact.confidence,
        "fact_id": fact.id,
    }


def _top(counter: Counter, key: str) -> List[Dict[str, Any]]:
    ranked = sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))[:TOP_N]
    return [{key: name, "count": n} for name, n in ranked]


class KnowledgeGraph:
    """Entity/relation queries over a :class:`FactStore`."""

    def __init__(self, fact_store: FactStore) -> None:
        self.facts = fact_store

    def _load(self) -> List[Fact]:
        return self.facts.all_facts()

    def _adjacency(self) -> Dict[str, Dict[str, Fact]]:
        """entity -> neighbour -> strongest fact joining them."""
        adj: Dict[str, Dict[str, Fact]] = {}
        for f in self._load():
            if f.subject == f.object:
                continue
            for u, v in ((f.subject, f.object), (f.object, f.subject)):
                best = adj.setdefault(u, {}).get(v)
                if best is None or f.confidence > best.confidence:
                    adj[u][v] = f
        return adj

    # ------------------------------------------------------------------
    # Local queries
    # ------------------------------------------------------------------

    def neighbors(self, entity: str) -> List[str]:
        """Entities sharing a fact with ``entity`` (sorted, self excluded)."""
        out = set()
        for f in self._load():
            if f.subject == entity:
                out.add(f.object)
            if f.object == entity:
                out.add(f.subject)
        out.discard(entity)
        return sorted(out)

    def entity_edges(self, entity: str) -> List[Fact]:
        """Facts where ``entity`` is subject or object, strongest first."""
        edges = [f for f in self._load() if f.subject == entity or f.object == entity]
        edges.sort(key=lambda f: f.confidence, reverse=True)
        return edges

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def find_paths(
        self,
        from_entity: str,
        to_entity: str,
        max_depth: int = 4,
        max_paths: int = 5,
    ) -> List[GraphPath]:
        """Shortest-first paths between two entities, at most ``max_paths``."""
        if from_entity == to_entity or max_depth < 1 or max_paths < 1:
            return []

        adj = self._adjacency()
        if from_entity not in adj or to_entity not in adj:
            return []

        results: List[GraphPath] = []
        visited: set[Tuple[str, str]] = set()
        queue: Deque[Tuple[str, List[str], List[Dict[str, Any]]]] = deque()
        queue.append((from_entity, [from_entity], []))

        while queue:
            node, nodes, edges = queue.popleft()
            if len(edges) >= max_depth:
                continue
            for nxt in sorted(adj.get(node, {})):
                if (node, nxt) in visited or nxt in nodes:
                    continue
                visited.add((node, nxt))
                path_nodes = nodes + [nxt]
                path_edges = edges + [_edge_dict(adj[node][nxt])]
                if nxt == to_entity:
                    results.append(GraphPath(nodes=path_nodes, edges=path_edges))
                    if len(results) >= max_paths:
                        return results
                    continue
                queue.append((nxt, path_nodes, path_edges))

        logger.debug("find_paths %s -> %s: %d paths", from_entity, to_entity, len(results))
        return results

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        facts = self._load()
        entity_counts: Counter = Counter()
        predicate_counts: Counter = Counter()
        for f in facts:
            entity_counts[f.subject] += 1
            entity_counts[f.object] += 1
            predicate_counts[f.predicate] += 1

        total_entities = len(entity_counts)
        avg = round(2 * len(facts) / total_entities, 1) if total_entities else 0.0

        return {
            "total_facts": len(facts),
            "total_entities": total_entities,
            "total_predicates": len(predicate_counts),
            "avg_connections_per_entity": avg,
            "top_entities": _top(entity_counts, "entity"),
            "top_predicates": _top(predicate_counts, "predicate"),
        }

    def export_graph(
        self,
        entity: Optional[str] = None,
        min_confidence: Optional[float] = None,
        limit: int = 1000,
    ) -> Dict[str, List[Dict[str, Any]]]:
        """Nodes/edges JSON for visualisation.

        ``entity`` takes precedence over ``min_confidence``; the two are
        never combined.
        """
        if entity is not None:
            facts = self.entity_edges(entity)
        elif min_confidence is not None:
            facts = [f for f in self._load() if f.confidence >= min_confidence]
        else:
            facts = self._load()
        facts = facts[: max(0, int(limit))]

        degree: Counter = Counter()
        edges: List[Dict[str, Any]] = []
        for f in facts:
            degree[f.subject] += 1
            degree[f.object] += 1
            edges.append({
                "id": f.id,
                "subject": f.subject,
                "object": f.object,
                "predicate": f.predicate,
                "confidence": f.confidence,
            })

        nodes = [{"id": name, "label": name, "degree": degree[name]} for name in sorted(degree)]
        return {"nodes": nodes, "edges": edges}
