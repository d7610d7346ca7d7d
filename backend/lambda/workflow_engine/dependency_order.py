"""dependency_order.py — Ordering of document types by rule dependencies.

A rule's validation types are prerequisites of its action types. The matrix
view lists prerequisites first; the flowchart view groups types into columns.
Cycles never raise. The depth-first order skips already-visited types, and
Kahn columns put whatever remains cyclic into one final column. Both keep the
caller's original order wherever the edges leave a choice, so the result is
deterministic.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Sequence, Set

from rule_grammar import ParsedRule


def prerequisite_map(rules: Iterable[ParsedRule]) -> Dict[str, List[str]]:
    """dependent type -> prerequisite types (self-edges dropped)."""
    prereqs: Dict[str, List[str]] = {}
    for rule in rules:
        for dependent in rule.produces:
            bucket = prereqs.setdefault(dependent, [])
            for prerequisite in rule.depends_on:
                if prerequisite != dependent and prerequisite not in bucket:
                    bucket.append(prerequisite)
    return prereqs


def topological_order(types: Sequence[str], rules: Iterable[ParsedRule]) -> List[str]:
    """Depth-first topological sort of ``types``; prerequisites come first."""
    prereqs = prerequisite_map(rules)
    known = set(types)
    visited: Set[str] = set()
    ordered: List[str] = []

    def visit(node: str) -> None:
        if node in visited:
            return
        visited.add(node)
        for prerequisite in prereqs.get(node, []):
            if prerequisite in known:
                visit(prerequisite)
        ordered.append(node)

    for node in types:
        visit(node)
    return ordered


def dependency_levels(types: Sequence[str], rules: Iterable[ParsedRule]) -> List[List[str]]:
    """Kahn-style columns; types left in cycles share a final column."""
    prereqs = prerequisite_map(rules)
    known = set(types)
    indegree = {t: sum(1 for p in prereqs.get(t, []) if p in known) for t in types}
    dependents: Dict[str, List[str]] = {t: [] for t in types}
    for t in types:
        for p in prereqs.get(t, []):
            if p in known:
                dependents[p].append(t)

    levels: List[List[str]] = []
    placed: Set[str] = set()
    current = [t for t in types if indegree[t] == 0]
    while current:
        levels.append(current)
        placed.update(current)
        for t in current:
            for d in dependents[t]:
                indegree[d] -= 1
        current = [t for t in types if t not in placed and indegree[t] == 0]

    leftover = [t for t in types if t not in placed]
    if leftover:
        levels.append(leftover)
    return levels
