"""Capability Gap Search.

Resolves capabilities no task template covers into ranked node options.
Each capability is searched with a progressive strategy that stops at the
first term returning at least one node:

    primary      search_terms[0] (or the capability name)
    alternative  each remaining search term
    optimized    terms from SEARCH_OPTIMIZATIONS keyed by words in the name,
                 or the name's significant words when no key matches

Searches are read-only and independent, so capabilities run concurrently;
results come back in input order.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger("workflow_orchestrator.registry.gap_search")

SEARCH_LIMIT = 5

SEARCH_OPTIMIZATIONS: dict[str, list[str]] = {
    "database": ["postgres", "mysql", "mongodb"],
    "notify": ["slack", "email", "telegram"],
    "notification": ["slack", "email", "telegram"],
    "api": ["httpRequest", "webhook"],
    "email": ["gmail", "emailSend"],
    "sheet": ["googleSheets", "airtable"],
    "spreadsheet": ["googleSheets", "airtable"],
    "schedule": ["scheduleTrigger", "cron"],
    "cron": ["scheduleTrigger", "cron"],
    "transform": ["set", "code"],
    "file": ["readBinaryFile", "writeBinaryFile"],
    "chat": ["slack", "telegram", "discord"],
    "message": ["slack", "telegram", "discord"],
}

_STOP_WORDS = frozenset({"the", "and", "for", "with", "from", "into"})


@dataclass
class CapabilityGap:
    """A capability the workflow needs but no task template provided."""

    name: str
    search_terms: list[str] = field(default_factory=list)
    alternative_terms: list[str] = field(default_factory=list)
    description: str = ""


@dataclass
class GapSearchResult:
    capability: str
    strategy: str  # "primary" | "alternative" | "optimized" | "not_found"
    term_used: str | None = None
    nodes: list[dict[str, Any]] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return bool(self.nodes)


def optimized_terms(capability_name: str) -> list[str]:
    """Search terms derived from the capability name, de-duplicated."""
    lower = capability_name.lower()
    terms: list[str] = []
    for key, values in SEARCH_OPTIMIZATIONS.items():
        if key in lower:
            terms.extend(values)
    if not terms:
        words = re.sub(r"[^a-z0-9\s]", "", lower).split()
        terms.extend(w for w in words if len(w) > 2 and w not in _STOP_WORDS)
        terms.append(re.sub(r"\s+", "", capability_name))
    return list(dict.fromkeys(t for t in terms if t))


class GapSearch:
    """Runs the progressive strategy against the Node Information Service."""

    def __init__(self, node_info, limit: int = SEARCH_LIMIT) -> None:
        self._node_info = node_info
        self._limit = limit

    async def search(self, capabilities: list[CapabilityGap]) -> list[GapSearchResult]:
        if not capabilities:
            return []
        logger.info("Searching for %d capability gaps", len(capabilities))
        results = list(await asyncio.gather(*(self._search_one(c) for c in capabilities)))
        missing = [r.capability for r in results if not r.found]
        if missing:
            logger.warning("No nodes found for: %s", ", ".join(missing))
        return results

    async def _search_one(self, gap: CapabilityGap) -> GapSearchResult:
        primary = gap.search_terms[0] if gap.search_terms else gap.name
        alternatives = list(gap.search_terms[1:]) + list(gap.alternative_terms)
        steps = [("primary", primary)]
        steps += [("alternative", t) for t in alternatives]
        steps += [("optimized", t) for t in optimized_terms(gap.name)]

        tried: set[str] = set()
        for strategy, term in steps:
            if not term or term in tried:
                continue
            tried.add(term)
            try:
                nodes = await self._node_info.search_nodes(term, self._limit)
            except Exception as e:
                logger.warning("Gap search for %r aborted on term %r: %s", gap.name, term, e)
                return GapSearchResult(capability=gap.name, strategy="not_found")
            if nodes:
                logger.debug("%s: %d nodes via %s term %r", gap.name, len(nodes), strategy, term)
                return GapSearchResult(
                    capability=gap.name,
                    strategy=strategy,
                    term_used=term,
                    nodes=nodes[: self._limit],
                )
        return GapSearchResult(capability=gap.name, strategy="not_found")


def summarize(results: list[GapSearchResult]) -> dict[str, int]:
    found = sum(1 for r in results if r.found)
    return {
        "totalCapabilities": len(results),
        "found": found,
        "notFound": len(results) - found,
        "totalNodes": sum(len(r.nodes) for r in results),
    }


def format_results_for_selection(results: list[GapSearchResult]) -> str:
    """Numbered option list per capability, grouped by registry category."""
    sections: list[str] = []
    for r in results:
        sections.append(f"## {r.capability}")
        if not r.found:
            sections.append("No nodes found - may need manual configuration or clarification")
            sections.append("")
            continue
        sections.append(f"Found {len(r.nodes)} options (searched: {r.term_used})")
        by_category: dict[str, list[dict[str, Any]]] = {}
        for node in r.nodes:
            by_category.setdefault(node.get("category") or "Other", []).append(node)
        for category, nodes in by_category.items():
            sections.append(f"### {category}:")
            for i, node in enumerate(nodes, 1):
                sections.append(f"{i}. **{node['nodeType']}** - {node.get('displayName', '')}")
                if node.get("description"):
                    sections.append(f"   {node['description']}")
        sections.append("")
    return "\n".join(sections)
