from __future__ import annotations

import logging

from flowforge.core.errors import ValidationError
from flowforge.domain.scope import Complexity, FeasibilityReport, MappedCapability, ScopeDraft
from flowforge.services.catalog import FIELD_KINDS, Capability, CapabilityCatalog, tokenize


logger = logging.getLogger(__name__)

MAX_ALTERNATIVES = 3


def estimate_complexity(mapped_count: int) -> Complexity:
    if mapped_count <= 3:
        return Complexity.SIMPLE
    if mapped_count <= 8:
        return Complexity.MODERATE
    return Complexity.COMPLEX


def match_capability(catalog: CapabilityCatalog, term: str, kind: str) -> tuple[Capability, str] | None:
    """Return the best catalog entry for a term, exact identifiers before keyword overlap."""
    exact = catalog.find_exact(term, kind)
    if exact is not None:
        return exact, "exact"
    term_tokens = tokenize(term)
    if not term_tokens:
        return None
    best: Capability | None = None
    best_overlap = 0
    # Strictly greater keeps the earliest catalog entry on ties.
    for entry in catalog.by_kind(kind):
        overlap = len(term_tokens & entry.tokens)
        if overlap > best_overlap:
            best, best_overlap = entry, overlap
    if best is None:
        return None
    return best, "keyword"


def rank_alternatives(catalog: CapabilityCatalog, term: str, kind: str, *, limit: int = MAX_ALTERNATIVES) -> list[str]:
    candidates = catalog.by_kind(kind) or list(catalog.entries)
    term_tokens = tokenize(term)
    ranked = sorted(
        enumerate(candidates),
        key=lambda pair: (-len(term_tokens & pair[1].tokens), pair[0]),
    )
    return [entry.id for _, entry in ranked[:limit]]


def _terms(scope: ScopeDraft, field_name: str) -> list[str]:
    if field_name == "trigger":
        return [scope.trigger] if scope.trigger else []
    return list(getattr(scope, field_name))


def validate_scope(catalog: CapabilityCatalog, scope: ScopeDraft) -> FeasibilityReport:
    """Map a complete scope onto the catalog.

    Pure function of (catalog, scope): repeated calls yield equal reports.
    Required elements that do not map make the scope infeasible; optional ones
    only add warnings.
    """
    if not scope.is_complete:
        raise ValidationError(
            f"Scope is missing required fields: {', '.join(scope.missing)}",
            unmapped=scope.missing,
        )

    mapped: list[MappedCapability] = []
    unmapped: list[str] = []
    warnings: list[str] = []
    alternatives: dict[str, list[str]] = {}

    for field_name in ("trigger", "data_sources", "conditions", "actions", "outputs"):
        kind = FIELD_KINDS[field_name]
        required = field_name in ("trigger", "actions", "outputs")
        for term in _terms(scope, field_name):
            match = match_capability(catalog, term, kind)
            if match is not None:
                entry, how = match
                mapped.append(
                    MappedCapability(
                        field=field_name,
                        term=term,
                        capability_id=entry.id,
                        node_type=entry.node_type,
                        match=how,
                    )
                )
                continue
            if required:
                unmapped.append(term)
                alternatives[term] = rank_alternatives(catalog, term, kind)
            else:
                warnings.append(f"{kind.replace('_', ' ')} '{term}' has no catalog match and will be skipped")

    feasible = not unmapped
    if not feasible:
        # Mapped capabilities are only meaningful for a scope that can be built.
        mapped = []
    complexity = estimate_complexity(len(mapped))
    if complexity is Complexity.COMPLEX:
        warnings.append("workflow has many steps; consider splitting it")
    logger.debug(
        "scope_validated feasible=%s mapped=%s unmapped=%s",
        feasible,
        len(mapped),
        len(unmapped),
    )
    return FeasibilityReport(
        feasible=feasible,
        mapped=mapped,
        unmapped=unmapped,
        warnings=warnings,
        complexity=complexity,
        alternatives=alternatives,
    )
