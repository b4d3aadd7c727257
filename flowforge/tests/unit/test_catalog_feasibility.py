from __future__ import annotations

import json

import pytest

from flowforge.core.errors import ProviderConfigError, ValidationError
from flowforge.domain.scope import Complexity, ScopeDraft
from flowforge.services.catalog import Capability, CapabilityCatalog, default_catalog, load_catalog, tokenize
from flowforge.services.feasibility import estimate_complexity, match_capability, validate_scope


def test_exact_identifiers_and_aliases_map() -> None:
    catalog = default_catalog()
    scope = ScopeDraft(trigger="Webhook", actions=["send-slack-message"], outputs=["slack"])
    report = validate_scope(catalog, scope)
    assert report.feasible is True
    assert report.unmapped == []
    assert [item.capability_id for item in report.mapped] == ["webhook", "send-slack-message", "slack"]
    assert all(item.match == "exact" for item in report.mapped)
    assert report.complexity is Complexity.SIMPLE

    alias = match_capability(catalog, "cron", "trigger")
    assert alias is not None
    assert alias[0].id == "schedule"
    assert alias[1] == "exact"


def test_keyword_overlap_maps_free_text_terms() -> None:
    catalog = default_catalog()
    match = match_capability(catalog, "every day at nine", "trigger")
    assert match is not None
    entry, how = match
    assert entry.id == "schedule"
    assert how == "keyword"


def test_unmapped_required_term_makes_scope_infeasible_with_alternatives() -> None:
    catalog = default_catalog()
    scope = ScopeDraft(trigger="webhook", actions=["teleport the server"], outputs=["email"])
    report = validate_scope(catalog, scope)
    assert report.feasible is False
    assert report.unmapped == ["teleport the server"]
    assert report.mapped == []
    alternatives = report.alternatives["teleport the server"]
    assert 0 < len(alternatives) <= 3
    assert all(catalog.get(item).kind == "action" for item in alternatives)


def test_unmapped_optional_term_only_warns() -> None:
    catalog = default_catalog()
    scope = ScopeDraft(
        trigger="webhook",
        actions=["send-email"],
        outputs=["email"],
        data_sources=["mainframe tape"],
    )
    report = validate_scope(catalog, scope)
    assert report.feasible is True
    assert any("mainframe tape" in warning for warning in report.warnings)
    assert "mainframe tape" not in report.unmapped


def test_validation_is_idempotent() -> None:
    catalog = default_catalog()
    scope = ScopeDraft(
        trigger="schedule",
        actions=["send-email", "summarize-text"],
        outputs=["email"],
        conditions=["only if"],
    )
    assert validate_scope(catalog, scope) == validate_scope(catalog, scope)


def test_incomplete_scope_is_rejected() -> None:
    with pytest.raises(ValidationError) as excinfo:
        validate_scope(default_catalog(), ScopeDraft(trigger="webhook"))
    assert excinfo.value.unmapped == ["actions", "outputs"]


def test_complexity_thresholds() -> None:
    assert estimate_complexity(1) is Complexity.SIMPLE
    assert estimate_complexity(3) is Complexity.SIMPLE
    assert estimate_complexity(4) is Complexity.MODERATE
    assert estimate_complexity(8) is Complexity.MODERATE
    assert estimate_complexity(9) is Complexity.COMPLEX


def test_many_steps_warn_about_complexity() -> None:
    scope = ScopeDraft(
        trigger="webhook",
        actions=["http-request", "transform-data", "summarize-text", "write-sheet", "send-email", "send-slack-message"],
        outputs=["email", "slack", "google-sheets"],
    )
    report = validate_scope(default_catalog(), scope)
    assert report.feasible is True
    assert report.complexity is Complexity.COMPLEX
    assert any("splitting" in warning for warning in report.warnings)


def test_alternatives_fall_back_to_whole_catalog_when_kind_is_empty() -> None:
    catalog = CapabilityCatalog(
        [Capability.build(id="send-email", kind="action", node_type="engine.emailSend", keywords=["send email"])]
    )
    scope = ScopeDraft(trigger="webhook", actions=["send-email"], outputs=["email"])
    report = validate_scope(catalog, scope)
    assert report.feasible is False
    assert set(report.unmapped) == {"webhook", "email"}
    assert report.alternatives["webhook"] == ["send-email"]


def test_load_catalog_from_file(tmp_path) -> None:
    path = tmp_path / "catalog.json"
    path.write_text(
        json.dumps(
            [
                {"id": "ping", "kind": "trigger", "keywords": ["ping"]},
                {"id": "log-line", "kind": "action", "node_type": "engine.log", "delivers": "console"},
                {"id": "console", "kind": "output"},
            ]
        ),
        encoding="utf-8",
    )
    catalog = load_catalog(str(path))
    assert len(catalog) == 3
    assert catalog.get("ping").node_type == "ping"
    assert catalog.get("log-line").delivers == "console"


def test_load_catalog_rejects_unknown_kind(tmp_path) -> None:
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps([{"id": "x", "kind": "widget"}]), encoding="utf-8")
    with pytest.raises(ProviderConfigError):
        load_catalog(str(path))


def test_load_catalog_without_path_uses_defaults() -> None:
    assert len(load_catalog(None)) == len(default_catalog())


@pytest.mark.parametrize(
    "entries",
    [
        [{"kind": "trigger", "keywords": ["ping"]}],
        [{"id": "ping"}],
        [{"id": "ping", "kind": "trigger", "keywords": "ping"}],
        ["ping"],
    ],
)
def test_load_catalog_rejects_malformed_entries(tmp_path, entries) -> None:
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps(entries), encoding="utf-8")
    with pytest.raises(ProviderConfigError) as excinfo:
        load_catalog(str(path))
    assert "invalid entries" in str(excinfo.value)


def test_tokenize_drops_only_generic_words() -> None:
    assert tokenize("send the data to a custom node") == {"send", "custom"}
    assert tokenize("Unsupported Teleport") == {"unsupported", "teleport"}
