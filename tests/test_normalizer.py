import copy

import pytest

from sitegen.normalizer import normalize, normalize_with_changes, provider_family, smart_normalize

CANONICAL_SITE = {
    "id": "s1",
    "name": "Acme",
    "pages": [
        {
            "id": "home",
            "name": "Home",
            "path": "/",
            "components": {
                "root": {"id": "r", "type": "div", "children": [{"id": "h", "type": "hero"}]},
                "version": "1.0.0",
                "metadata": {"generatedAt": "2024-01-01T00:00:00Z", "model": "x"},
            },
            "seo": {"title": "Home", "description": "", "keywords": []},
        }
    ],
    "metadata": {"createdAt": "a", "updatedAt": "b", "version": "1.0.0"},
}


@pytest.mark.parametrize("model", ["gpt-4-turbo-preview", "claude-3-opus", "claude-3-haiku", "mistral-large"])
def test_canonical_payload_is_left_alone(model):
    out, changes = normalize_with_changes(CANONICAL_SITE, model)
    assert out == CANONICAL_SITE
    assert changes == []


def test_unknown_model_returns_a_copy():
    out = normalize(CANONICAL_SITE, "llama-3")
    assert out == CANONICAL_SITE
    assert out is not CANONICAL_SITE
    assert out["pages"] is not CANONICAL_SITE["pages"]


def test_provider_family_matching():
    assert provider_family("gpt-4o") == "gpt-4"
    assert provider_family("openrouter/anthropic/claude-3-haiku-20240307") == "claude-3-haiku"
    assert provider_family("claude-3-5-sonnet") == "claude-3"
    assert provider_family("gemini-pro") is None
    assert provider_family(None) is None


def test_gpt_extra_fields_dropped_and_aliases_renamed():
    data = {"siteName": "Acme", "reasoning": "because", "pages": [{"pageTitle": "Home", "components": [{"componentType": "hero"}]}]}
    before = copy.deepcopy(data)
    out = normalize(data, "gpt-4")
    assert out["name"] == "Acme"
    assert "siteName" not in out and "reasoning" not in out
    assert out["pages"][0]["title"] == "Home"
    assert out["pages"][0]["components"][0]["type"] == "hero"
    assert data == before


def test_alias_is_not_renamed_over_existing_canonical_field():
    out = normalize({"name": "Real", "siteName": "Alias", "pages": []}, "gpt-4")
    assert out["name"] == "Real"
    assert out["siteName"] == "Alias"


def test_claude_wrapper_is_unwrapped_and_metadata_defaulted():
    data = {"website": {"websiteName": "Bakery", "pages": [], "metadata": {"createdAt": "a"}}, "considerations": "..."}
    out, changes = normalize_with_changes(data, "claude-3-opus", kind="site")
    assert out["name"] == "Bakery"
    assert out["metadata"]["version"] == "1.0.0"
    assert "unwrapped" in changes


def test_defaults_only_fill_blocks_that_exist():
    out = normalize({"website": {"name": "Bakery", "pages": []}}, "claude-3-opus", kind="site")
    assert "metadata" not in out


def test_claude_tree_nodes_are_renamed_recursively():
    data = {"structure": {"root": {"id": "r", "componentName": "div", "children": [{"id": "c", "componentName": "hero"}]}}}
    out = normalize(data, "claude-3-sonnet", kind="component_tree")
    assert out["root"]["type"] == "div"
    assert out["root"]["children"][0]["type"] == "hero"
    assert out["version"] == "1.0.0"


def test_haiku_defaults_tree_model():
    out = normalize({"root": {"id": "r", "type": "div"}, "metadata": {"generatedAt": "now"}, "notes": "x"}, "claude-3-haiku", kind="component_tree")
    assert out["metadata"]["model"] == "claude-3-haiku"
    assert "notes" not in out


def test_smart_normalize_reports_kind_and_confidence():
    out, kind, confidence = smart_normalize({"siteName": "Acme", "pages": []}, "gpt-4")
    assert kind == "site"
    assert out["name"] == "Acme"
    assert 0 < confidence <= 100
