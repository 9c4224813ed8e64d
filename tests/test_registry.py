from sitegen.registry import ComponentDefinition, InMemoryCatalog, compose_tree
from sitegen.validators import TREE_SCHEMA, RepairValidator


def catalog():
    return InMemoryCatalog(
        [
            ComponentDefinition("hero-split", "section", category="hero", name="Split hero", default_props={"align": "left"}, tags=["hero"]),
            ComponentDefinition("cta-button", "button", category="cta", performance_score=97.5),
        ]
    )


def test_compose_tree_builds_valid_tree():
    selection = {
        "selections": [
            {
                "componentId": "hero-split",
                "props": {"title": "Plan less, ship more"},
                "content": {"text": "TaskFlow keeps teams moving", "ignored": True},
                "children": [{"componentId": "cta-button", "props": {"label": "Start free"}}],
            }
        ]
    }
    tree, skipped = compose_tree(selection, catalog(), "gpt-4", prefix="home_")

    assert skipped == []
    root = tree["root"]
    assert root["id"] == "home_root"
    hero = root["children"][0]
    assert hero["id"] == "home_hero-split_1"
    assert hero["props"] == {"align": "left", "title": "Plan less, ship more"}
    assert hero["content"] == {"text": "TaskFlow keeps teams moving"}
    assert hero["metadata"]["registryComponent"] == "hero-split"
    button = hero["children"][0]
    assert button["id"] == "home_cta-button_2"
    assert button["metadata"]["performanceScore"] == 97.5
    assert tree["metadata"]["model"] == "gpt-4"
    assert RepairValidator().validate(tree, TREE_SCHEMA).issues == []


def test_unknown_components_are_skipped_and_reported():
    tree, skipped = compose_tree({"selections": [{"componentId": "missing"}, {"componentId": "cta-button"}]}, catalog(), "m")
    assert [c["id"] for c in tree["root"]["children"]] == ["cta-button_1"]
    assert skipped == ["selections[0]: unknown component 'missing'"]


def test_catalog_lookup():
    cat = catalog()
    assert len(cat) == 2
    cat.add(ComponentDefinition("footer", "footer"))
    assert cat.get("footer").type == "footer"
    assert cat.get("nope") is None
