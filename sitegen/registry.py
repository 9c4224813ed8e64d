from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from sitegen.schemas import utc_now_iso

log = logging.getLogger(__name__)


@dataclass
class ComponentDefinition:
    id: str
    type: str
    category: str = "general"
    name: Optional[str] = None
    description: Optional[str] = None
    default_props: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    performance_score: Optional[float] = None


class ComponentCatalog(Protocol):
    def get(self, component_id: str) -> Optional[ComponentDefinition]: ...


class InMemoryCatalog:
    def __init__(self, definitions: Iterable[ComponentDefinition] = ()):
        self._items: Dict[str, ComponentDefinition] = {d.id: d for d in definitions}

    def add(self, definition: ComponentDefinition) -> None:
        self._items[definition.id] = definition

    def get(self, component_id: str) -> Optional[ComponentDefinition]:
        return self._items.get(component_id)

    def __len__(self) -> int:
        return len(self._items)


def _compose_node(
    selected: Dict[str, Any], catalog: ComponentCatalog, path: str, prefix: str, counter: List[int], skipped: List[str]
) -> Optional[Dict[str, Any]]:
    component_id = selected.get("componentId") or selected.get("component_id")
    definition = catalog.get(component_id) if isinstance(component_id, str) else None
    if definition is None:
        skipped.append(f"{path}: unknown component '{component_id}'")
        return None
    counter[0] += 1
    props = dict(definition.default_props)
    if isinstance(selected.get("props"), dict):
        props.update(selected["props"])
    node: Dict[str, Any] = {
        "id": f"{prefix}{definition.id}_{counter[0]}",
        "type": definition.type,
        "props": props,
        "metadata": {
            "name": definition.name or definition.id,
            "category": definition.category,
            "tags": list(definition.tags),
            "registryComponent": definition.id,
        },
    }
    if definition.description:
        node["metadata"]["description"] = definition.description
    if definition.performance_score is not None:
        node["metadata"]["performanceScore"] = definition.performance_score
    if isinstance(selected.get("content"), dict):
        node["content"] = {k: v for k, v in selected["content"].items() if k in ("text", "html", "markdown")}
    children = []
    for i, child in enumerate(selected.get("children") or []):
        if isinstance(child, dict):
            composed = _compose_node(child, catalog, f"{path}.children[{i}]", prefix, counter, skipped)
            if composed is not None:
                children.append(composed)
    if children:
        node["children"] = children
    return node


def compose_tree(
    selection: Dict[str, Any], catalog: ComponentCatalog, model: str, prefix: str = ""
) -> Tuple[Dict[str, Any], List[str]]:
    """Build a component tree from a selection-style answer.

    Unknown component ids are skipped; their locations come back as the second
    element of the result.
    """
    skipped: List[str] = []
    counter = [0]
    nodes = []
    for i, selected in enumerate(selection.get("selections") or []):
        if isinstance(selected, dict):
            node = _compose_node(selected, catalog, f"selections[{i}]", prefix, counter, skipped)
            if node is not None:
                nodes.append(node)
    if skipped:
        log.warning("compose.skipped model=%s count=%d", model, len(skipped))
    tree = {
        "root": {"id": f"{prefix}root", "type": "div", "props": {}, "children": nodes},
        "version": "1.0.0",
        "metadata": {"generatedAt": utc_now_iso(), "model": model},
    }
    return tree, skipped
