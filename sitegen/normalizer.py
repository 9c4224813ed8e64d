from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from sitegen.llm_parsing import detect_payload_type

log = logging.getLogger(__name__)

Unwrapper = Callable[[Dict[str, Any]], Dict[str, Any]]


def _unwrap_keys(*keys: str) -> Unwrapper:
    def _unwrap(data: Dict[str, Any]) -> Dict[str, Any]:
        for key in keys:
            inner = data.get(key)
            if isinstance(inner, dict):
                return inner
        return data

    return _unwrap


def _merge_content_context(data: Dict[str, Any]) -> Dict[str, Any]:
    content, context = data.get("content"), data.get("context")
    if isinstance(content, dict) and context is not None:
        merged = dict(content)
        merged.setdefault("metadata", context)
        return merged
    return data


# Per-family quirks. Order matters: the most specific family is matched first.
PROVIDER_QUIRKS: Dict[str, Dict[str, Any]] = {
    "claude-3-haiku": {
        "extra_fields": ["notes"],
        "field_mapping": {},
        "defaults": {"component_tree": {("metadata", "model"): "claude-3-haiku"}},
        "unwrap": {},
    },
    "claude-3": {
        "extra_fields": ["reasoning", "considerations", "alternatives"],
        "field_mapping": {"websiteName": "name", "siteTitle": "name", "componentName": "type"},
        "defaults": {"site": {("metadata", "version"): "1.0.0"}, "component_tree": {("version",): "1.0.0"}},
        "unwrap": {
            "site": _unwrap_keys("website", "site"),
            "component_tree": _unwrap_keys("structure", "tree"),
            "content": _merge_content_context,
        },
    },
    "gpt-4": {
        "extra_fields": ["reasoning", "explanation"],
        "field_mapping": {"siteName": "name", "pageTitle": "title", "componentType": "type"},
        "defaults": {},
        "unwrap": {},
    },
}

_FAMILY_MATCHERS: List[Tuple[str, Tuple[str, ...]]] = [
    ("claude-3-haiku", ("claude-3-haiku", "claude-haiku")),
    ("claude-3", ("claude",)),
    ("gpt-4", ("gpt",)),
]


def provider_family(model: Optional[str]) -> Optional[str]:
    """Return the quirk family for a model name, or None when unrecognized."""
    name = (model or "").lower()
    if "/" in name:
        name = name.rsplit("/", 1)[-1]
    for family, needles in _FAMILY_MATCHERS:
        if any(name.startswith(n) or n in name for n in needles):
            return family
    return None


def _rename(obj: Dict[str, Any], mapping: Dict[str, str], changes: List[str], where: str) -> Dict[str, Any]:
    out = obj
    for alias, canonical in mapping.items():
        if alias in out and canonical not in out:
            if out is obj:
                out = dict(obj)
            out[canonical] = out.pop(alias)
            changes.append(f"{where}{alias}->{canonical}")
    return out


def _rename_tree(node: Any, mapping: Dict[str, str], changes: List[str], where: str) -> Any:
    if not isinstance(node, dict):
        return node
    out = _rename(node, mapping, changes, where)
    children = out.get("children")
    if isinstance(children, list):
        new_children = [_rename_tree(c, mapping, changes, f"{where}children.") for c in children]
        if any(a is not b for a, b in zip(new_children, children)):
            out = dict(out) if out is node else out
            out["children"] = new_children
    return out


def _rename_pages(data: Dict[str, Any], mapping: Dict[str, str], changes: List[str]) -> Dict[str, Any]:
    pages = data.get("pages")
    if not isinstance(pages, list):
        return data
    new_pages = []
    for idx, page in enumerate(pages):
        if not isinstance(page, dict):
            new_pages.append(page)
            continue
        p = _rename(page, mapping, changes, f"pages[{idx}].")
        comps = p.get("components")
        if isinstance(comps, dict) and isinstance(comps.get("root"), dict):
            root = _rename_tree(comps["root"], mapping, changes, f"pages[{idx}].components.root.")
            if root is not comps["root"]:
                p = dict(p) if p is page else p
                p["components"] = {**comps, "root": root}
        elif isinstance(comps, list):
            new_comps = [_rename_tree(c, mapping, changes, f"pages[{idx}].components.") for c in comps]
            if any(a is not b for a, b in zip(new_comps, comps)):
                p = dict(p) if p is page else p
                p["components"] = new_comps
        new_pages.append(p)
    if any(a is not b for a, b in zip(new_pages, pages)):
        data = dict(data)
        data["pages"] = new_pages
    return data


def normalize_with_changes(data: Dict[str, Any], model: str, kind: Optional[str] = None) -> Tuple[Dict[str, Any], List[str]]:
    """Rewrite provider-specific quirks into the canonical shape.

    Returns a new object plus a list of human-readable change notes. The input
    is never mutated; unrecognized models and canonical payloads come back
    deep-equal to the input.
    """
    out: Dict[str, Any] = copy.deepcopy(data) if isinstance(data, dict) else data
    changes: List[str] = []
    family = provider_family(model)
    if family is None or not isinstance(out, dict):
        return out, changes
    quirks = PROVIDER_QUIRKS[family]
    kind = kind or detect_payload_type(out)

    unwrap = quirks["unwrap"].get(kind) or quirks["unwrap"].get("site" if kind == "unknown" else "")
    if unwrap is not None:
        unwrapped = unwrap(out)
        if unwrapped is not out:
            changes.append("unwrapped")
            out = copy.deepcopy(unwrapped)

    for field in quirks["extra_fields"]:
        if field in out:
            out.pop(field)
            changes.append(f"dropped {field}")

    mapping = quirks["field_mapping"]
    if mapping:
        out = _rename(out, mapping, changes, "")
        out = _rename_pages(out, mapping, changes)
        if isinstance(out.get("root"), dict):
            root = _rename_tree(out["root"], mapping, changes, "root.")
            if root is not out["root"]:
                out["root"] = root

    for path, value in quirks["defaults"].get(kind, {}).items():
        parent: Any = out
        for key in path[:-1]:
            parent = parent.get(key) if isinstance(parent, dict) else None
        # Only fill in blocks the model already produced
        if isinstance(parent, dict) and path[-1] not in parent:
            parent[path[-1]] = value
            changes.append(f"{'.'.join(path)} defaulted")

    if changes:
        log.debug("normalize model=%s family=%s changes=%s", model, family, changes)
    return out, changes


def normalize(data: Dict[str, Any], model: str, kind: Optional[str] = None) -> Dict[str, Any]:
    return normalize_with_changes(data, model, kind)[0]


def smart_normalize(data: Dict[str, Any], model: str) -> Tuple[Dict[str, Any], str, int]:
    """Normalize and report the detected payload kind with a 0-100 confidence."""
    out, changes = normalize_with_changes(data, model)
    kind = detect_payload_type(out)
    confidence = 50 if kind != "unknown" else 10
    if kind == "site":
        confidence += 10 * sum(1 for k in ("id", "name", "pages", "globalStyles", "navigation") if k in out)
    elif kind == "component_tree":
        confidence += 20 if out.get("version") else 0
        confidence += 20 if isinstance(out.get("root"), dict) and out["root"].get("type") else 0
    elif kind in ("page", "context", "selection"):
        confidence += 30
    confidence -= min(20, 2 * len(changes))
    return out, kind, max(0, min(100, confidence))
