from __future__ import annotations

import copy
import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Set, Tuple, Type, Union

import jsonschema
from pydantic import BaseModel, TypeAdapter, ValidationError

from sitegen.schemas import (
    ComponentTree,
    ContextExtraction,
    GlobalStyles,
    Page,
    SiteStructure,
    default_global_styles,
    default_site_metadata,
    utc_now_iso,
)

log = logging.getLogger(__name__)

PathPart = Union[str, int]
Path = Tuple[PathPart, ...]

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_ERROR = "error"

SUGGESTIONS: Dict[str, str] = {
    "missing": "Add the required field.",
    "string_too_long": "Shorten the value to the declared maximum length.",
    "string_too_short": "Provide longer content; short values are reported, never padded.",
    "list_type": "Provide an array value.",
    "string_type": "Provide a string value.",
    "dict_type": "Provide an object value.",
    "model_type": "Provide an object value.",
    "literal_error": "Use one of the allowed values.",
    "enum": "Use one of the allowed values.",
    "duplicate_id": "Give every node a unique id.",
}


def format_path(path: Path) -> str:
    out = ""
    for part in path:
        if isinstance(part, int):
            out += f"[{part}]"
        else:
            out += f".{part}" if out else str(part)
    return out or "(root)"


@dataclass
class Violation:
    path: Path
    message: str
    code: str = "invalid"
    ctx: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ValidationIssue:
    severity: str
    path: str
    message: str
    auto_fixed: bool = False
    suggestion: Optional[str] = None
    stage: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "severity": self.severity,
            "path": self.path,
            "message": self.message,
            "autoFixed": self.auto_fixed,
        }
        if self.suggestion:
            out["suggestion"] = self.suggestion
        if self.stage:
            out["stage"] = self.stage
        return out


@dataclass
class ValidationReport:
    valid: bool
    data: Any
    value: Any = None
    issues: List[ValidationIssue] = field(default_factory=list)
    repairs: List[ValidationIssue] = field(default_factory=list)

    @property
    def auto_fixed(self) -> bool:
        return bool(self.repairs) and self.valid

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "autoFixed": self.auto_fixed,
            "issues": [i.to_dict() for i in self.issues],
            "data": self.data,
        }


# ---------------------------------------------------------------------------
# Target schemas
# ---------------------------------------------------------------------------


class Schema(Protocol):
    name: str
    kind: str

    def check(self, data: Any) -> Tuple[Any, List[Violation]]: ...

    def dump(self, value: Any) -> Any: ...


def _node_ids(data: Any, kind: str) -> Iterator[Tuple[Path, Any]]:
    for path, node in iter_nodes(data, kind):
        yield path + ("id",), node.get("id")


def _duplicate_id_violations(data: Any, kind: str) -> List[Violation]:
    seen: Set[str] = set()
    out: List[Violation] = []
    for path, node_id in _node_ids(data, kind):
        if not isinstance(node_id, str) or not node_id:
            continue
        if node_id in seen:
            out.append(Violation(path, f"duplicate id '{node_id}'", "duplicate_id"))
        seen.add(node_id)
    return out


class ModelSchema:
    """A pydantic model used as a validation target."""

    def __init__(self, model: Type[BaseModel], kind: str, name: Optional[str] = None):
        self.model = model
        self.kind = kind
        self.name = name or model.__name__
        self._adapter = TypeAdapter(model)

    def check(self, data: Any) -> Tuple[Any, List[Violation]]:
        try:
            value = self._adapter.validate_python(data)
        except ValidationError as ve:
            violations = [
                Violation(tuple(e.get("loc", ())), e.get("msg", "invalid"), e.get("type", "invalid"), dict(e.get("ctx") or {}))
                for e in ve.errors()
            ]
            return None, violations + _duplicate_id_violations(data, self.kind)
        dupes = _duplicate_id_violations(data, self.kind)
        if dupes:
            return None, dupes
        return value, []

    def dump(self, value: Any) -> Any:
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)


class JsonSchema:
    """A JSON-Schema document used as a validation target."""

    def __init__(self, schema: Dict[str, Any], kind: str = "generic", name: Optional[str] = None):
        jsonschema.Draft202012Validator.check_schema(schema)
        self.schema = schema
        self.kind = kind
        self.name = name or str(schema.get("title") or "json-schema")
        self._validator = jsonschema.Draft202012Validator(schema)

    def check(self, data: Any) -> Tuple[Any, List[Violation]]:
        violations: List[Violation] = []
        for err in self._validator.iter_errors(data):
            path: Path = tuple(err.absolute_path)
            if err.validator == "required" and isinstance(err.instance, dict):
                for prop in err.validator_value:
                    if prop not in err.instance:
                        violations.append(Violation(path + (prop,), "Field required", "missing"))
                continue
            code = {
                "maxLength": "string_too_long",
                "minLength": "string_too_short",
                "enum": "enum",
                "const": "enum",
            }.get(str(err.validator), str(err.validator))
            if err.validator == "type":
                code = {"array": "list_type", "string": "string_type", "object": "dict_type"}.get(str(err.validator_value), "type")
            ctx: Dict[str, Any] = {}
            if err.validator == "maxLength":
                ctx["max_length"] = err.validator_value
            elif err.validator == "minLength":
                ctx["min_length"] = err.validator_value
            violations.append(Violation(path, str(err.message), code, ctx))
        violations.extend(_duplicate_id_violations(data, self.kind))
        return (data if not violations else None), violations

    def dump(self, value: Any) -> Any:
        return value


SITE_SCHEMA = ModelSchema(SiteStructure, "site")
PAGE_SCHEMA = ModelSchema(Page, "page")
TREE_SCHEMA = ModelSchema(ComponentTree, "component_tree")
CONTEXT_SCHEMA = ModelSchema(ContextExtraction, "context")
STYLES_SCHEMA = ModelSchema(GlobalStyles, "global_styles")


# ---------------------------------------------------------------------------
# Tree helpers
# ---------------------------------------------------------------------------


def get_path(data: Any, path: Path) -> Any:
    cur = data
    for part in path:
        if isinstance(part, int):
            if not isinstance(cur, list) or part >= len(cur):
                return None
            cur = cur[part]
        else:
            if not isinstance(cur, dict):
                return None
            cur = cur.get(part)
    return cur


def set_path(data: Any, path: Path, value: Any) -> Any:
    """Return a copy of `data` with `value` at `path`; containers along the way are copied."""
    if not path:
        return value
    head, rest = path[0], path[1:]
    if isinstance(head, int):
        seq = list(data) if isinstance(data, list) else []
        if head >= len(seq):
            return data
        seq[head] = set_path(seq[head], rest, value)
        return seq
    obj = dict(data) if isinstance(data, dict) else {}
    obj[head] = set_path(obj.get(head), rest, value)
    return obj


def _walk_node(node: Any, path: Path) -> Iterator[Tuple[Path, Dict[str, Any]]]:
    if not isinstance(node, dict):
        return
    yield path, node
    children = node.get("children")
    if isinstance(children, list):
        for i, child in enumerate(children):
            yield from _walk_node(child, path + ("children", i))


def _walk_components(comps: Any, path: Path) -> Iterator[Tuple[Path, Dict[str, Any]]]:
    if isinstance(comps, dict) and isinstance(comps.get("root"), dict):
        yield from _walk_node(comps["root"], path + ("root",))
    elif isinstance(comps, list):
        for i, comp in enumerate(comps):
            yield from _walk_node(comp, path + (i,))


def iter_pages(data: Any) -> Iterator[Tuple[Path, Dict[str, Any]]]:
    pages = data.get("pages") if isinstance(data, dict) else None
    if isinstance(pages, list):
        for i, page in enumerate(pages):
            if isinstance(page, dict):
                yield ("pages", i), page


def iter_nodes(data: Any, kind: str) -> Iterator[Tuple[Path, Dict[str, Any]]]:
    """Yield (path, node) for every component node in a payload of `kind`."""
    if kind == "site":
        for ppath, page in iter_pages(data):
            yield from _walk_components(page.get("components"), ppath + ("components",))
    elif kind == "page" and isinstance(data, dict):
        yield from _walk_components(data.get("components"), ("components",))
    elif kind == "component_tree" and isinstance(data, dict):
        yield from _walk_components(data, ())


def _fingerprint(*parts: Any) -> str:
    h = hashlib.sha256()
    for p in parts:
        h.update(json.dumps(p, sort_keys=True, default=str).encode("utf-8"))
        h.update(b"\x00")
    return h.hexdigest()


def _slug(text: str) -> str:
    s = re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-")
    return s or "page"


# ---------------------------------------------------------------------------
# Repairs: pure functions (data, context) -> (new data, issues)
# ---------------------------------------------------------------------------


@dataclass
class RepairContext:
    kind: str
    violations: List[Violation]
    model: Optional[str] = None


RepairResult = Tuple[Any, List[ValidationIssue]]


def _fixed(path: Path, message: str) -> ValidationIssue:
    return ValidationIssue(SEVERITY_INFO, format_path(path), message, auto_fixed=True)


def assign_missing_ids(data: Any, ctx: RepairContext) -> RepairResult:
    """Give every id-less (or duplicate-id) site, page and node a stable unique id."""
    if not isinstance(data, dict):
        return data, []
    out = copy.deepcopy(data)
    issues: List[ValidationIssue] = []
    used: Set[str] = set()
    seed = _fingerprint(data)

    def claim(candidate: str) -> str:
        new_id, n = candidate, 2
        while new_id in used:
            new_id = f"{candidate}_{n}"
            n += 1
        used.add(new_id)
        return new_id

    def needs_id(obj: Dict[str, Any]) -> bool:
        v = obj.get("id")
        return not isinstance(v, str) or not v.strip()

    # Reserve the ids that already exist so generated ones never collide
    for _, node in iter_nodes(out, ctx.kind):
        if not needs_id(node) and node["id"] not in used:
            used.add(node["id"])
    for _, page in iter_pages(out) if ctx.kind == "site" else ():
        if not needs_id(page):
            used.add(page["id"])

    if ctx.kind in ("site", "page") and needs_id(out):
        prefix = "site" if ctx.kind == "site" else "page"
        out["id"] = claim(f"{prefix}_{seed[:8]}")
        issues.append(_fixed(("id",), f"Generated missing {prefix} id"))
    elif ctx.kind in ("site", "page") and isinstance(out.get("id"), str):
        used.add(out["id"])

    if ctx.kind == "site":
        for ppath, page in iter_pages(out):
            if needs_id(page):
                page["id"] = claim(f"page_{ppath[1] + 1}_{_fingerprint(seed, ppath)[:6]}")
                issues.append(_fixed(ppath + ("id",), "Generated missing page id"))

    seen: Set[str] = set()
    for path, node in iter_nodes(out, ctx.kind):
        node_id = node.get("id")
        duplicate = isinstance(node_id, str) and node_id in seen
        if needs_id(node) or duplicate:
            ntype = _slug(str(node.get("type") or "node")).replace("-", "_")[:16]
            node["id"] = claim(f"comp_{ntype}_{_fingerprint(seed, path)[:6]}")
            message = "Replaced duplicate component id" if duplicate else "Generated missing component id"
            issues.append(_fixed(path + ("id",), message))
        seen.add(node["id"])
    return out, issues


def _wrap_node(node: Dict[str, Any], path: Path, issues: List[ValidationIssue]) -> Dict[str, Any]:
    out = dict(node)
    styles = out.get("styles")
    if isinstance(styles, str):
        out["styles"] = {"className": styles}
        issues.append(_fixed(path + ("styles",), "Wrapped styles string into {className}"))
    if isinstance(out.get("className"), str):
        cls = out.pop("className")
        current = out.get("styles") if isinstance(out.get("styles"), dict) else {}
        if not current.get("className"):
            out["styles"] = {**current, "className": cls}
            issues.append(_fixed(path + ("styles", "className"), "Moved className into styles"))
    content = out.get("content")
    if isinstance(content, str):
        out["content"] = {"text": content}
        issues.append(_fixed(path + ("content",), "Wrapped content string into {text}"))
    if not isinstance(out.get("type"), str) or not out.get("type"):
        out["type"] = "div"
        issues.append(_fixed(path + ("type",), "Defaulted missing component type to 'div'"))
    if "props" in out and not isinstance(out.get("props"), dict):
        out["props"] = {}
        issues.append(_fixed(path + ("props",), "Replaced malformed props with an empty object"))
    children = out.get("children")
    if isinstance(children, list):
        out["children"] = [
            _wrap_node(c, path + ("children", i), issues) if isinstance(c, dict) else c for i, c in enumerate(children)
        ]
    return out


def _tree_from_nodes(nodes: List[Any], root_id: str, model: Optional[str]) -> Dict[str, Any]:
    return {
        "root": {"id": root_id, "type": "div", "props": {}, "children": nodes},
        "version": "1.0.0",
        "metadata": {"generatedAt": utc_now_iso(), "model": model or "unknown"},
    }


def _wrap_components(comps: Any, path: Path, owner_id: str, model: Optional[str], issues: List[ValidationIssue]) -> Any:
    if isinstance(comps, list):
        issues.append(_fixed(path, "Wrapped component list into a component tree"))
        comps = _tree_from_nodes(comps, f"{owner_id}_root", model)
    elif isinstance(comps, dict) and "root" not in comps and ("type" in comps or "children" in comps):
        issues.append(_fixed(path, "Wrapped bare component into a component tree"))
        comps = {**_tree_from_nodes([], f"{owner_id}_root", model), "root": comps}
    if isinstance(comps, dict) and isinstance(comps.get("root"), dict):
        comps = dict(comps)
        comps["root"] = _wrap_node(comps["root"], path + ("root",), issues)
    return comps


def wrap_styles_and_content(data: Any, ctx: RepairContext) -> RepairResult:
    """Coerce wrong-shaped styles/content/components into their wrapper shapes."""
    if not isinstance(data, dict):
        return data, []
    issues: List[ValidationIssue] = []
    out = dict(data)
    if ctx.kind == "site" and isinstance(out.get("pages"), list):
        pages = []
        for i, page in enumerate(out["pages"]):
            if isinstance(page, dict) and "components" in page:
                page = dict(page)
                owner = str(page.get("id") or f"page_{i + 1}")
                page["components"] = _wrap_components(page["components"], ("pages", i, "components"), owner, ctx.model, issues)
            pages.append(page)
        out["pages"] = pages
    elif ctx.kind == "page" and "components" in out:
        out["components"] = _wrap_components(out["components"], ("components",), str(out.get("id") or "page"), ctx.model, issues)
    elif ctx.kind == "component_tree":
        if "root" not in out and ("type" in out or "children" in out):
            issues.append(_fixed((), "Wrapped bare component into a component tree"))
            out = {**_tree_from_nodes([], "root", ctx.model), "root": out}
        if isinstance(out.get("root"), dict):
            out["root"] = _wrap_node(out["root"], ("root",), issues)
    return out, issues


def coerce_types(data: Any, ctx: RepairContext) -> RepairResult:
    """Scalar/list coercions for the violations that report them."""
    out = data
    issues: List[ValidationIssue] = []
    for v in ctx.violations:
        current = get_path(out, v.path)
        if v.code == "list_type" and isinstance(current, str):
            items = [s.strip() for s in current.split(",") if s.strip()]
            out = set_path(out, v.path, items)
            issues.append(_fixed(v.path, "Split comma-separated string into a list"))
        elif v.code == "string_type" and isinstance(current, (int, float)) and not isinstance(current, bool):
            out = set_path(out, v.path, str(current))
            issues.append(_fixed(v.path, "Converted number to string"))
    return out, issues


def _fill(block: Any, defaults: Dict[str, Any]) -> Tuple[Dict[str, Any], List[str]]:
    """Deep-merge `defaults` under `block`; returns the merged dict and the keys it filled."""
    merged = dict(block) if isinstance(block, dict) else {}
    filled: List[str] = []
    for key, value in defaults.items():
        if key not in merged or merged[key] is None:
            merged[key] = copy.deepcopy(value)
            filled.append(key)
        elif isinstance(value, dict) and isinstance(merged[key], dict):
            sub, sub_filled = _fill(merged[key], value)
            merged[key] = sub
            filled.extend(f"{key}.{k}" for k in sub_filled)
    return merged, filled


def _inject(out: Dict[str, Any], key: str, defaults: Dict[str, Any], path: Path, issues: List[ValidationIssue], what: str) -> None:
    current = out.get(key)
    if current is not None and not isinstance(current, dict):
        return
    merged, filled = _fill(current, defaults)
    if not filled:
        return
    out[key] = merged
    if current is None:
        issues.append(_fixed(path + (key,), f"Injected default {what}"))
    else:
        for f in filled:
            issues.append(_fixed(path + (key,) + tuple(f.split(".")), f"Injected default {what} field"))


def _default_tree_metadata(model: Optional[str]) -> Dict[str, Any]:
    return {"generatedAt": utc_now_iso(), "model": model or "unknown"}


def _page_defaults(page: Dict[str, Any], index: int, path: Path, model: Optional[str], issues: List[ValidationIssue]) -> Dict[str, Any]:
    out = dict(page)
    if not isinstance(out.get("name"), str) or not out.get("name"):
        raw_path = out.get("path") if isinstance(out.get("path"), str) else ""
        out["name"] = raw_path.strip("/").replace("-", " ").title() or ("Home" if index == 0 else f"Page {index + 1}")
        issues.append(_fixed(path + ("name",), "Injected default page name"))
    if not isinstance(out.get("path"), str) or not out.get("path"):
        out["path"] = "/" if index == 0 else f"/{_slug(out['name'])}"
        issues.append(_fixed(path + ("path",), "Injected default page path"))
    if out.get("components") is None:
        out["components"] = _tree_from_nodes([], f"{out.get('id') or 'page'}_root", model)
        issues.append(_fixed(path + ("components",), "Injected empty component tree"))
    elif isinstance(out.get("components"), dict):
        comps = dict(out["components"])
        if not comps.get("version"):
            comps["version"] = "1.0.0"
            issues.append(_fixed(path + ("components", "version"), "Injected default tree version"))
        _inject(comps, "metadata", _default_tree_metadata(model), path + ("components",), issues, "tree metadata")
        out["components"] = comps
    _inject(out, "seo", {"title": str(out["name"])[:60], "description": "", "keywords": []}, path, issues, "SEO metadata")
    return out


def inject_default_blocks(data: Any, ctx: RepairContext) -> RepairResult:
    """Fill absent required blocks (metadata, styles, navigation, seo...) with defaults."""
    if not isinstance(data, dict):
        return data, []
    out = dict(data)
    issues: List[ValidationIssue] = []
    if ctx.kind == "site":
        if not isinstance(out.get("name"), str) or not out.get("name"):
            out["name"] = "Untitled Site"
            issues.append(_fixed(("name",), "Injected default site name"))
        if not isinstance(out.get("pages"), list):
            out["pages"] = []
            issues.append(_fixed(("pages",), "Injected empty page list"))
        out["pages"] = [
            _page_defaults(p, i, ("pages", i), ctx.model, issues) if isinstance(p, dict) else p
            for i, p in enumerate(out["pages"])
        ]
        _inject(out, "metadata", default_site_metadata(), (), issues, "site metadata")
        _inject(out, "globalStyles", default_global_styles(), (), issues, "global styles")
        if not isinstance(out.get("navigation"), dict) or not isinstance(out["navigation"].get("main"), list):
            nav = dict(out["navigation"]) if isinstance(out.get("navigation"), dict) else {}
            nav["main"] = [
                {"label": p.get("name"), "path": p.get("path")}
                for p in out["pages"]
                if isinstance(p, dict) and p.get("name") and p.get("path")
            ]
            out["navigation"] = nav
            issues.append(_fixed(("navigation",), "Built navigation from pages"))
    elif ctx.kind == "page":
        out = _page_defaults(out, 0, (), ctx.model, issues)
    elif ctx.kind == "component_tree":
        if not out.get("version"):
            out["version"] = "1.0.0"
            issues.append(_fixed(("version",), "Injected default tree version"))
        _inject(out, "metadata", _default_tree_metadata(ctx.model), (), issues, "tree metadata")
    elif ctx.kind == "global_styles":
        merged, filled = _fill(out, default_global_styles())
        for f in filled:
            issues.append(_fixed(tuple(f.split(".")), "Injected default style"))
        out = merged
    elif ctx.kind == "context":
        merged, filled = _fill(
            out,
            {"industry": "general", "audience": "general audience", "goals": ["establish online presence"], "style": "modern", "features": []},
        )
        for f in filled:
            issues.append(_fixed((f,), "Injected default context field"))
        out = merged
    return out, issues


def truncate_overlong(data: Any, ctx: RepairContext) -> RepairResult:
    """Cut strings that exceed their declared maximum, ending them with an ellipsis."""
    out = data
    issues: List[ValidationIssue] = []
    for v in ctx.violations:
        if v.code != "string_too_long":
            continue
        limit = v.ctx.get("max_length")
        current = get_path(out, v.path)
        if not isinstance(limit, int) or not isinstance(current, str) or len(current) <= limit:
            continue
        cut = current[: max(0, limit - 3)].rstrip() + "..." if limit > 3 else current[:limit]
        out = set_path(out, v.path, cut)
        issues.append(_fixed(v.path, f"Truncated to {limit} characters"))
    return out, issues


Repair = Callable[[Any, RepairContext], RepairResult]

REPAIRS: List[Repair] = [
    assign_missing_ids,
    wrap_styles_and_content,
    coerce_types,
    inject_default_blocks,
    truncate_overlong,
]


class RepairValidator:
    """Validate, repair once in a fixed order, and validate again."""

    def __init__(self, strict: bool = False, repairs: Optional[List[Repair]] = None):
        self.strict = strict
        self.repairs = list(REPAIRS if repairs is None else repairs)

    def validate(self, data: Any, schema: Schema, model: Optional[str] = None, stage: Optional[str] = None) -> ValidationReport:
        value, violations = schema.check(data)
        if not violations:
            return ValidationReport(valid=True, data=schema.dump(value), value=value)

        ctx = RepairContext(kind=schema.kind, violations=violations, model=model)
        repaired = data
        applied: List[ValidationIssue] = []
        for repair in self.repairs:
            repaired, issues = repair(repaired, ctx)
            applied.extend(issues)
        for issue in applied:
            issue.stage = stage

        value, remaining = schema.check(repaired)
        if not remaining:
            log.info("validate.repaired schema=%s repairs=%d", schema.name, len(applied))
            return ValidationReport(valid=True, data=schema.dump(value), value=value, issues=list(applied), repairs=applied)

        severity = SEVERITY_ERROR if self.strict else SEVERITY_WARNING
        issues = [
            ValidationIssue(severity, format_path(v.path), v.message, False, SUGGESTIONS.get(v.code, "Check the field against the schema."), stage)
            for v in remaining
        ]
        log.warning("validate.failed schema=%s remaining=%d strict=%s", schema.name, len(remaining), self.strict)
        return ValidationReport(valid=False, data=repaired, value=None, issues=issues, repairs=applied)


# ---------------------------------------------------------------------------
# Content quality (advisory, never affects validity)
# ---------------------------------------------------------------------------

_PLACEHOLDER_TEXT_RE = re.compile(r"lorem ipsum|\bplaceholder\b|\[insert|\bTODO\b|your (?:company|headline) here", re.IGNORECASE)
_PLACEHOLDER_IMG_RE = re.compile(r"placeholder|placehold\.it|via\.placeholder|dummyimage", re.IGNORECASE)
_DEDUCTIONS = {"critical": 25, "high": 15, "medium": 8, "low": 3}


def quality_findings(site: Dict[str, Any]) -> Dict[str, Any]:
    findings: List[Dict[str, str]] = []
    for path, node in iter_nodes(site, "site"):
        where = format_path(path)
        content = node.get("content") if isinstance(node.get("content"), dict) else {}
        text = " ".join(str(content.get(k) or "") for k in ("text", "html", "markdown"))
        if text and _PLACEHOLDER_TEXT_RE.search(text):
            findings.append({"severity": "medium", "path": where, "message": "Placeholder text left in content"})
        props = node.get("props") if isinstance(node.get("props"), dict) else {}
        src = str(props.get("src") or props.get("image") or "")
        if src and _PLACEHOLDER_IMG_RE.search(src):
            findings.append({"severity": "low", "path": where, "message": "Placeholder image source"})
        if str(node.get("type") or "").lower() in {"img", "image"} and not props.get("alt"):
            findings.append({"severity": "high", "path": where, "message": "Image is missing alt text"})
    score = 100 - sum(_DEDUCTIONS.get(f["severity"], 0) for f in findings)
    return {"score": max(0, score), "findings": findings}
