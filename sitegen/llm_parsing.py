from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from sitegen.errors import ExtractionError

log = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```[ \t]*([A-Za-z0-9_-]*)[ \t]*\r?\n?([\s\S]*?)```")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_SMART_QUOTES = {"“": '"', "”": '"', "‘": "'", "’": "'"}


def sanitize_json(text: str) -> str:
    """Drop trailing commas and normalize smart quotes."""
    s = _TRAILING_COMMA_RE.sub(r"\1", text or "")
    for bad, good in _SMART_QUOTES.items():
        s = s.replace(bad, good)
    return s


def _load_object(candidate: str) -> Optional[Dict[str, Any]]:
    """Parse `candidate` strictly, then once more after sanitizing; dicts only."""
    for attempt in (candidate, sanitize_json(candidate)):
        try:
            value = json.loads(attempt)
        except ValueError:
            continue
        return value if isinstance(value, dict) else None
    return None


def balanced_spans(text: str, opener: str = "{", closer: str = "}") -> List[Tuple[int, int]]:
    """Return (start, end) of every outermost balanced span, string- and escape-aware."""
    spans: List[Tuple[int, int]] = []
    in_str = False
    esc = False
    depth = 0
    start = -1
    for i, ch in enumerate(text or ""):
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == opener:
            if depth == 0:
                start = i
            depth += 1
        elif ch == closer and depth > 0:
            depth -= 1
            if depth == 0 and start != -1:
                spans.append((start, i + 1))
                start = -1
    return spans


def repair_json_loose(text: str) -> str:
    """Best-effort close of a truncated JSON document (open strings, arrays, objects)."""
    t = (text or "").strip()
    if not t:
        return t
    stack: List[str] = []
    in_str = False
    esc = False
    for ch in t:
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch in "{[":
            stack.append(ch)
        elif ch in "}]" and stack:
            stack.pop()
    if in_str:
        t += '"'
    t = t.rstrip()
    # A dangling separator or key cannot be closed into valid JSON
    t = re.sub(r'(,|:)\s*$', "", t)
    t = re.sub(r',\s*"[^"]*"\s*$', "", t) if stack and stack[-1] == "{" else t
    for opener in reversed(stack):
        t += "}" if opener == "{" else "]"
    return sanitize_json(t)


def strip_leading_prose(text: str) -> str:
    """Drop lines that come before the first line opening a JSON structure."""
    lines = (text or "").splitlines()
    for idx, line in enumerate(lines):
        if line.lstrip().startswith(("{", "[")):
            return "\n".join(lines[idx:]).strip()
    return (text or "").strip()


def _format_for_provider(text: str, model: str) -> str:
    t = (text or "").strip()
    if (model or "").lower().startswith("gpt"):
        return t
    return strip_leading_prose(t)


def _pick(candidates: List[Tuple[int, str]]) -> Optional[Dict[str, Any]]:
    # Longest first; among equal lengths the later one, since models front-load commentary
    ordered = sorted(candidates, key=lambda c: (len(c[1]), c[0]), reverse=True)
    for _, candidate in ordered:
        obj = _load_object(candidate)
        if obj is not None:
            return obj
    return None


def _fenced_candidates(text: str) -> List[Tuple[int, str]]:
    out: List[Tuple[int, str]] = []
    for m in _FENCE_RE.finditer(text):
        lang = (m.group(1) or "").lower()
        if lang and lang not in {"json", "json5", "javascript", "js"}:
            continue
        body = m.group(2).strip()
        if body.startswith("{"):
            out.append((m.start(), body))
        else:
            for s, e in balanced_spans(body):
                out.append((m.start() + s, body[s:e]))
    return out


def extract_payload(text: str, model: str = "") -> Dict[str, Any]:
    """Recover the structured object a model embedded in `text`.

    Strategies, first success wins:
      1. fenced code blocks containing an object
      2. provider formatting and leading-prose stripping, then balanced {...} spans
      3. the whole text as JSON
    Raises ExtractionError naming the model when nothing parses to an object.
    """
    raw = text or ""
    obj = _pick(_fenced_candidates(raw))
    if obj is not None:
        return obj

    formatted = _format_for_provider(raw, model)
    spans = [(s, formatted[s:e]) for s, e in balanced_spans(formatted)]
    obj = _pick(spans)
    if obj is not None:
        return obj

    obj = _load_object(raw.strip())
    if obj is not None:
        return obj
    log.debug("extract.failed model=%s preview=%r", model, raw[:120])
    raise ExtractionError(model, raw)


def try_extract(text: str, model: str = "") -> Optional[Dict[str, Any]]:
    try:
        return extract_payload(text, model)
    except ExtractionError:
        return None


def detect_payload_type(data: Any) -> str:
    """Classify an extracted object so callers can route it to the right schema."""
    if not isinstance(data, dict):
        return "unknown"
    if isinstance(data.get("selections"), list):
        return "selection"
    if isinstance(data.get("pages"), list) or "globalStyles" in data:
        return "site"
    if "root" in data and isinstance(data.get("root"), dict):
        return "component_tree"
    if "path" in data and ("components" in data or "seo" in data):
        return "page"
    if "industry" in data or "audience" in data:
        return "context"
    return "unknown"
