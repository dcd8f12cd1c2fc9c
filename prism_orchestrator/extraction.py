"""
Soft-Strict Extraction — structured data out of free-form LLM text
==================================================================
Models are prompted to reason in prose and then commit their answer in a
YAML block. Small and local models keep YAML intact far more often than
they keep JSON braces and quotes intact, so the chain is:

  1. YAML   — ```yaml / ```yml / untagged fence, then raw ``key: value`` text
  2. JSON array  — only when the first JSON opener in the text is ``[``
  3. JSON object — optionally required to carry an expected field
  4. nothing     — ExtractionResult(None, None); this module never raises

An untagged fence whose body is valid JSON is reported as ``json`` even though
the YAML loader parsed it.

Parsing is yaml.safe_load for YAML and json.loads (after sanitisation) for
JSON.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

import yaml

from .models import ExtractionResult

logger = logging.getLogger("prism_orchestrator.extraction")


# ─────────────────────────────────────────────
# Patterns
# ─────────────────────────────────────────────

_YAML_FENCES = [
    ("markdown_yaml", re.compile(r"```yaml\s*([\s\S]*?)\s*```", re.IGNORECASE)),
    ("markdown_yml", re.compile(r"```yml\s*([\s\S]*?)\s*```", re.IGNORECASE)),
    # untagged fence only: ```json / ```python blocks are not YAML candidates
    ("markdown_block", re.compile(r"```[ \t]*\n([\s\S]*?)\s*```")),
]
_RAW_YAML_LINE = re.compile(r"^[\w\-_]+:\s*.+$", re.MULTILINE)
_JSON_FENCE = re.compile(r"```json\s*([\s\S]*?)\s*```", re.IGNORECASE)
_INVISIBLE = re.compile("[\ufeff\u200b-\u200d\ufffe\uffff]")
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")


# ─────────────────────────────────────────────
# JSON helpers
# ─────────────────────────────────────────────

def sanitize_json(text: str) -> str:
    """Strip BOM / zero-width characters and trailing commas."""
    cleaned = _INVISIBLE.sub("", text).strip()
    return _TRAILING_COMMA.sub(r"\1", cleaned)


def _match_balanced(text: str, opener: str, closer: str) -> Optional[str]:
    """Return the first balanced ``opener…closer`` span, ignoring brackets in strings."""
    start = text.find(opener)
    if start == -1:
        return None
    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    end = text.rfind(closer)
    if end > start:
        return text[start:end + 1]
    return None


def _try_json(candidate: Optional[str]) -> Any:
    if not candidate:
        return None
    try:
        return json.loads(sanitize_json(candidate))
    except (json.JSONDecodeError, ValueError):
        return None


def _first_json_opener(text: str) -> Optional[str]:
    positions = [(text.find(c), c) for c in "[{" if text.find(c) != -1]
    return min(positions)[1] if positions else None


def safe_json_parse(text: str) -> Any:
    """Fenced block, then brace matching, then bracket matching, then raw."""
    if not text or not isinstance(text, str):
        return None
    cleaned = sanitize_json(text)
    fence = _JSON_FENCE.search(cleaned)
    if fence:
        data = _try_json(fence.group(1))
        if data is not None:
            return data
    for opener, closer in (("{", "}"), ("[", "]")):
        data = _try_json(_match_balanced(cleaned, opener, closer))
        if data is not None:
            return data
    return _try_json(cleaned)


def safe_json_array(text: str) -> Optional[list]:
    if not text or not isinstance(text, str):
        return None
    cleaned = sanitize_json(text)
    fence = _JSON_FENCE.search(cleaned)
    if fence:
        cleaned = fence.group(1)
    if _first_json_opener(cleaned) != "[":
        return None
    data = _try_json(_match_balanced(cleaned, "[", "]"))
    return data if isinstance(data, list) else None


def safe_json_object(text: str, expected_field: Optional[str] = None) -> Optional[dict]:
    if not text or not isinstance(text, str):
        return None
    cleaned = sanitize_json(text)
    fence = _JSON_FENCE.search(cleaned)
    if fence:
        cleaned = fence.group(1)
    data = _try_json(_match_balanced(cleaned, "{", "}"))
    if not isinstance(data, dict):
        return None
    if expected_field and expected_field not in data:
        return None
    return data


# ─────────────────────────────────────────────
# YAML helpers
# ─────────────────────────────────────────────

def _load_yaml(text: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        logger.debug(f"YAML parse failed: {exc}")
        return None


def _find_yaml(text: str) -> tuple[Any, str, str]:
    """(data, strategy name, parsed body); data is None when nothing matched."""
    for name, pattern in _YAML_FENCES:
        match = pattern.search(text)
        if not match or not match.group(1).strip():
            continue
        body = match.group(1).strip()
        data = _load_yaml(body)
        if isinstance(data, (dict, list)):
            logger.debug(f"YAML extracted via {name}")
            return data, name, body
    if _RAW_YAML_LINE.search(text):
        data = _load_yaml(text)
        if isinstance(data, dict) and data:
            logger.debug("YAML extracted via raw_yaml")
            return data, "raw_yaml", text
    return None, "", ""


def safe_yaml_parse(text: str) -> Any:
    """Return a YAML mapping or sequence, or None."""
    if not text or not isinstance(text, str):
        return None
    return _find_yaml(text)[0]


def _yaml_result(text: str) -> ExtractionResult:
    data, name, body = _find_yaml(text)
    if data is None:
        return ExtractionResult(None, None)
    # untagged fence holding valid JSON counts as JSON
    if name == "markdown_block" and _try_json(body) is not None:
        return ExtractionResult(data, "json")
    return ExtractionResult(data, "yaml")


# ─────────────────────────────────────────────
# Soft-Strict chain
# ─────────────────────────────────────────────

def _extract_json(text: str, expected_field: Optional[str]) -> ExtractionResult:
    array = safe_json_array(text)
    if array is not None:
        return ExtractionResult(array, "json")
    obj = safe_json_object(text, expected_field)
    if obj is not None:
        return ExtractionResult(obj, "json")
    return ExtractionResult(None, None)


def extract_structured(text: str, expected_field: Optional[str] = None,
                       prefer: str = "yaml") -> ExtractionResult:
    """
    Run the Soft-Strict chain over ``text``.

    ``format`` on the result tells the caller which strategy won; a result
    with ``data is None`` means every strategy failed.
    """
    if not text or not isinstance(text, str):
        return ExtractionResult(None, None)

    if prefer == "json":
        result = _extract_json(text, expected_field)
        if result.ok:
            return result
        return _yaml_result(text)

    result = _yaml_result(text)
    if result.ok:
        return result
    return _extract_json(text, expected_field)


def unwrap_list(data: Any, key: str) -> list:
    """``[...]`` or ``{key: [...]}`` → list; anything else → []."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get(key), list):
        return data[key]
    return []
