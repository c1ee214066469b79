from __future__ import annotations

import json
import logging
import re
from typing import Any


log = logging.getLogger(__name__)

DANGEROUS_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"<iframe[\s\S]*?</iframe>", re.IGNORECASE),
    re.compile(r"<object[\s\S]*?</object>", re.IGNORECASE),
    re.compile(r"<embed[\s\S]*?>", re.IGNORECASE),
    re.compile(r"eval\(", re.IGNORECASE),
    re.compile(r"expression\(", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"data:text/html", re.IGNORECASE),
]

HTML_ENTITIES = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
}
_ESCAPE_RE = re.compile(r"[&<>\"'/]")

# Escaped form -> restored tag.
ALLOWED_TAGS = [
    ("&lt;b&gt;", "<b>"),
    ("&lt;&#x2F;b&gt;", "</b>"),
    ("&lt;strong&gt;", "<strong>"),
    ("&lt;&#x2F;strong&gt;", "</strong>"),
    ("&lt;em&gt;", "<em>"),
    ("&lt;&#x2F;em&gt;", "</em>"),
    ("&lt;br&gt;", "<br>"),
    ("&lt;br&#x2F;&gt;", "<br>"),
    ("&lt;p&gt;", "<p>"),
    ("&lt;&#x2F;p&gt;", "</p>"),
]

_FENCE_RE = re.compile(r"```(?:json)?\n?")


def escape_html(text: Any) -> str:
    if not isinstance(text, str):
        return str(text)
    return _ESCAPE_RE.sub(lambda m: HTML_ENTITIES[m.group(0)], text)


def contains_dangerous_patterns(text: Any) -> bool:
    if not isinstance(text, str):
        return False
    return any(p.search(text) for p in DANGEROUS_PATTERNS)


def sanitize_ai_response(response: Any) -> str:
    """Strip script-like content from model output, escape the rest, keep basic formatting tags."""
    if response is None:
        return ""
    if not isinstance(response, str):
        return str(response)
    out = response
    for pattern in DANGEROUS_PATTERNS:
        out = pattern.sub("", out)
    out = escape_html(out)
    for escaped, tag in ALLOWED_TAGS:
        out = out.replace(escaped, tag)
    return out


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, str):
        return sanitize_ai_response(value)
    if isinstance(value, list):
        return [_sanitize_value(v) for v in value]
    if isinstance(value, dict):
        return {k: _sanitize_value(v) for k, v in value.items()}
    return value


def sanitize_json_response(raw: Any) -> Any:
    """
    Parse model output as JSON and sanitise every string inside it.

    Returns ``{"error": "Invalid response format"}`` when the text is not JSON.
    """
    if not isinstance(raw, str):
        return _sanitize_value(raw)
    try:
        parsed = json.loads(strip_code_fences(raw))
    except json.JSONDecodeError as e:
        log.warning("Failed to parse JSON response for sanitization: %s", e)
        return {"error": "Invalid response format"}
    return _sanitize_value(parsed)


def sanitize_insights(insights: Any) -> list[dict[str, str]]:
    if not isinstance(insights, list):
        return []
    out = []
    for item in insights:
        if not isinstance(item, dict):
            continue
        out.append(
            {
                "type": item.get("type") or "info",
                "icon": item.get("icon") or "💡",
                "message": sanitize_ai_response(item.get("message")),
                "detail": sanitize_ai_response(item.get("detail")),
            }
        )
    return out
