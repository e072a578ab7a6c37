"""
Response format detection and coercion.

The origin returns HTML fragments for search and tab requests, but cached
entries can end up holding JSON (an upstream error page, a proxy wrapping
the fragment). The declared content type is trusted first; sniffing the
body is only a fallback. Coercion never silently rewrites content: when a
JSON value cannot be unwrapped into HTML it is logged and returned as is.
"""
import json
from enum import Enum
from typing import Any, Optional

from search_accel.utils.logger import get_logger

logger = get_logger("cache.formats")

HTML_MARKERS = ("<!doctype", "<html", "<div", "<section", "<ul", "<p", "<span", "<a ")
UNWRAP_FIELDS = ("html", "data", "content")


class ResponseFormat(str, Enum):
    HTML = "html"
    JSON = "json"
    TEXT = "text"
    UNKNOWN = "unknown"


def format_from_content_type(content_type: Optional[str]) -> Optional[ResponseFormat]:
    if not content_type:
        return None
    lowered = content_type.lower()
    if "text/html" in lowered:
        return ResponseFormat.HTML
    if "json" in lowered:
        return ResponseFormat.JSON
    if lowered.startswith("text/"):
        return ResponseFormat.TEXT
    return None


def detect_format(content: Any, content_type: Optional[str] = None) -> ResponseFormat:
    """Detect the format of a payload, preferring the declared content type."""
    declared = format_from_content_type(content_type)
    if declared is not None:
        return declared

    if content is None:
        return ResponseFormat.UNKNOWN
    if isinstance(content, (dict, list)):
        return ResponseFormat.JSON
    if isinstance(content, bytes):
        try:
            content = content.decode("utf-8")
        except UnicodeDecodeError:
            return ResponseFormat.UNKNOWN
    if not isinstance(content, str):
        return ResponseFormat.UNKNOWN

    stripped = content.strip()
    if not stripped:
        return ResponseFormat.UNKNOWN

    if stripped[0] in "{[" and stripped[-1] in "}]":
        try:
            json.loads(stripped)
            return ResponseFormat.JSON
        except ValueError:
            pass

    lowered = stripped[:512].lower()
    if any(marker in lowered for marker in HTML_MARKERS):
        return ResponseFormat.HTML

    return ResponseFormat.TEXT


def _unwrap(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        for name in UNWRAP_FIELDS:
            field_value = value.get(name)
            if isinstance(field_value, str):
                return field_value
    return None


def coerce_content(content: Any, expected: ResponseFormat = ResponseFormat.HTML) -> Any:
    """
    Make ``content`` usable as ``expected``.

    Only HTML coercion is performed: a JSON object (or a JSON string)
    carrying an ``html``, ``data`` or ``content`` string field is unwrapped
    to that field. Anything that cannot be unwrapped is returned unchanged
    and a warning is logged.
    """
    if expected != ResponseFormat.HTML or content is None:
        return content

    if isinstance(content, dict):
        unwrapped = _unwrap(content)
        if unwrapped is not None:
            return unwrapped
        logger.warning("Expected HTML but found a JSON object without an html/data/content field")
        return content

    if isinstance(content, str) and detect_format(content) == ResponseFormat.JSON:
        unwrapped = _unwrap(json.loads(content))
        if unwrapped is not None:
            return unwrapped
        logger.warning("Expected HTML but found a JSON string that could not be unwrapped")

    return content
