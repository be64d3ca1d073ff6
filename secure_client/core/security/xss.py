"""
XSS guard: escaping, detection and safe-render helpers for untrusted text.

``detect`` is a heuristic for logging and telemetry, never the only line of
defense. Rendering goes through ``render_safe_text`` (always escapes) or
``render_safe_html`` (only trusts output of the sanitizer's html path).
"""

import html
import logging
import re
from typing import Optional
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

SAFE_URL_SCHEMES = frozenset({"http", "https", "mailto", "tel"})

XSS_SIGNATURES = (
    re.compile(r"<\s*script\b", re.IGNORECASE),
    re.compile(r"\bon\w+\s*=", re.IGNORECASE),
    re.compile(r"javascript\s*:", re.IGNORECASE),
    re.compile(r"vbscript\s*:", re.IGNORECASE),
    re.compile(r"data\s*:\s*text/html", re.IGNORECASE),
    re.compile(r"<\s*iframe\b", re.IGNORECASE),
    re.compile(r"<\s*object\b", re.IGNORECASE),
    re.compile(r"<\s*embed\b", re.IGNORECASE),
    re.compile(r"<\s*svg\b[^>]*\bonload", re.IGNORECASE),
    re.compile(r"<\s*img\b[^>]*\bonerror", re.IGNORECASE),
)

_CONTROL_CHARS = re.compile(r"[\x00-\x20\x7f]+")


class SanitizedHtml(str):
    """Markup produced by the sanitizer's html path; the only kind render_safe_html trusts"""


def escape(text: Optional[str]) -> str:
    """
    HTML-entity-encode ``& < > " '``.

    Apply exactly once per render path; escaping twice shows entities to
    the user.
    """
    if not text or not isinstance(text, str):
        return ""
    return html.escape(text, quote=True)


def unescape(text: Optional[str]) -> str:
    """Reverse ``escape``. Only for trusted content."""
    if not text or not isinstance(text, str):
        return ""
    return html.unescape(text)


def detect(text: Optional[str]) -> bool:
    """True if ``text`` matches a known attack signature"""
    if not text or not isinstance(text, str):
        return False

    for pattern in XSS_SIGNATURES:
        if pattern.search(text):
            logger.debug(f"XSS signature matched: {pattern.pattern}")
            return True
    return False


def url_scheme(url: str) -> str:
    """Lowercased scheme of ``url`` with control characters and whitespace removed"""
    compact = _CONTROL_CHARS.sub("", url)
    try:
        return urlsplit(compact).scheme.lower()
    except ValueError:
        return ""


def safe_url(url: Optional[str]) -> bool:
    """True if ``url`` uses an allowed scheme and carries no attack signature"""
    if not url or not isinstance(url, str):
        return False

    scheme = url_scheme(url.strip())
    if scheme not in SAFE_URL_SCHEMES:
        logger.warning(f"⚠️ Unsafe URL scheme rejected: {scheme or '<none>'}")
        return False

    if detect(url):
        logger.warning("⚠️ XSS pattern detected in URL")
        return False

    return True


def sanitize_attribute(value: Optional[str]) -> str:
    """Escape an attribute value; event handlers and script/data URLs become empty"""
    if not value or not isinstance(value, str):
        return ""

    stripped = value.strip()
    if re.match(r"on\w+", stripped, re.IGNORECASE):
        logger.warning("⚠️ Rejected event handler attribute")
        return ""
    if url_scheme(stripped) in ("javascript", "vbscript", "data"):
        logger.warning("⚠️ Rejected script/data URL in attribute")
        return ""

    return escape(value)


def render_safe_text(text: Optional[str], tag: str = "span") -> str:
    """Render untrusted text inside ``tag``; the text is always escaped"""
    return f"<{tag}>{escape(text)}</{tag}>"


def render_safe_html(markup: Optional[str], class_name: Optional[str] = None) -> str:
    """
    Render sanitized markup inside a div.

    Only ``SanitizedHtml`` values are inserted verbatim. Any other string is
    treated as untrusted text and escaped.
    """
    class_attr = f' class="{escape(class_name)}"' if class_name else ""
    if not markup:
        return f"<div{class_attr}></div>"

    if isinstance(markup, SanitizedHtml):
        return f"<div{class_attr}>{markup}</div>"

    logger.warning("Unsanitized string passed to render_safe_html - rendering as text")
    return f"<div{class_attr}>{escape(markup)}</div>"
