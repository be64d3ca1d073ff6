"""
Outbound payload sanitization.

Walks an arbitrary JSON-like tree and cleans every string leaf according to
the field it sits under (email, url, phone, html, filename or plain text).
Sanitization never raises: unsafe values degrade to an empty or nearest-safe
value and the downgrade is logged.
"""

import html
import logging
import math
import re
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

import nh3

from secure_client.core.security.xss import SanitizedHtml, detect, url_scheme

logger = logging.getLogger(__name__)

JsonValue = Union[None, bool, int, float, str, Mapping[str, Any], Sequence[Any]]


class SanitizerKind(str, Enum):
    EMAIL = "email"
    URL = "url"
    PHONE = "phone"
    HTML = "html"
    FILENAME = "filename"
    TEXT = "text"


# Ordered, first match wins. Patterns are searched in the snake_case form of
# the field name ("profileUrl" -> "profile_url").
DEFAULT_FIELD_PATTERNS: Dict[str, str] = {
    r"e_?mail": SanitizerKind.EMAIL.value,
    r"(^|_)(phone|mobile|tel|telephone|fax)(_|$)": SanitizerKind.PHONE.value,
    r"(^|_)(url|uri|link|website|href|homepage)s?(_|$)": SanitizerKind.URL.value,
    r"(^|_)(html|content|description)(_|$)": SanitizerKind.HTML.value,
    r"(^|_)(file|filename)s?(_|$)": SanitizerKind.FILENAME.value,
}

# Keys that would poison an object prototype once the payload reaches a JS runtime
FORBIDDEN_KEYS = frozenset({"__proto__", "constructor", "prototype"})

ALLOWED_URL_SCHEMES = frozenset({"http", "https", "mailto"})

ALLOWED_HTML_TAGS = {"b", "i", "em", "strong", "a", "p", "br", "ul", "ol", "li", "span", "div"}
ALLOWED_HTML_ATTRIBUTES = {
    "*": {"class", "title"},
    "a": {"href", "target"},
}

EMAIL_PATTERN = re.compile(r"^[a-z0-9._%+-]+@[a-z0-9.-]+\.[a-z]{2,}$")
MAX_FILENAME_LENGTH = 255

# Upper bound on clean passes before giving up on a value
_MAX_PASSES = 8

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_NON_WORD = re.compile(r"[^a-z0-9]+")
_PHONE_DISALLOWED = re.compile(r"[^0-9 ()+\-]")
_CONTROL = re.compile(r"[\x00-\x1f\x7f]")
_FILENAME_DISALLOWED = re.compile(r"[^\w\s.-]")


def normalize_field_name(name: str) -> str:
    """camelCase / kebab-case / spaced names to snake_case"""
    snake = _CAMEL_BOUNDARY.sub("_", name).lower()
    return _NON_WORD.sub("_", snake).strip("_")


def _fixpoint(clean, value: str) -> str:
    """Apply ``clean`` until the value stops changing"""
    for _ in range(_MAX_PASSES):
        cleaned = clean(value)
        if cleaned == value:
            return cleaned
        value = cleaned
    # Still shrinking after the bound: not worth keeping
    return ""


def _strip_markup_once(value: str) -> str:
    # nh3 entity-encodes the text it keeps; payload fields carry plain characters
    return html.unescape(nh3.clean(value, tags=set()))


def sanitize_text(value: str) -> str:
    """Strip all markup, leaving plain text"""
    return _fixpoint(_strip_markup_once, value)


def sanitize_html(value: str) -> SanitizedHtml:
    """Allow-list HTML cleaning; script/style go away with their content"""
    def clean(markup: str) -> str:
        return nh3.clean(
            markup,
            tags=ALLOWED_HTML_TAGS,
            attributes=ALLOWED_HTML_ATTRIBUTES,
            url_schemes=set(ALLOWED_URL_SCHEMES),
            clean_content_tags={"script", "style"},
            strip_comments=True,
        )
    return SanitizedHtml(_fixpoint(clean, value))


def sanitize_email(value: str) -> str:
    """Lowercase, trim and validate; invalid addresses are cleared"""
    email = sanitize_text(value.strip().lower()).strip()
    if not EMAIL_PATTERN.match(email):
        return ""
    return email


def sanitize_url(value: str) -> str:
    """Keep http/https/mailto URLs without attack signatures"""
    url = _CONTROL.sub("", value).strip()
    if url_scheme(url) not in ALLOWED_URL_SCHEMES or detect(url):
        return ""
    return url


def sanitize_phone(value: str) -> str:
    """Digits, a leading '+', dashes, parentheses and spaces"""
    phone = _PHONE_DISALLOWED.sub("", value).strip()
    leading_plus = phone.startswith("+")
    phone = phone.replace("+", "").strip()
    return f"+{phone}" if leading_plus and phone else phone


def sanitize_filename(value: str) -> str:
    """No path separators, parent references or control characters"""
    name = _CONTROL.sub("", value).replace("/", "").replace("\\", "")
    name = _FILENAME_DISALLOWED.sub("", name)
    while ".." in name:
        name = name.replace("..", "")
    name = name[:MAX_FILENAME_LENGTH]
    return name.strip(" .")


_KIND_HANDLERS = {
    SanitizerKind.EMAIL: sanitize_email,
    SanitizerKind.URL: sanitize_url,
    SanitizerKind.PHONE: sanitize_phone,
    SanitizerKind.HTML: sanitize_html,
    SanitizerKind.FILENAME: sanitize_filename,
    SanitizerKind.TEXT: sanitize_text,
}


class Sanitizer:
    """
    Recursive payload sanitizer driven by an ordered field-pattern table.

    The rule table is compiled once and only read afterwards.
    """

    def __init__(self, rules: Optional[Mapping[str, str]] = None):
        table = DEFAULT_FIELD_PATTERNS if rules is None else rules
        self._rules: Tuple[Tuple[re.Pattern, SanitizerKind], ...] = tuple(
            (re.compile(pattern), SanitizerKind(kind)) for pattern, kind in table.items()
        )
        self.downgrades = 0

    def classify(self, field_name: Optional[str]) -> SanitizerKind:
        """Sanitizer kind for a field name; text when nothing matches"""
        if not field_name:
            return SanitizerKind.TEXT
        normalized = normalize_field_name(field_name)
        for pattern, kind in self._rules:
            if pattern.search(normalized):
                return kind
        return SanitizerKind.TEXT

    def sanitize(self, payload: JsonValue) -> JsonValue:
        """Sanitize a whole payload tree. Never raises."""
        try:
            return self._walk(payload, None)
        except Exception as e:  # last resort, a payload must never abort the call
            logger.error(f"Sanitizer failed, dropping payload: {type(e).__name__}: {e}")
            self._downgrade(None, "payload", "unexpected error")
            return None

    def sanitize_string(self, value: str, field_name: Optional[str] = None) -> str:
        kind = self.classify(field_name)
        cleaned = _KIND_HANDLERS[kind](value)

        if value and not cleaned:
            self._downgrade(field_name, kind.value, "value rejected")
        elif cleaned != value:
            logger.debug(f"Sanitized field '{field_name}' as {kind.value}")
        return cleaned

    def _walk(self, value: Any, field_name: Optional[str]) -> Any:
        # Explicit variant dispatch; bool before int because bool is an int
        if value is None:
            return None
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            if math.isfinite(value):
                return value
            self._downgrade(field_name, "number", "non-finite number")
            return None
        if isinstance(value, str):
            return self.sanitize_string(value, field_name)
        if isinstance(value, Mapping):
            return self._walk_mapping(value)
        if isinstance(value, (list, tuple)):
            return [self._walk(item, field_name) for item in value]

        self._downgrade(field_name, type(value).__name__, "unsupported type")
        return None

    def _walk_mapping(self, mapping: Mapping) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for key, item in mapping.items():
            if not isinstance(key, str):
                key = str(key)
            if key in FORBIDDEN_KEYS:
                self._downgrade(key, "key", "prototype pollution key dropped")
                continue
            result[key] = self._walk(item, key)
        return result

    def _downgrade(self, field_name: Optional[str], kind: str, reason: str) -> None:
        self.downgrades += 1
        logger.warning(f"🧹 SanitizationDowngrade field={field_name!r} kind={kind}: {reason}")


def sanitize(payload: JsonValue, rules: Optional[Mapping[str, str]] = None) -> JsonValue:
    """Module-level shortcut for one-off payloads"""
    return Sanitizer(rules).sanitize(payload)
