"""
Security layer of the request pipeline.

Centralizes the client-side guards:
- Token storage
- CSRF tokens
- Rate limiting
- Payload sanitization and XSS escaping

All of it is defense-in-depth; the server remains the enforcement point.
"""

from .csrf import CSRF_HEADER, CsrfManager, CsrfToken
from .rate_limiter import RateLimiter, RateLimitStatus
from .sanitizer import Sanitizer, SanitizerKind, sanitize
from .storage import KeyValueStorage, MemoryStorage
from .token_store import TokenPair, TokenStore
from .xss import SanitizedHtml, detect, escape, render_safe_html, render_safe_text

__all__ = [
    'CSRF_HEADER',
    'CsrfManager',
    'CsrfToken',
    'RateLimiter',
    'RateLimitStatus',
    'Sanitizer',
    'SanitizerKind',
    'sanitize',
    'KeyValueStorage',
    'MemoryStorage',
    'TokenPair',
    'TokenStore',
    'SanitizedHtml',
    'detect',
    'escape',
    'render_safe_html',
    'render_safe_text',
]
