"""Sanitization and validation of user text, tracking parameters, and landing page URLs.

Everything here is pure: no logging, no I/O. The conversation engine calls these
helpers on every free-text turn and the link engine re-checks every combination.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

TRACKING_PARAMETERS = ("utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term")
MAX_CLEAN_URL_LENGTH = 1800
MAX_TEXT_INPUT_LENGTH = 500
MAX_CAMPAIGN_NAME_LENGTH = 100

# kind -> (max length, required)
FIELD_RULES = {
    "source": (100, True),
    "medium": (50, True),
    "campaign": (100, True),
    "content": (100, False),
    "term": (100, False),
}
FIELD_LABELS = {
    "source": "Source",
    "medium": "Medium",
    "campaign": "Campaign name",
    "content": "Content",
    "term": "Term",
}

SCRIPT_BLOCK_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
HTML_TAG_RE = re.compile(r"<[^>]*>")
JS_PROTOCOL_RE = re.compile(r"javascript:", re.IGNORECASE)
INLINE_HANDLER_RE = re.compile(r"on\w+\s*=", re.IGNORECASE)
FIELD_CHARS_RE = re.compile(r"^[a-zA-Z0-9\-_\s]+$")
CAMPAIGN_STRIP_RE = re.compile(r"[^a-zA-Z0-9\-_\s]")


@dataclass(frozen=True)
class UrlValidation:
    """Outcome of validate_url: a clean URL on success, an error message otherwise."""
    is_valid: bool
    clean_url: str = ""
    error: Optional[str] = None


@dataclass(frozen=True)
class FieldValidation:
    is_valid: bool
    error: Optional[str] = None


def sanitize_parameter(raw: str) -> str:
    """Purpose: Normalize raw text into a safe tracking-parameter value.
    Inputs/Outputs: Input is a raw string; output is lowercase text limited to
        [a-z0-9-_] with whitespace runs turned into single hyphens.
    Side Effects / State: None; pure function.
    Dependencies: Regex only; called by the aggregator intake and the link engine.
    Failure Modes: Returns an empty string when nothing safe remains.
    If Removed: Generated links carry raw user text and break attribution reports.
    Testing Notes: "Summer Sale!! 2025" -> "summer-sale-2025"; applying twice is a no-op.
    """
    # Normalize case and separators, then drop unsafe characters.
    if not raw:
        return ""
    value = raw.lower().strip()
    value = re.sub(r"\s+", "-", value)
    value = re.sub(r"[^a-z0-9\-_]", "", value)
    value = re.sub(r"-+", "-", value)
    return value.strip("-")


def strip_tracking_parameters(query: str) -> str:
    """Drop every tracking pair from a query string, keeping the other pairs in order."""
    pairs = [
        (key, value)
        for key, value in parse_qsl(query, keep_blank_values=True)
        if key not in TRACKING_PARAMETERS
    ]
    return urlencode(pairs)


def validate_url(raw: str) -> UrlValidation:
    """Purpose: Validate a landing page URL and strip pre-existing tracking parameters.
    Inputs/Outputs: Input is raw URL text; output is UrlValidation with clean_url or error.
    Side Effects / State: None; pure function.
    Dependencies: Uses urllib.parse and strip_tracking_parameters.
    Failure Modes: Missing http(s) prefix, unparseable URL, missing host, or a clean URL
        longer than MAX_CLEAN_URL_LENGTH yield is_valid=False with a message.
    If Removed: Landing pages with stale tracking parameters produce duplicated params.
    Testing Notes: "https://x.com/?utm_source=old&foo=bar" -> "https://x.com/?foo=bar".
    """
    # Reject anything without an http(s) prefix first.
    if not raw or not isinstance(raw, str):
        return UrlValidation(is_valid=False, error="URL is required")
    url = raw.strip()
    if not (url.startswith("http://") or url.startswith("https://")):
        return UrlValidation(is_valid=False, error="URL must start with http:// or https://")
    try:
        parts = urlsplit(url)
        # Accessing port validates the netloc.
        parts.port
    except ValueError:
        return UrlValidation(is_valid=False, error="Invalid URL format")
    if not parts.hostname or any(ch.isspace() for ch in url):
        return UrlValidation(is_valid=False, error="Invalid URL format")

    path = parts.path or "/"
    query = strip_tracking_parameters(parts.query) if parts.query else ""
    clean_url = urlunsplit((parts.scheme, parts.netloc, path, query, parts.fragment))
    if len(clean_url) > MAX_CLEAN_URL_LENGTH:
        return UrlValidation(
            is_valid=False,
            error=f"URL too long. Maximum {MAX_CLEAN_URL_LENGTH} characters before tracking parameters.",
        )
    return UrlValidation(is_valid=True, clean_url=clean_url)


def validate_field(kind: str, value: str) -> FieldValidation:
    """Purpose: Check a raw tracking field against its length and character rules.
    Inputs/Outputs: Inputs are the field kind (source/medium/campaign/content/term) and
        the raw value; output is FieldValidation.
    Side Effects / State: None.
    Dependencies: FIELD_RULES and FIELD_CHARS_RE.
    Failure Modes: Unknown kind raises KeyError.
    If Removed: Custom sources and names with disallowed characters reach the draft.
    Testing Notes: Medium of 51 chars fails; empty content passes; empty source fails.
    """
    # Look up the rule for this field kind.
    max_length, required = FIELD_RULES[kind]
    label = FIELD_LABELS[kind]
    value = value or ""
    if not value:
        if required:
            return FieldValidation(is_valid=False, error=f"{label} is required")
        return FieldValidation(is_valid=True)
    if len(value) > max_length:
        return FieldValidation(is_valid=False, error=f"{label} must be {max_length} characters or less")
    if not FIELD_CHARS_RE.match(value):
        return FieldValidation(
            is_valid=False,
            error=f"{label} can only contain letters, numbers, spaces, hyphens, and underscores",
        )
    return FieldValidation(is_valid=True)


def sanitize_html(raw: str) -> str:
    """Remove script blocks, tags, javascript: URLs, and inline event handlers."""
    if not raw or not isinstance(raw, str):
        return ""
    text = SCRIPT_BLOCK_RE.sub("", raw)
    text = HTML_TAG_RE.sub("", text)
    text = JS_PROTOCOL_RE.sub("", text)
    text = INLINE_HANDLER_RE.sub("", text)
    return text.strip()


def sanitize_text_input(raw: str, max_length: int = MAX_TEXT_INPUT_LENGTH) -> str:
    # Applied to every free-text turn before step-specific handling.
    return sanitize_html(raw)[:max_length].strip()


def sanitize_campaign_name(raw: str) -> str:
    """Strip markup and characters a campaign field rejects, capped at 100 characters."""
    text = CAMPAIGN_STRIP_RE.sub("", sanitize_html(raw))
    return re.sub(r"\s+", " ", text)[:MAX_CAMPAIGN_NAME_LENGTH].strip()


def is_duplicate_campaign(name: str, existing: Iterable[str]) -> bool:
    """Purpose: Detect a new campaign name that collides with an existing one.
    Inputs/Outputs: Inputs are the candidate name and known names; output is True on collision.
    Side Effects / State: None.
    Dependencies: Compares sanitize_parameter forms so "Summer Sale" matches "summer-sale".
    Failure Modes: Empty names never collide.
    If Removed: A "new" campaign silently merges links into an existing one.
    Testing Notes: Case and spacing differences still count as duplicates.
    """
    # Compare sanitized forms.
    candidate = sanitize_parameter(name)
    if not candidate:
        return False
    return any(sanitize_parameter(other) == candidate for other in existing)
