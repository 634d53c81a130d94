"""Suggestion provider: candidate values fetched from collaborators, never authoritative.

Every fetch degrades to an empty list on failure. Callers treat an empty list as
"no suggestions, offer custom entry" and never count it as an error.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, List, Optional
from urllib.parse import quote

from .gateway import CollaboratorClient, GatewayError

logger = logging.getLogger("linkwizard.suggestions")

MOST_USED_URL_LIMIT = 10


@dataclass(frozen=True)
class TermSuggestion:
    value: str
    category: str = "general"
    description: Optional[str] = None


@dataclass(frozen=True)
class SourceTemplate:
    """A catalogue source with its default mediums."""
    name: str
    mediums: List[str] = field(default_factory=list)


class SuggestionProvider:
    """Read-only adapter over the suggestion and catalogue endpoints."""

    def __init__(self, client: CollaboratorClient) -> None:
        self._client = client

    def fetch_content_suggestions(self, source: str, medium: str) -> List[str]:
        """Purpose: Fetch content variation suggestions for a source/medium pair.
        Inputs/Outputs: Inputs are source and medium names; output is a list of strings.
        Side Effects / State: Network I/O; logs failures.
        Dependencies: GET /content-suggestions/{source}/{medium}.
        Failure Modes: Any GatewayError or malformed payload returns [].
        If Removed: The content step can only offer custom entry.
        Testing Notes: Simulate a 500 and expect [] without an exception.
        """
        # Quote both path segments.
        path = f"/content-suggestions/{quote(source, safe='')}/{quote(medium, safe='')}"
        data = self._safe_get(f"Content suggestions for {source}-{medium}", path)
        return _unique_strings(data)

    def fetch_term_suggestions(self, category: Optional[str] = None) -> List[TermSuggestion]:
        """Purpose: Fetch term templates, optionally filtered by category.
        Inputs/Outputs: Input is an optional category; output is a list of TermSuggestion.
        Side Effects / State: Network I/O; logs failures.
        Dependencies: GET /term-suggestions?category=.
        Failure Modes: Failures and non-list payloads return []; entries without a
            termValue are skipped.
        If Removed: The terms step can only offer custom entry.
        Testing Notes: Verify description/category mapping and dedup by value.
        """
        # Filter by category only when one is given.
        params = {"category": category} if category else None
        data = self._safe_get("Term suggestions", "/term-suggestions", params=params)
        suggestions: List[TermSuggestion] = []
        seen = set()
        for entry in data if isinstance(data, list) else []:
            if not isinstance(entry, dict):
                continue
            value = str(entry.get("termValue") or "").strip()
            if not value or value in seen:
                continue
            seen.add(value)
            suggestions.append(
                TermSuggestion(
                    value=value,
                    category=str(entry.get("category") or "general"),
                    description=entry.get("description") or None,
                )
            )
        return suggestions

    def fetch_source_templates(self) -> List[SourceTemplate]:
        data = self._safe_get("Source templates", "/source-templates")
        templates: List[SourceTemplate] = []
        index = {}
        for entry in data if isinstance(data, list) else []:
            if not isinstance(entry, dict) or not entry.get("sourceName"):
                continue
            name = str(entry["sourceName"]).strip()
            mediums = _unique_strings(entry.get("mediums"))
            # Several templates may describe the same source; merge their mediums.
            if name in index:
                known = templates[index[name]].mediums
                merged = known + [medium for medium in mediums if medium not in known]
                templates[index[name]] = SourceTemplate(name=name, mediums=merged)
                continue
            index[name] = len(templates)
            templates.append(SourceTemplate(name=name, mediums=mediums))
        return templates

    def fetch_known_tags(self) -> List[str]:
        data = self._safe_get("Known tags", "/known-tags")
        names = [entry.get("name") for entry in data if isinstance(entry, dict)] if isinstance(data, list) else []
        return _unique_strings(names)

    def most_used_landing_pages(self, exclude: Iterable[str] = (), limit: int = MOST_USED_URL_LIMIT) -> List[str]:
        """Purpose: Rank previously used landing page URLs by frequency.
        Inputs/Outputs: Inputs are URLs to exclude and a limit; output is ranked URLs.
        Side Effects / State: Network I/O.
        Dependencies: GET /known-landing-page-urls and collections.Counter.
        Failure Modes: Failures return [].
        If Removed: The landing-page step offers only custom URLs.
        Testing Notes: Ties keep first-seen order; excluded URLs never appear.
        """
        # Rank known URLs by how often they were used.
        data = self._safe_get("Known landing pages", "/known-landing-page-urls")
        urls = [url for url in data if isinstance(url, str) and url] if isinstance(data, list) else []
        excluded = set(exclude)
        # Counter.most_common keeps insertion order for equal counts.
        ranked = [url for url, _ in Counter(urls).most_common() if url not in excluded]
        return ranked[:limit]

    def _safe_get(self, operation: str, path: str, params: Optional[dict] = None) -> object:
        try:
            return self._client.get_json(operation, path, params=params)
        except GatewayError as exc:
            logger.warning("operation=%s degraded=empty error=%s", operation, exc)
            return []


def _unique_strings(values: object) -> List[str]:
    if not isinstance(values, list):
        return []
    result: List[str] = []
    for value in values:
        if isinstance(value, str) and value.strip() and value.strip() not in result:
            result.append(value.strip())
    return result
