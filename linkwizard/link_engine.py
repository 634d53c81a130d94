from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .draft import CampaignDraft, SelectionAggregator
from .sanitization import sanitize_parameter, validate_url

logger = logging.getLogger("linkwizard.links")

MAX_TRACKING_URL_LENGTH = 2000


class LinkGenerationError(ValueError):
    """The batch cannot be generated; nothing from it may be persisted."""


@dataclass(frozen=True)
class GeneratedLink:
    """One immutable tracking link produced at commit time."""
    target_url: str
    source: str
    medium: str
    campaign: str
    content: str
    term: str
    full_tracking_url: str
    tags: Tuple[str, ...] = field(default_factory=tuple)

    def to_payload(self) -> Dict[str, object]:
        return {
            "targetUrl": self.target_url,
            "fullTrackingUrl": self.full_tracking_url,
            "campaign": self.campaign,
            "source": self.source,
            "medium": self.medium,
            "content": self.content,
            "term": self.term,
            "tags": list(self.tags),
        }


def build_tracking_url(
    clean_url: str, source: str, medium: str, campaign: str, content: str = "", term: str = ""
) -> str:
    """Append the tracking parameters in fixed order; content/term are omitted when empty."""
    parts = urlsplit(clean_url)
    pairs = parse_qsl(parts.query, keep_blank_values=True)
    pairs.extend([("utm_source", source), ("utm_medium", medium), ("utm_campaign", campaign)])
    if content:
        pairs.append(("utm_content", content))
    if term:
        pairs.append(("utm_term", term))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(pairs), parts.fragment))


def generate_links(draft: CampaignDraft, tags: Optional[Sequence[str]] = None) -> List[GeneratedLink]:
    """Purpose: Turn a finalized draft into the literal tracking links.
    Inputs/Outputs: Inputs are the draft and optional tag override (e.g. tags merged
        with an existing campaign); output is one GeneratedLink per combination.
    Side Effects / State: None; the draft is only read.
    Dependencies: SelectionAggregator.compute_combinations, sanitize_parameter, validate_url.
    Failure Modes: Raises LinkGenerationError for an empty required parameter, an
        invalid landing page, or any URL over MAX_TRACKING_URL_LENGTH; the whole batch fails.
    If Removed: Review and commit cannot produce links.
    Testing Notes: One source/medium, two contents, one page -> two links without utm_term.
    """
    # Campaign is shared by every link in the batch.
    campaign = sanitize_parameter(draft.name)
    if not campaign:
        raise LinkGenerationError("Campaign name is empty after sanitizing")
    link_tags = tuple(tags if tags is not None else draft.selected_tags)
    clean_urls: Dict[str, str] = {}
    links: List[GeneratedLink] = []

    for combo in SelectionAggregator(draft).compute_combinations():
        source = sanitize_parameter(combo.source)
        medium = sanitize_parameter(combo.medium)
        if not source or not medium:
            raise LinkGenerationError(f"Source/medium '{combo.source} -> {combo.medium}' is empty after sanitizing")
        page_url = combo.landing_page.url
        if page_url not in clean_urls:
            result = validate_url(page_url)
            if not result.is_valid:
                raise LinkGenerationError(f"Landing page '{page_url}' is invalid: {result.error}")
            clean_urls[page_url] = result.clean_url
        clean_url = clean_urls[page_url]

        content = sanitize_parameter(combo.content)
        term = sanitize_parameter(combo.term)
        full_url = build_tracking_url(clean_url, source, medium, campaign, content, term)
        if len(full_url) > MAX_TRACKING_URL_LENGTH:
            raise LinkGenerationError(
                f"Generated link for {source} -> {medium} exceeds {MAX_TRACKING_URL_LENGTH} characters"
            )
        links.append(
            GeneratedLink(
                target_url=clean_url,
                source=source,
                medium=medium,
                campaign=campaign,
                content=content,
                term=term,
                full_tracking_url=full_url,
                tags=link_tags,
            )
        )
    logger.info("campaign=%s generated_links=%d", campaign, len(links))
    return links


def format_links_for_copy(campaign_name: str, links: Sequence[GeneratedLink]) -> str:
    """Render links as plain text grouped by source, one "name - url" line per link."""
    grouped: Dict[str, List[GeneratedLink]] = {}
    for link in links:
        grouped.setdefault(link.source, []).append(link)

    lines = [f"Campaign: {campaign_name}"]
    for index, (source, source_links) in enumerate(grouped.items()):
        if index:
            lines.append("")
        lines.append(f"Source: {source}")
        lines.append("")
        for link in source_links:
            name = " ".join(part for part in (source, link.medium.capitalize(), link.content) if part)
            lines.append(f"{name} - {link.full_tracking_url}")
    return "\n".join(lines)
