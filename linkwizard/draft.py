"""Campaign draft and the selection aggregator that mutates it.

The draft is the only mutable aggregate of one conversation. All mutation goes
through SelectionAggregator so the pair invariants hold at every step:

    - content/term keys are "source|medium" composites of selected pairs only;
    - removing a source drops its mediums, content, and terms;
    - removing a medium drops its content and terms;
    - landing page URLs are unique within the draft.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Protocol, Tuple

from .gateway import ConflictError

logger = logging.getLogger("linkwizard.draft")

PAIR_SEPARATOR = "|"


class SelectionError(ValueError):
    """A selection violates the draft invariants (e.g. content for an unselected pair)."""


class TagGateway(Protocol):
    def create_tag(self, name: str, user_id: Optional[int], account_id: Optional[int]) -> str: ...

    def known_tags(self) -> List[str]: ...


@dataclass
class LandingPage:
    id: str
    url: str
    label: str


class Combination(NamedTuple):
    """One fully specified tuple that yields exactly one tracking link."""
    source: str
    medium: str
    content: str
    term: str
    landing_page: LandingPage


@dataclass
class CampaignDraft:
    """Session-scoped selections collected by the conversation."""
    name: str = ""
    is_existing_campaign: bool = False
    existing_campaign_name: Optional[str] = None
    landing_pages: List[LandingPage] = field(default_factory=list)
    selected_sources: List[str] = field(default_factory=list)
    selected_mediums: Dict[str, List[str]] = field(default_factory=dict)
    selected_content: Dict[str, List[str]] = field(default_factory=dict)
    selected_term: Dict[str, List[str]] = field(default_factory=dict)
    selected_tags: List[str] = field(default_factory=list)


def pair_key(source: str, medium: str) -> str:
    return f"{source}{PAIR_SEPARATOR}{medium}"


def _toggle(values: List[str], value: str) -> bool:
    # Returns True when the value ends up selected.
    if value in values:
        values.remove(value)
        return False
    values.append(value)
    return True


class SelectionAggregator:
    """All draft mutations and the combination math behind review and generation."""

    def __init__(
        self,
        draft: Optional[CampaignDraft] = None,
        tag_gateway: Optional[TagGateway] = None,
        user_id: Optional[int] = None,
        account_id: Optional[int] = None,
    ) -> None:
        self.draft = draft or CampaignDraft()
        self._tag_gateway = tag_gateway
        self._user_id = user_id
        self._account_id = account_id

    # Campaign identity

    def set_new_campaign(self, name: str) -> None:
        self.draft.name = name
        self.draft.is_existing_campaign = False
        self.draft.existing_campaign_name = None

    def set_existing_campaign(self, name: str) -> None:
        self.draft.name = name
        self.draft.is_existing_campaign = True
        self.draft.existing_campaign_name = name

    # Landing pages

    def add_landing_page(self, url: str, label: Optional[str] = None) -> bool:
        """Add a landing page unless its URL is already in the draft; returns True when added."""
        if self.has_landing_page(url):
            return False
        self.draft.landing_pages.append(
            LandingPage(id=f"lp-{uuid.uuid4().hex[:12]}", url=url, label=label or url)
        )
        return True

    def has_landing_page(self, url: str) -> bool:
        return any(page.url == url for page in self.draft.landing_pages)

    def remove_landing_page(self, url: str) -> bool:
        before = len(self.draft.landing_pages)
        self.draft.landing_pages = [page for page in self.draft.landing_pages if page.url != url]
        return len(self.draft.landing_pages) != before

    # Sources and mediums

    def toggle_source(self, name: str) -> bool:
        """Purpose: Select or deselect a traffic source.
        Inputs/Outputs: Input is a source name; output is True when now selected.
        Side Effects / State: Mutates selected_sources; removal cascades to the
            source's mediums and every content/term key of those pairs.
        Dependencies: _drop_pair for cascading cleanup.
        Failure Modes: None.
        If Removed: The sources step cannot record choices.
        Testing Notes: Toggle twice and verify mediums/content/terms are gone.
        """
        # Deselect with cascade, or append in insertion order.
        if name in self.draft.selected_sources:
            self.draft.selected_sources.remove(name)
            for medium in self.draft.selected_mediums.pop(name, []):
                self._drop_pair(name, medium)
            return False
        self.draft.selected_sources.append(name)
        self.draft.selected_mediums.setdefault(name, [])
        return True

    def toggle_medium(self, source: str, name: str) -> bool:
        if source not in self.draft.selected_sources:
            raise SelectionError(f"Source '{source}' is not selected")
        mediums = self.draft.selected_mediums.setdefault(source, [])
        selected = _toggle(mediums, name)
        if not selected:
            self._drop_pair(source, name)
        return selected

    def mediums_for(self, source: str) -> List[str]:
        return list(self.draft.selected_mediums.get(source, []))

    def _drop_pair(self, source: str, medium: str) -> None:
        key = pair_key(source, medium)
        self.draft.selected_content.pop(key, None)
        self.draft.selected_term.pop(key, None)

    # Content and terms

    def selected_pairs(self) -> List[Tuple[str, str]]:
        pairs: List[Tuple[str, str]] = []
        for source in self.draft.selected_sources:
            for medium in self.draft.selected_mediums.get(source, []):
                pairs.append((source, medium))
        return pairs

    def _require_pair(self, source: str, medium: str) -> str:
        if medium not in self.draft.selected_mediums.get(source, []) or source not in self.draft.selected_sources:
            raise SelectionError(f"Pair '{source} -> {medium}' is not selected")
        return pair_key(source, medium)

    def toggle_content(self, source: str, medium: str, value: str) -> bool:
        key = self._require_pair(source, medium)
        values = self.draft.selected_content.setdefault(key, [])
        selected = _toggle(values, value)
        if not values:
            del self.draft.selected_content[key]
        return selected

    def toggle_term(self, source: str, medium: str, value: str) -> bool:
        key = self._require_pair(source, medium)
        values = self.draft.selected_term.setdefault(key, [])
        selected = _toggle(values, value)
        if not values:
            del self.draft.selected_term[key]
        return selected

    def content_for(self, source: str, medium: str) -> List[str]:
        return list(self.draft.selected_content.get(pair_key(source, medium), []))

    def terms_for(self, source: str, medium: str) -> List[str]:
        return list(self.draft.selected_term.get(pair_key(source, medium), []))

    def toggle_term_everywhere(self, value: str, single: bool = False) -> bool:
        """Purpose: Broadcast a term to every selected source/medium pair.
        Inputs/Outputs: Inputs are the term and single-select flag; output is True
            when the term is selected afterwards.
        Side Effects / State: Mutates selected_term for every pair.
        Dependencies: toggle_term, selected_pairs.
        Failure Modes: Raises SelectionError when no pair is selected.
        If Removed: Typed and picked terms would need per-pair handling in the engine.
        Testing Notes: Toggling twice restores the original term sets.
        """
        # Broadcast the toggle to every selected pair.
        pairs = self.selected_pairs()
        if not pairs:
            raise SelectionError("Select at least one source and medium before adding terms")
        if single:
            already_only = all(self.terms_for(source, medium) == [value] for source, medium in pairs)
            for source, medium in pairs:
                self.draft.selected_term.pop(pair_key(source, medium), None)
            if already_only:
                return False
            for source, medium in pairs:
                self.toggle_term(source, medium, value)
            return True
        everywhere = all(value in self.terms_for(source, medium) for source, medium in pairs)
        for source, medium in pairs:
            has_value = value in self.terms_for(source, medium)
            if everywhere or not has_value:
                self.toggle_term(source, medium, value)
        return not everywhere

    def all_terms(self) -> List[str]:
        terms: List[str] = []
        for source, medium in self.selected_pairs():
            for term in self.terms_for(source, medium):
                if term not in terms:
                    terms.append(term)
        return terms

    def prune_orphans(self) -> None:
        """Drop content/term keys whose pair is no longer selected."""
        live = {pair_key(source, medium) for source, medium in self.selected_pairs()}
        for mapping in (self.draft.selected_content, self.draft.selected_term):
            for key in [key for key in mapping if key not in live or not mapping[key]]:
                del mapping[key]

    # Tags

    def has_tag(self, name: str) -> bool:
        lowered = name.strip().lower()
        return any(tag.lower() == lowered for tag in self.draft.selected_tags)

    def select_existing_tag(self, name: str) -> bool:
        if self.has_tag(name):
            return False
        self.draft.selected_tags.append(name)
        return True

    def add_tag(self, name: str) -> str:
        """Purpose: Create (or reuse) an account tag and attach it to the draft.
        Inputs/Outputs: Input is the tag name; output is the canonical stored name.
        Side Effects / State: Calls the tag gateway; appends to selected_tags once.
        Dependencies: TagGateway.create_tag is idempotent server-side; a ConflictError
            triggers a known_tags re-fetch and case-insensitive match.
        Failure Modes: GatewayError (other than conflict) propagates for the retry
            controller; a conflict with no matching tag after re-fetch keeps the input name.
        If Removed: Custom tags cannot be attached to generated links.
        Testing Notes: "Summer" after existing "summer" must not create a second entry.
        """
        # Reuse a draft tag that differs only in case.
        name = name.strip()
        if not name:
            raise SelectionError("Tag name is required")
        for tag in self.draft.selected_tags:
            if tag.lower() == name.lower():
                return tag
        canonical = name
        if self._tag_gateway is not None:
            try:
                canonical = self._tag_gateway.create_tag(name, self._user_id, self._account_id)
            except ConflictError:
                logger.info("tag=%s conflict=existing refetching", name)
                canonical = next(
                    (tag for tag in self._tag_gateway.known_tags() if tag.lower() == name.lower()),
                    name,
                )
        if not self.has_tag(canonical):
            self.draft.selected_tags.append(canonical)
        return canonical

    # Combinations

    def compute_combinations(self) -> List[Combination]:
        """Purpose: Expand the draft into the full 5-way cartesian product.
        Inputs/Outputs: No inputs; returns Combination tuples ordered by source,
            medium, content, term, landing page.
        Side Effects / State: None.
        Dependencies: selected_pairs for deterministic ordering.
        Failure Modes: None; returns [] when no landing page or pair exists.
        If Removed: Review counts and link generation have no input.
        Testing Notes: Length equals sum over pairs of max(1,|content|) * max(1,|term|) * |pages|.
        """
        # Nest source, medium, content, term, then landing page.
        combinations: List[Combination] = []
        for source, medium in self.selected_pairs():
            contents = self.content_for(source, medium) or [""]
            terms = self.terms_for(source, medium) or [""]
            for content in contents:
                for term in terms:
                    for page in self.draft.landing_pages:
                        combinations.append(Combination(source, medium, content, term, page))
        return combinations

    def combination_count(self) -> int:
        pages = len(self.draft.landing_pages)
        return sum(
            max(1, len(self.content_for(source, medium))) * max(1, len(self.terms_for(source, medium))) * pages
            for source, medium in self.selected_pairs()
        )

    def summary(self) -> Dict[str, object]:
        mediums: List[str] = []
        contents: List[str] = []
        for source, medium in self.selected_pairs():
            if medium not in mediums:
                mediums.append(medium)
            for value in self.content_for(source, medium):
                if value not in contents:
                    contents.append(value)
        return {
            "type": "existing" if self.draft.is_existing_campaign else "new",
            "name": self.draft.name,
            "landing_pages": [page.url for page in self.draft.landing_pages],
            "sources": list(self.draft.selected_sources),
            "mediums": mediums,
            "content": contents,
            "terms": self.all_terms(),
            "tags": list(self.draft.selected_tags),
            "link_count": self.combination_count(),
        }
