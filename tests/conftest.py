"""Shared fixtures: settings and in-memory collaborators for the conversation core."""

from typing import Dict, List, Optional, Set

import pytest

from linkwizard.config import Settings
from linkwizard.conversation import CampaignConversation
from linkwizard.gateway import ConflictError, GatewayError
from linkwizard.suggestions import SourceTemplate, TermSuggestion


class FakeGateway:
    """In-memory persistence collaborator; names in `failing` raise GatewayError."""

    def __init__(self) -> None:
        self.healthy = True
        self.recent_names: List[str] = ["Spring Launch", "Black Friday"]
        self.tags: List[str] = ["summer", "newsletter"]
        self.existing_campaign_tags: Dict[str, List[str]] = {}
        self.failing: Set[str] = set()
        self.fail_link_after: Optional[int] = None
        self.landing_pages: List[dict] = []
        self.tracking_links: List[dict] = []
        self.created_tags: List[str] = []

    def _maybe_fail(self, name: str, operation: str) -> None:
        if name in self.failing:
            raise GatewayError(operation, "connection refused")

    def check_health(self) -> bool:
        return self.healthy

    def recent_campaign_names(self) -> List[str]:
        self._maybe_fail("recent_campaign_names", "Loading recent campaigns")
        return list(self.recent_names)

    def known_tags(self) -> List[str]:
        self._maybe_fail("known_tags", "Loading tags")
        return list(self.tags)

    def create_tag(self, name: str, user_id: Optional[int], account_id: Optional[int]) -> str:
        self._maybe_fail("create_tag", "Creating tag")
        if any(tag.lower() == name.lower() for tag in self.tags):
            raise ConflictError("Creating tag", "resource already exists", status_code=409)
        self.tags.append(name)
        self.created_tags.append(name)
        return name

    def campaign_tags(self, campaign_name: str) -> List[str]:
        self._maybe_fail("campaign_tags", "Loading campaign tags")
        return list(self.existing_campaign_tags.get(campaign_name, []))

    def create_landing_page(self, campaign_name, url, label, user_id, account_id) -> dict:
        self._maybe_fail("create_landing_page", "Saving landing page")
        record = {"campaignName": campaign_name, "url": url, "label": label}
        self.landing_pages.append(record)
        return record

    def create_tracking_link(self, link_payload, user_id, account_id) -> dict:
        self._maybe_fail("create_tracking_link", "Saving tracking link")
        if self.fail_link_after is not None and len(self.tracking_links) >= self.fail_link_after:
            raise GatewayError("Saving tracking link", "HTTP 500", status_code=500)
        self.tracking_links.append(dict(link_payload))
        return link_payload


class FakeSuggestions:
    """Suggestion provider backed by plain dicts; never raises."""

    def __init__(self) -> None:
        self.templates = [
            SourceTemplate(name="facebook", mediums=["social", "cpc"]),
            SourceTemplate(name="google", mediums=["cpc", "display"]),
        ]
        self.content: Dict[tuple, List[str]] = {
            ("facebook", "social"): ["carousel", "video-ad"],
        }
        self.terms = [TermSuggestion(value="summer-sale"), TermSuggestion(value="test-a")]
        self.tags = ["summer", "newsletter"]
        self.landing_pages = ["https://shop.example.com/", "https://example.com/pricing"]
        self.content_calls: List[tuple] = []

    def fetch_content_suggestions(self, source: str, medium: str) -> List[str]:
        self.content_calls.append((source, medium))
        return list(self.content.get((source, medium), []))

    def fetch_term_suggestions(self, category=None) -> List[TermSuggestion]:
        return list(self.terms)

    def fetch_source_templates(self) -> List[SourceTemplate]:
        return list(self.templates)

    def fetch_known_tags(self) -> List[str]:
        return list(self.tags)

    def most_used_landing_pages(self, exclude=(), limit: int = 10) -> List[str]:
        excluded = set(exclude)
        return [url for url in self.landing_pages if url not in excluded][:limit]


def make_settings(**overrides) -> Settings:
    values = dict(
        api_base_url="http://collaborator.test/api",
        api_token="",
        request_timeout=5.0,
        max_consecutive_errors=3,
        manual_flow_url="/new-campaign",
        campaign_view_url="/campaigns",
        term_selection_mode="multi",
        max_sessions=50,
        sessions_path=None,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def suggestions() -> FakeSuggestions:
    return FakeSuggestions()


@pytest.fixture
def engine(settings, gateway, suggestions) -> CampaignConversation:
    return CampaignConversation(settings, gateway, suggestions)


@pytest.fixture
def session(engine):
    """A started session sitting on the campaign-type step."""
    new_session = engine.new_session(user_id=7, account_id=3)
    engine.start(new_session)
    return new_session
