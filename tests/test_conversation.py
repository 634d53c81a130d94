"""Tests for the conversation state machine, driven one turn at a time."""

import pytest

from conftest import make_settings
from linkwizard.conversation import CampaignConversation, Step


def act(engine, session, action, payload=None):
    return engine.handle(session, action=action, payload=payload)


def say(engine, session, text):
    return engine.handle(session, text=text)


def actions(session):
    return [option.action for option in session.transcript.last_bot_message().options or []]


def labels(session):
    return [option.label for option in session.transcript.last_bot_message().options or []]


def to_review(engine, session):
    act(engine, session, "start-new")
    say(engine, session, "Summer Sale!! 2025")
    act(engine, session, "select-landing-page", "https://shop.example.com/")
    act(engine, session, "continue")
    act(engine, session, "toggle-source", "facebook")
    act(engine, session, "continue")
    act(engine, session, "toggle-medium", "social")
    act(engine, session, "continue")
    act(engine, session, "toggle-content", "carousel")
    act(engine, session, "toggle-content", "video-ad")
    act(engine, session, "continue")
    act(engine, session, "skip")
    act(engine, session, "skip")


class TestStart:
    def test_greets_with_campaign_type(self, session):
        assert session.step == Step.CAMPAIGN_TYPE
        assert actions(session) == ["start-existing", "start-new"]

    def test_unhealthy_collaborator_offers_retry(self, engine, gateway):
        gateway.healthy = False
        session = engine.new_session()
        messages = engine.start(session)
        assert messages[-1].is_error
        assert actions(session) == ["retry"]
        assert session.step == Step.WELCOME

        gateway.healthy = True
        act(engine, session, "retry")
        assert session.step == Step.CAMPAIGN_TYPE
        assert session.retry.consecutive_errors == 0


class TestNewCampaignFlow:
    def test_full_flow_creates_links(self, engine, session, gateway):
        to_review(engine, session)
        assert session.step == Step.REVIEW
        review = session.transcript.last_bot_message().text
        assert "Name: Summer Sale 2025" in review
        assert "This will create 2 tracking link(s)" in review
        assert labels(session)[0] == "Create Campaign"

        act(engine, session, "commit")

        assert session.step == Step.COMPLETE
        assert len(gateway.landing_pages) == 1
        assert [link["content"] for link in gateway.tracking_links] == ["carousel", "video-ad"]
        assert all(link["campaign"] == "summer-sale-2025" for link in gateway.tracking_links)
        assert len(session.generated_links) == 2
        assert session.draft.name == ""
        assert actions(session) == ["view-campaign", "copy-links", "restart"]
        assert session.transcript.last_bot_message().options[0].url == "/campaigns?expand=summer-sale-2025"

    def test_copy_links_after_completion(self, engine, session):
        to_review(engine, session)
        act(engine, session, "commit")
        messages = act(engine, session, "copy-links")
        assert "Campaign: Summer Sale 2025" in messages[-1].text
        assert "utm_content=carousel" in messages[-1].text

    def test_second_commit_is_ignored(self, engine, session, gateway):
        to_review(engine, session)
        act(engine, session, "commit")
        assert act(engine, session, "commit") == []
        assert len(gateway.tracking_links) == 2

    def test_commit_while_in_flight_is_ignored(self, engine, session, gateway):
        to_review(engine, session)
        session.commit_in_flight = True
        assert act(engine, session, "commit") == []
        assert gateway.tracking_links == []

    def test_commit_outside_review_is_ignored(self, engine, session, gateway):
        assert act(engine, session, "commit") == []
        assert session.step == Step.CAMPAIGN_TYPE

    def test_duplicate_campaign_name(self, engine, session):
        act(engine, session, "start-new")
        messages = say(engine, session, "black friday")
        assert messages[-1].is_error
        assert "already exists" in messages[-1].text
        assert session.step == Step.CAMPAIGN_NAME
        assert session.awaiting_input == "campaign-name"

    def test_invalid_then_valid_custom_url(self, engine, session):
        act(engine, session, "start-new")
        say(engine, session, "Spring")
        act(engine, session, "custom-url")
        assert session.awaiting_input == "custom-url"

        messages = say(engine, session, "example.com")
        assert messages[-1].is_error
        assert session.awaiting_input == "custom-url"
        assert session.draft.landing_pages == []

        say(engine, session, "https://x.com/?utm_source=old&foo=bar")
        assert [page.url for page in session.draft.landing_pages] == ["https://x.com/?foo=bar"]
        assert session.awaiting_input is None

    def test_continue_without_sources_is_corrected(self, engine, session):
        act(engine, session, "start-new")
        say(engine, session, "Spring")
        act(engine, session, "select-landing-page", "https://shop.example.com/")
        act(engine, session, "continue")
        messages = act(engine, session, "continue")
        assert session.step == Step.SOURCES
        assert "No sources selected" in messages[-1].text

    def test_custom_source_without_catalogue_asks_for_medium(self, engine, session):
        act(engine, session, "start-new")
        say(engine, session, "Spring")
        act(engine, session, "select-landing-page", "https://shop.example.com/")
        act(engine, session, "continue")
        act(engine, session, "custom-source")
        say(engine, session, "Newsletter")
        assert session.draft.selected_sources == ["Newsletter"]

        act(engine, session, "continue")
        assert session.step == Step.MEDIUMS
        assert session.awaiting_input == "custom-medium"

        say(engine, session, "email")
        assert session.aggregator.mediums_for("Newsletter") == ["email"]
        assert "continue" in actions(session)

    def test_selected_options_are_marked(self, engine, session):
        act(engine, session, "start-new")
        say(engine, session, "Spring")
        act(engine, session, "select-landing-page", "https://shop.example.com/")
        act(engine, session, "continue")
        act(engine, session, "toggle-source", "google")
        google = [o for o in session.transcript.last_bot_message().options if o.payload == "google"]
        assert len(google) == 1
        assert google[0].selected and google[0].disabled


    def test_source_payload_with_no_usable_characters_is_rejected(self, engine, session):
        act(engine, session, "start-new")
        say(engine, session, "Spring")
        act(engine, session, "select-landing-page", "https://shop.example.com/")
        act(engine, session, "continue")
        messages = act(engine, session, "toggle-source", "!!!")
        assert messages[1].is_error
        assert session.step == Step.SOURCES
        assert session.draft.selected_sources == []

    def test_medium_payload_with_separator_is_rejected(self, engine, session):
        act(engine, session, "start-new")
        say(engine, session, "Spring")
        act(engine, session, "select-landing-page", "https://shop.example.com/")
        act(engine, session, "continue")
        act(engine, session, "toggle-source", "facebook")
        act(engine, session, "continue")
        messages = act(engine, session, "toggle-medium", "a|b")
        assert messages[1].is_error
        assert "letters, numbers" in messages[1].text
        assert session.aggregator.mediums_for("facebook") == []
        assert "toggle-medium" in actions(session)

    def test_custom_source_of_only_separators_is_rejected(self, engine, session):
        act(engine, session, "start-new")
        say(engine, session, "Spring")
        act(engine, session, "select-landing-page", "https://shop.example.com/")
        act(engine, session, "continue")
        act(engine, session, "custom-source")
        messages = say(engine, session, "---")
        assert messages[-1].is_error
        assert "at least one letter or number" in messages[-1].text
        assert session.awaiting_input == "custom-source"
        assert session.draft.selected_sources == []

    def test_terms_apply_to_every_pair(self, engine, session):
        act(engine, session, "start-new")
        say(engine, session, "Spring")
        act(engine, session, "select-landing-page", "https://shop.example.com/")
        act(engine, session, "continue")
        act(engine, session, "toggle-source", "facebook")
        act(engine, session, "toggle-source", "google")
        act(engine, session, "continue")
        act(engine, session, "toggle-medium", "social")
        act(engine, session, "continue")
        act(engine, session, "toggle-medium", "cpc")
        act(engine, session, "continue")
        assert session.step == Step.CONTENT
        act(engine, session, "continue")
        act(engine, session, "continue")
        assert session.step == Step.TERMS

        act(engine, session, "toggle-term", "summer-sale")
        assert session.aggregator.terms_for("facebook", "social") == ["summer-sale"]
        assert session.aggregator.terms_for("google", "cpc") == ["summer-sale"]

    def test_single_term_mode(self, gateway, suggestions):
        engine = CampaignConversation(make_settings(term_selection_mode="single"), gateway, suggestions)
        session = engine.new_session()
        engine.start(session)
        act(engine, session, "start-new")
        say(engine, session, "Spring")
        act(engine, session, "select-landing-page", "https://shop.example.com/")
        act(engine, session, "continue")
        act(engine, session, "toggle-source", "facebook")
        act(engine, session, "continue")
        act(engine, session, "toggle-medium", "social")
        act(engine, session, "continue")
        act(engine, session, "continue")
        act(engine, session, "toggle-term", "summer-sale")
        act(engine, session, "toggle-term", "test-a")
        assert session.aggregator.all_terms() == ["test-a"]


class TestExistingCampaignFlow:
    def test_select_recent_campaign(self, engine, session):
        act(engine, session, "start-existing")
        assert session.step == Step.EXISTING_CAMPAIGN
        assert labels(session) == ["Spring Launch", "Black Friday", "Back"]

        act(engine, session, "select-campaign", "Spring Launch")
        assert session.step == Step.LANDING_PAGES
        assert session.draft.is_existing_campaign

    def test_skip_tags_label(self, engine, session):
        act(engine, session, "start-existing")
        act(engine, session, "select-campaign", "Spring Launch")
        act(engine, session, "select-landing-page", "https://shop.example.com/")
        act(engine, session, "continue")
        act(engine, session, "toggle-source", "facebook")
        act(engine, session, "continue")
        act(engine, session, "toggle-medium", "social")
        act(engine, session, "continue")
        act(engine, session, "continue")
        act(engine, session, "skip")
        assert session.step == Step.TAGS
        assert "Skip Tags & Add Links" in labels(session)

    def test_no_recent_campaigns(self, engine, session, gateway):
        gateway.recent_names = []
        messages = act(engine, session, "start-existing")
        assert "don't have any existing campaigns" in messages[-1].text
        assert actions(session) == ["start-new"]

    def test_loading_failure_offers_retry(self, engine, session, gateway):
        gateway.failing.add("recent_campaign_names")
        messages = act(engine, session, "start-existing")
        assert messages[-1].is_error
        assert "loading recent campaigns" in messages[-1].text
        assert actions(session) == ["retry"]

        gateway.failing.clear()
        act(engine, session, "retry")
        assert session.step == Step.EXISTING_CAMPAIGN


class TestTags:
    def test_case_variant_of_known_tag(self, engine, session, gateway):
        to_review(engine, session)
        act(engine, session, "back")
        assert session.step == Step.TAGS
        act(engine, session, "custom-tag")
        say(engine, session, "Summer")
        assert session.draft.selected_tags == ["summer"]
        assert gateway.created_tags == []
        assert "continue" in actions(session)

    def test_new_tag_is_created(self, engine, session, gateway):
        to_review(engine, session)
        act(engine, session, "back")
        act(engine, session, "custom-tag")
        say(engine, session, "Q3 Push")
        assert gateway.created_tags == ["Q3 Push"]
        assert session.draft.selected_tags == ["Q3 Push"]


class TestFailures:
    def test_three_commit_failures_route_to_fallback(self, engine, session, gateway):
        to_review(engine, session)
        gateway.failing.add("create_landing_page")

        act(engine, session, "commit")
        assert actions(session) == ["retry"]
        act(engine, session, "retry")
        assert actions(session) == ["retry"]
        messages = act(engine, session, "retry")

        assert messages[-1].is_error
        assert actions(session) == ["manual", "restart"]
        assert session.transcript.last_bot_message().options[0].url == "/new-campaign"

        act(engine, session, "retry")
        assert "retry" not in actions(session)
        assert gateway.landing_pages == []

    def test_retry_after_recovery_completes(self, engine, session, gateway):
        to_review(engine, session)
        gateway.fail_link_after = 1
        act(engine, session, "commit")
        assert session.step == Step.REVIEW

        gateway.fail_link_after = None
        act(engine, session, "retry")
        assert session.step == Step.COMPLETE
        assert session.retry.consecutive_errors == 0


    def test_failed_commit_returns_to_review(self, engine, session, gateway):
        to_review(engine, session)
        gateway.failing.add("create_landing_page")
        act(engine, session, "commit")
        assert session.step == Step.REVIEW
        assert not session.commit_in_flight

        act(engine, session, "back")
        assert session.step == Step.TAGS
        act(engine, session, "skip")
        assert session.step == Step.REVIEW

        gateway.failing.clear()
        act(engine, session, "commit")
        assert session.step == Step.COMPLETE
        assert {page["campaignName"] for page in gateway.landing_pages} == {"summer-sale-2025"}
        assert {link["campaign"] for link in gateway.tracking_links} == {"summer-sale-2025"}

    def test_free_text_without_input_mode(self, engine, session):
        messages = say(engine, session, "hello there")
        assert [m.actor for m in messages] == ["user", "bot", "bot"]
        assert messages[1].is_error
        assert session.step == Step.CAMPAIGN_TYPE

    def test_unknown_action_is_corrected(self, engine, session):
        messages = act(engine, session, "toggle-medium", "social")
        assert messages[0].is_error
        assert session.step == Step.CAMPAIGN_TYPE
        assert actions(session) == ["start-existing", "start-new"]


class TestNavigation:
    def test_back_walks_previous_steps(self, engine, session):
        act(engine, session, "start-new")
        say(engine, session, "Spring")
        act(engine, session, "select-landing-page", "https://shop.example.com/")
        act(engine, session, "continue")
        act(engine, session, "toggle-source", "facebook")
        act(engine, session, "toggle-source", "google")
        act(engine, session, "continue")
        act(engine, session, "toggle-medium", "social")
        act(engine, session, "continue")
        assert session.source_index == 1

        act(engine, session, "back")
        assert session.step == Step.MEDIUMS
        assert session.source_index == 0
        act(engine, session, "back")
        assert session.step == Step.SOURCES
        act(engine, session, "back")
        assert session.step == Step.LANDING_PAGES
        assert session.draft.selected_sources == ["facebook", "google"]

    def test_restart_clears_everything(self, engine, session):
        to_review(engine, session)
        messages = act(engine, session, "restart")
        assert session.step == Step.CAMPAIGN_TYPE
        assert session.draft.name == ""
        assert len(session.transcript) == 1
        assert len(messages) == 1
