"""Conversation state machine for building campaign tracking links.

Role:
    Owns the ordered steps of the wizard, dispatches user actions and free text to
    the Selection Aggregator, renders each step from current draft state, and routes
    counted network failures through the Error & Retry Controller.

Step order:
    welcome -> campaign-type -> {campaign-name | existing-campaign} -> landing-pages
    -> sources -> mediums (one source at a time) -> content (one pair at a time)
    -> terms -> tags -> review -> commit -> complete

Turn contract:
    Every handler returns a list of PendingTurn. CampaignConversation.handle queues
    them on the session's TurnScheduler and flushes once, so the emitted order is
    exactly the handler order. Step prompts come from _render_* functions that read
    only the session (draft, cursors, cached catalogue) and the suggestion provider;
    re-rendering after a change appends a fresh prompt instead of editing history.

Session contract:
    - one ConversationSession per conversation, injected into every call;
    - turns for a session are serialized by its lock;
    - commit_in_flight makes a second commit a silent no-op.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

from .commit import CampaignCommitter, CommitValidationError
from .config import Settings
from .draft import SelectionAggregator, SelectionError
from .gateway import GatewayError, PersistenceGateway
from .link_engine import GeneratedLink, LinkGenerationError, format_links_for_copy
from .models import Option, TranscriptMessage
from .retry_controller import ACTION_MANUAL, ACTION_RESTART, ACTION_RETRY, ErrorRetryController
from .sanitization import (
    is_duplicate_campaign,
    sanitize_campaign_name,
    sanitize_parameter,
    sanitize_text_input,
    validate_field,
    validate_url,
)
from .suggestions import SourceTemplate, SuggestionProvider
from .transcript import PendingTurn, Transcript, TurnScheduler, bot_turn, user_turn

logger = logging.getLogger("linkwizard.conversation")


class Step(str, Enum):
    WELCOME = "welcome"
    CAMPAIGN_TYPE = "campaign-type"
    CAMPAIGN_NAME = "campaign-name"
    EXISTING_CAMPAIGN = "existing-campaign"
    LANDING_PAGES = "landing-pages"
    SOURCES = "sources"
    MEDIUMS = "mediums"
    CONTENT = "content"
    TERMS = "terms"
    TAGS = "tags"
    REVIEW = "review"
    COMMIT = "commit"
    COMPLETE = "complete"


# Free-text input modes
INPUT_CAMPAIGN_NAME = "campaign-name"
INPUT_URL = "custom-url"
INPUT_SOURCE = "custom-source"
INPUT_MEDIUM = "custom-medium"
INPUT_CONTENT = "custom-content"
INPUT_TERM = "custom-term"
INPUT_TAG = "custom-tag"

# Option actions
ACTION_START_EXISTING = "start-existing"
ACTION_START_NEW = "start-new"
ACTION_SELECT_CAMPAIGN = "select-campaign"
ACTION_SELECT_LANDING_PAGE = "select-landing-page"
ACTION_TOGGLE_SOURCE = "toggle-source"
ACTION_TOGGLE_MEDIUM = "toggle-medium"
ACTION_TOGGLE_CONTENT = "toggle-content"
ACTION_TOGGLE_TERM = "toggle-term"
ACTION_SELECT_TAG = "select-tag"
ACTION_CONTINUE = "continue"
ACTION_SKIP = "skip"
ACTION_BACK = "back"
ACTION_COMMIT = "commit"
ACTION_VIEW_CAMPAIGN = "view-campaign"
ACTION_COPY_LINKS = "copy-links"

CUSTOM_ACTIONS = {
    INPUT_URL: Step.LANDING_PAGES,
    INPUT_SOURCE: Step.SOURCES,
    INPUT_MEDIUM: Step.MEDIUMS,
    INPUT_CONTENT: Step.CONTENT,
    INPUT_TERM: Step.TERMS,
    INPUT_TAG: Step.TAGS,
}

ACTION_ECHO = {
    ACTION_START_EXISTING: "Existing Campaign",
    ACTION_START_NEW: "New Campaign",
    ACTION_CONTINUE: "Continue",
    ACTION_SKIP: "Skip",
    ACTION_BACK: "Back",
    ACTION_COMMIT: "Create Campaign",
    ACTION_VIEW_CAMPAIGN: "View Campaign",
    ACTION_COPY_LINKS: "Copy Campaign Links",
    ACTION_RETRY: "Retry",
    ACTION_MANUAL: "Manual Campaign Creation",
    INPUT_URL: "Add Custom URL",
    INPUT_SOURCE: "Add Custom Source",
    INPUT_MEDIUM: "Add Custom Medium",
    INPUT_CONTENT: "Add Custom Content",
    INPUT_TERM: "Add Custom Term",
    INPUT_TAG: "Add Custom Tag",
}

PICK_AN_OPTION = "Please pick one of the options above, or choose an \"Add Custom\" option to type your own value."
UNAVAILABLE_OPTION = "That option isn't available right now. Please pick one of the options below."
MAX_TAG_LENGTH = 100


def _label(value: str) -> str:
    return value[:1].upper() + value[1:]


def _with_notice(notice: str, turn: PendingTurn) -> PendingTurn:
    turn.text = f"{notice}\n\n{turn.text}" if notice else turn.text
    return turn


def _field_error(kind: str, value: str) -> Optional[str]:
    # A value must pass its field rules and still be non-empty once sanitized.
    check = validate_field(kind, value)
    if not check.is_valid:
        return check.error
    if not sanitize_parameter(value):
        return f"{_label(kind)} must contain at least one letter or number"
    return None


@dataclass
class ConversationSession:
    """Per-conversation state: draft, transcript, cursors, and failure bookkeeping."""
    session_id: str
    aggregator: SelectionAggregator
    transcript: Transcript
    retry: ErrorRetryController
    user_id: Optional[int] = None
    account_id: Optional[int] = None
    step: Step = Step.WELCOME
    awaiting_input: Optional[str] = None
    source_index: int = 0
    pair_index: int = 0
    commit_in_flight: bool = False
    retry_action: Optional[Callable[[], List[PendingTurn]]] = None
    source_templates: Optional[List[SourceTemplate]] = None
    recent_campaigns: List[str] = field(default_factory=list)
    generated_links: List[GeneratedLink] = field(default_factory=list)
    completed_campaign: Optional[str] = None
    completed_campaign_key: Optional[str] = None
    completed_existing: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self) -> None:
        self.scheduler = TurnScheduler(self.transcript)

    @property
    def draft(self):
        return self.aggregator.draft

    @property
    def title(self) -> str:
        return self.completed_campaign or self.draft.name or "New Campaign"


class CampaignConversation:
    def __init__(
        self,
        settings: Settings,
        gateway: PersistenceGateway,
        suggestions: SuggestionProvider,
        committer: Optional[CampaignCommitter] = None,
    ) -> None:
        """Purpose: Wire the conversation engine to its collaborators.
        Inputs/Outputs: Inputs are Settings, the persistence gateway, the suggestion
            provider, and an optional committer; no return value.
        Side Effects / State: Builds a CampaignCommitter when none is given.
        Dependencies: Settings for retry threshold, fallback URLs, and term mode.
        Failure Modes: None at init.
        If Removed: The API has no engine to drive sessions.
        Testing Notes: Construct with fake gateway/provider objects from conftest.
        """
        # Keep collaborators and build the dispatch tables.
        self._settings = settings
        self._gateway = gateway
        self._suggestions = suggestions
        self._committer = committer or CampaignCommitter(gateway)
        self._single_term = settings.term_selection_mode == "single"
        self._handlers: Dict[Tuple[Step, str], Callable[[ConversationSession, Optional[str]], List[PendingTurn]]] = {
            (Step.CAMPAIGN_TYPE, ACTION_START_EXISTING): self._on_start_existing,
            (Step.CAMPAIGN_TYPE, ACTION_START_NEW): self._on_start_new,
            (Step.EXISTING_CAMPAIGN, ACTION_START_NEW): self._on_start_new,
            (Step.EXISTING_CAMPAIGN, ACTION_SELECT_CAMPAIGN): self._on_select_campaign,
            (Step.CAMPAIGN_NAME, ACTION_START_EXISTING): self._on_start_existing,
            (Step.LANDING_PAGES, ACTION_SELECT_LANDING_PAGE): self._on_select_landing_page,
            (Step.LANDING_PAGES, ACTION_CONTINUE): self._on_landing_pages_continue,
            (Step.SOURCES, ACTION_TOGGLE_SOURCE): self._on_toggle_source,
            (Step.SOURCES, ACTION_CONTINUE): self._on_sources_continue,
            (Step.MEDIUMS, ACTION_TOGGLE_MEDIUM): self._on_toggle_medium,
            (Step.MEDIUMS, ACTION_CONTINUE): self._on_mediums_continue,
            (Step.CONTENT, ACTION_TOGGLE_CONTENT): self._on_toggle_content,
            (Step.CONTENT, ACTION_CONTINUE): self._on_content_continue,
            (Step.CONTENT, ACTION_SKIP): self._on_content_continue,
            (Step.TERMS, ACTION_TOGGLE_TERM): self._on_toggle_term,
            (Step.TERMS, ACTION_CONTINUE): self._on_terms_continue,
            (Step.TERMS, ACTION_SKIP): self._on_terms_continue,
            (Step.TAGS, ACTION_SELECT_TAG): self._on_select_tag,
            (Step.TAGS, ACTION_CONTINUE): self._on_tags_continue,
            (Step.TAGS, ACTION_SKIP): self._on_tags_continue,
            (Step.REVIEW, ACTION_COMMIT): self._on_commit,
            (Step.COMPLETE, ACTION_VIEW_CAMPAIGN): self._on_view_campaign,
            (Step.COMPLETE, ACTION_COPY_LINKS): self._on_copy_links,
        }
        self._text_handlers: Dict[str, Callable[[ConversationSession, str], List[PendingTurn]]] = {
            INPUT_CAMPAIGN_NAME: self._on_campaign_name_text,
            INPUT_URL: self._on_custom_url_text,
            INPUT_SOURCE: self._on_custom_source_text,
            INPUT_MEDIUM: self._on_custom_medium_text,
            INPUT_CONTENT: self._on_custom_content_text,
            INPUT_TERM: self._on_custom_term_text,
            INPUT_TAG: self._on_custom_tag_text,
        }

    # Session lifecycle

    def new_session(
        self, user_id: Optional[int] = None, account_id: Optional[int] = None, session_id: Optional[str] = None
    ) -> ConversationSession:
        session_id = session_id or uuid.uuid4().hex
        return ConversationSession(
            session_id=session_id,
            aggregator=SelectionAggregator(tag_gateway=self._gateway, user_id=user_id, account_id=account_id),
            transcript=Transcript(),
            retry=ErrorRetryController(
                max_errors=self._settings.max_consecutive_errors,
                manual_flow_url=self._settings.manual_flow_url,
            ),
            user_id=user_id,
            account_id=account_id,
        )

    def start(self, session: ConversationSession) -> List[TranscriptMessage]:
        """Purpose: Open the conversation with a health probe and the greeting.
        Inputs/Outputs: Input is a fresh session; output is the emitted messages.
        Side Effects / State: Moves the session to campaign-type when healthy.
        Dependencies: PersistenceGateway.check_health and the retry controller.
        Failure Modes: An unhealthy collaborator yields an error turn with retry or
            manual creation instead of the greeting.
        If Removed: Sessions never receive their first prompt.
        Testing Notes: Fake an unhealthy gateway and expect is_error with a retry option.
        """
        # Serialize with any in-progress turn.
        with session.lock:
            return self._emit(session, self._welcome(session))

    def restart(self, session: ConversationSession) -> List[TranscriptMessage]:
        with session.lock:
            return self._emit(session, self._restart(session))

    def handle(
        self,
        session: ConversationSession,
        action: Optional[str] = None,
        payload: Optional[str] = None,
        text: Optional[str] = None,
    ) -> List[TranscriptMessage]:
        """Purpose: Apply one user turn (option action or free text) to the session.
        Inputs/Outputs: Inputs are the session and either action/payload or text;
            output is the list of transcript messages emitted by this turn.
        Side Effects / State: Mutates the draft, step, cursors, and transcript.
        Dependencies: Dispatch tables built in __init__; TurnScheduler for ordering.
        Failure Modes: SelectionError becomes a corrective turn; network failures go
            through the retry controller; a commit while one is in flight returns [].
        If Removed: The API cannot advance conversations.
        Testing Notes: Drive a full happy path and assert the final step is complete.
        """
        # Fast path: drop a duplicate commit without waiting on the lock.
        if action == ACTION_COMMIT and session.commit_in_flight:
            logger.info("session=%s commit=ignored reason=in_flight", session.session_id)
            return []
        with session.lock:
            if action == ACTION_COMMIT and (session.commit_in_flight or session.step != Step.REVIEW):
                logger.info("session=%s commit=ignored step=%s", session.session_id, session.step.value)
                return []
            logger.info(
                "session=%s step=%s action=%s awaiting=%s",
                session.session_id,
                session.step.value,
                action or "text",
                session.awaiting_input,
            )
            try:
                if action:
                    turns = self._dispatch_action(session, action, payload)
                else:
                    turns = self._dispatch_text(session, text or "")
            except SelectionError as exc:
                logger.info("session=%s selection_error=%s", session.session_id, exc)
                turns = [bot_turn(str(exc), step=session.step.value, is_error=True)]
                turns.append(self._render(session))
            logger.debug("session=%s draft=%s", session.session_id, session.aggregator.summary())
            return self._emit(session, turns)

    def _emit(self, session: ConversationSession, turns: List[PendingTurn]) -> List[TranscriptMessage]:
        for turn in turns:
            if turn.actor == "bot" and turn.expects is not None:
                session.awaiting_input = turn.expects
        session.scheduler.enqueue(turns)
        return session.scheduler.flush()

    # Dispatch

    def _dispatch_action(self, session: ConversationSession, action: str, payload: Optional[str]) -> List[PendingTurn]:
        echo = [user_turn(payload or ACTION_ECHO.get(action, action), step=session.step.value)]
        if action == ACTION_RESTART:
            return self._restart(session)
        if action == ACTION_MANUAL:
            return echo + [self._manual_turn(session)]
        if action == ACTION_RETRY:
            return echo + self._on_retry(session)
        if action == ACTION_BACK:
            session.awaiting_input = None
            return echo + self._go_back(session)
        if action in CUSTOM_ACTIONS and CUSTOM_ACTIONS[action] == session.step:
            return echo + [self._prompt_custom(session, action)]
        handler = self._handlers.get((session.step, action))
        if handler is None:
            logger.info("session=%s step=%s unknown_action=%s", session.session_id, session.step.value, action)
            return [bot_turn(UNAVAILABLE_OPTION, step=session.step.value, is_error=True), self._render(session)]
        session.awaiting_input = None
        return echo + handler(session, payload)

    def _dispatch_text(self, session: ConversationSession, text: str) -> List[PendingTurn]:
        limit = MAX_TAG_LENGTH if session.awaiting_input == INPUT_TAG else 500
        cleaned = sanitize_text_input(text, max_length=limit)
        if not cleaned:
            return [bot_turn("I didn't catch that. " + PICK_AN_OPTION, step=session.step.value, is_error=True)]
        handler = self._text_handlers.get(session.awaiting_input or "")
        if handler is None:
            return [
                user_turn(cleaned, step=session.step.value),
                bot_turn(PICK_AN_OPTION, step=session.step.value, is_error=True),
                self._render(session),
            ]
        return handler(session, cleaned)

    def _call(
        self,
        session: ConversationSession,
        operation: Callable[[], List[PendingTurn]],
    ) -> List[PendingTurn]:
        """Run a counted network operation; failures become retry or fallback turns."""
        try:
            turns = operation()
        except GatewayError as exc:
            session.retry_action = operation
            decision = session.retry.record_failure(exc.operation, step=session.step.value)
            return [decision.turn]
        session.retry.record_success()
        session.retry_action = None
        return turns

    def _on_retry(self, session: ConversationSession) -> List[PendingTurn]:
        if session.retry.in_fallback:
            # Consistently failing: offer the fallback again, never a bare retry.
            return [
                bot_turn(
                    "Retrying isn't available anymore because our services keep failing. You can:",
                    step=session.step.value,
                    options=[
                        Option(
                            label="Try Manual Campaign Creation",
                            action=ACTION_MANUAL,
                            url=self._settings.manual_flow_url,
                            primary=True,
                        ),
                        Option(label="Start Over", action=ACTION_RESTART),
                    ],
                    is_error=True,
                )
            ]
        if session.retry_action is None:
            return [bot_turn(UNAVAILABLE_OPTION, step=session.step.value, is_error=True), self._render(session)]
        return self._call(session, session.retry_action)

    def _manual_turn(self, session: ConversationSession) -> PendingTurn:
        url = self._settings.manual_flow_url
        return bot_turn(
            "Taking you to manual campaign creation...",
            step=session.step.value,
            options=[Option(label="Open Manual Campaign Creation", action=ACTION_MANUAL, url=url, primary=True)],
        )

    # Welcome and campaign identity

    def _welcome(self, session: ConversationSession) -> List[PendingTurn]:
        def probe() -> List[PendingTurn]:
            if not self._gateway.check_health():
                raise GatewayError("Connecting to the campaign service", "health check failed")
            session.step = Step.CAMPAIGN_TYPE
            return [self._render(session)]

        session.step = Step.WELCOME
        return self._call(session, probe)

    def _restart(self, session: ConversationSession) -> List[PendingTurn]:
        logger.info("session=%s restart", session.session_id)
        session.scheduler.discard()
        session.transcript.clear()
        session.aggregator = SelectionAggregator(
            tag_gateway=self._gateway, user_id=session.user_id, account_id=session.account_id
        )
        session.retry.reset()
        session.retry_action = None
        session.awaiting_input = None
        session.source_index = 0
        session.pair_index = 0
        session.commit_in_flight = False
        session.source_templates = None
        session.recent_campaigns = []
        session.generated_links = []
        session.completed_campaign = None
        session.completed_campaign_key = None
        session.completed_existing = False
        return self._welcome(session)

    def _on_start_existing(self, session: ConversationSession, _payload: Optional[str]) -> List[PendingTurn]:
        def load() -> List[PendingTurn]:
            names = self._gateway.recent_campaign_names()
            if not names:
                session.step = Step.CAMPAIGN_TYPE
                return [
                    bot_turn(
                        "You don't have any existing campaigns yet. Let's create your first one!",
                        step=Step.CAMPAIGN_TYPE.value,
                        options=[Option(label="Create New Campaign", action=ACTION_START_NEW, primary=True)],
                    )
                ]
            session.recent_campaigns = names
            session.step = Step.EXISTING_CAMPAIGN
            return [self._render_existing_campaigns(names)]

        return self._call(session, load)

    def _on_start_new(self, session: ConversationSession, _payload: Optional[str]) -> List[PendingTurn]:
        session.step = Step.CAMPAIGN_NAME
        return [self._render(session)]

    def _on_select_campaign(self, session: ConversationSession, payload: Optional[str]) -> List[PendingTurn]:
        if not payload:
            return [bot_turn(UNAVAILABLE_OPTION, step=session.step.value, is_error=True)]
        session.aggregator.set_existing_campaign(payload)
        return self._enter(session, Step.LANDING_PAGES)

    def _on_campaign_name_text(self, session: ConversationSession, text: str) -> List[PendingTurn]:
        name = sanitize_campaign_name(text)
        turns = [user_turn(name or text, step=session.step.value)]
        error = _field_error("campaign", name)
        if error:
            return turns + [self._input_error(session, f"{error}. What would you like to name it?")]
        try:
            existing = self._gateway.recent_campaign_names()
        except GatewayError as exc:
            logger.warning("session=%s duplicate_check=skipped error=%s", session.session_id, exc)
            existing = []
        if is_duplicate_campaign(name, existing):
            return turns + [
                bot_turn(
                    "A campaign with this name already exists. Please choose a different name.",
                    step=session.step.value,
                    options=[Option(label="Add Links to Existing Campaign", action=ACTION_START_EXISTING)],
                    is_error=True,
                    input_placeholder="Enter campaign name (e.g., 'Summer Sale 2025')",
                    expects=INPUT_CAMPAIGN_NAME,
                )
            ]
        session.aggregator.set_new_campaign(name)
        session.awaiting_input = None
        notice = "Special characters were removed from the campaign name." if name != text.strip() else ""
        return turns + self._enter(session, Step.LANDING_PAGES, notice=notice)

    # Landing pages

    def _on_select_landing_page(self, session: ConversationSession, payload: Optional[str]) -> List[PendingTurn]:
        return self._add_landing_page(session, payload or "")

    def _on_custom_url_text(self, session: ConversationSession, text: str) -> List[PendingTurn]:
        return [user_turn(text, step=session.step.value)] + self._add_landing_page(session, text)

    def _add_landing_page(self, session: ConversationSession, raw_url: str) -> List[PendingTurn]:
        result = validate_url(raw_url)
        if not result.is_valid:
            return [
                self._input_error(
                    session,
                    f"{result.error}. Please enter a valid URL starting with https://",
                    expects=INPUT_URL,
                    placeholder="Enter a valid URL (e.g., 'https://example.com')",
                )
            ]
        session.awaiting_input = None
        if not session.aggregator.add_landing_page(result.clean_url):
            notice = "That URL is already selected. Please choose a different one or continue to sources."
        else:
            notice = f"Added \"{result.clean_url}\" to your landing pages!"
        return [_with_notice(notice, self._render(session))]

    def _on_landing_pages_continue(self, session: ConversationSession, _payload: Optional[str]) -> List[PendingTurn]:
        if not session.draft.landing_pages:
            return [_with_notice("Please add at least one landing page before continuing.", self._render(session))]
        return self._enter(session, Step.SOURCES)

    # Sources and mediums

    def _templates(self, session: ConversationSession) -> List[SourceTemplate]:
        if not session.source_templates:
            session.source_templates = self._suggestions.fetch_source_templates()
        return session.source_templates

    def _on_toggle_source(self, session: ConversationSession, payload: Optional[str]) -> List[PendingTurn]:
        if not payload:
            return [bot_turn(UNAVAILABLE_OPTION, step=session.step.value, is_error=True), self._render(session)]
        error = _field_error("source", payload)
        if error:
            notice = bot_turn(f"{error}. {UNAVAILABLE_OPTION}", step=session.step.value, is_error=True)
            return [notice, self._render(session)]
        selected = session.aggregator.toggle_source(payload)
        notice = "" if selected else f"Removed {payload} and its mediums, content, and terms."
        return [_with_notice(notice, self._render(session))]

    def _on_custom_source_text(self, session: ConversationSession, text: str) -> List[PendingTurn]:
        turns = [user_turn(text, step=session.step.value)]
        error = _field_error("source", text)
        if error:
            return turns + [self._input_error(session, f"{error}. What's the name of your custom traffic source?")]
        session.awaiting_input = None
        if text in session.draft.selected_sources:
            return turns + [_with_notice(f"{text} is already selected.", self._render(session))]
        session.aggregator.toggle_source(text)
        return turns + [self._render(session)]

    def _on_sources_continue(self, session: ConversationSession, _payload: Optional[str]) -> List[PendingTurn]:
        sources = session.draft.selected_sources
        if not sources:
            return [_with_notice("No sources selected. Please select at least one source.", self._render(session))]
        session.source_index = 0
        return [user_turn(f"Selected sources: {', '.join(sources)}", step=Step.SOURCES.value)] + self._enter(
            session, Step.MEDIUMS
        )

    def _current_source(self, session: ConversationSession) -> str:
        sources = session.draft.selected_sources
        session.source_index = min(session.source_index, max(len(sources) - 1, 0))
        if not sources:
            raise SelectionError("No sources selected. Please go back and select at least one source.")
        return sources[session.source_index]

    def _on_toggle_medium(self, session: ConversationSession, payload: Optional[str]) -> List[PendingTurn]:
        if not payload:
            return [bot_turn(UNAVAILABLE_OPTION, step=session.step.value, is_error=True), self._render(session)]
        error = _field_error("medium", payload)
        if error:
            notice = bot_turn(f"{error}. {UNAVAILABLE_OPTION}", step=session.step.value, is_error=True)
            return [notice, self._render(session)]
        source = self._current_source(session)
        session.aggregator.toggle_medium(source, payload)
        return [self._render(session)]

    def _on_custom_medium_text(self, session: ConversationSession, text: str) -> List[PendingTurn]:
        source = self._current_source(session)
        turns = [user_turn(text, step=session.step.value)]
        error = _field_error("medium", text)
        if error:
            return turns + [self._input_error(session, f"{error}. What type of medium will you use for {source}?")]
        session.awaiting_input = None
        if text not in session.aggregator.mediums_for(source):
            session.aggregator.toggle_medium(source, text)
        return turns + [self._render(session, allow_prompt=False)]

    def _on_mediums_continue(self, session: ConversationSession, _payload: Optional[str]) -> List[PendingTurn]:
        source = self._current_source(session)
        mediums = session.aggregator.mediums_for(source)
        if not mediums:
            return [_with_notice("No mediums selected. Please select at least one medium.", self._render(session))]
        turns = [user_turn(f"Selected mediums for {source}: {', '.join(mediums)}", step=Step.MEDIUMS.value)]
        if session.source_index + 1 < len(session.draft.selected_sources):
            session.source_index += 1
            return turns + self._enter(session, Step.MEDIUMS)
        session.aggregator.prune_orphans()
        session.pair_index = 0
        return turns + self._enter(session, Step.CONTENT)

    # Content

    def _current_pair(self, session: ConversationSession) -> Tuple[str, str]:
        pairs = session.aggregator.selected_pairs()
        if not pairs:
            raise SelectionError("No source-medium combinations found. Please go back and select sources and mediums.")
        session.pair_index = min(session.pair_index, len(pairs) - 1)
        return pairs[session.pair_index]

    def _on_toggle_content(self, session: ConversationSession, payload: Optional[str]) -> List[PendingTurn]:
        source, medium = self._current_pair(session)
        value = sanitize_parameter(payload or "")
        if not value:
            return [bot_turn(UNAVAILABLE_OPTION, step=session.step.value, is_error=True), self._render(session)]
        session.aggregator.toggle_content(source, medium, value)
        return [self._render(session)]

    def _on_custom_content_text(self, session: ConversationSession, text: str) -> List[PendingTurn]:
        source, medium = self._current_pair(session)
        value = sanitize_parameter(text)
        turns = [user_turn(value or text, step=session.step.value)]
        check = validate_field("content", value)
        if not value or not check.is_valid:
            message = check.error if value else (
                "Please enter a valid content variation using only letters, numbers, hyphens, and underscores"
            )
            return turns + [self._input_error(session, f"{message}:")]
        session.awaiting_input = None
        if value in session.aggregator.content_for(source, medium):
            notice = f"\"{value}\" is already selected for {source} -> {medium}."
        else:
            session.aggregator.toggle_content(source, medium, value)
            notice = f"Added custom content \"{value}\" for {source} -> {medium}!"
        return turns + [_with_notice(notice, self._render(session))]

    def _on_content_continue(self, session: ConversationSession, _payload: Optional[str]) -> List[PendingTurn]:
        source, medium = self._current_pair(session)
        turns: List[PendingTurn] = []
        chosen = session.aggregator.content_for(source, medium)
        if chosen:
            turns.append(user_turn(f"Selected content for {source} -> {medium}: {', '.join(chosen)}", step=Step.CONTENT.value))
        if session.pair_index + 1 < len(session.aggregator.selected_pairs()):
            session.pair_index += 1
            return turns + self._enter(session, Step.CONTENT)
        return turns + self._enter(session, Step.TERMS)

    # Terms

    def _on_toggle_term(self, session: ConversationSession, payload: Optional[str]) -> List[PendingTurn]:
        value = sanitize_parameter(payload or "")
        if not value:
            return [bot_turn(UNAVAILABLE_OPTION, step=session.step.value, is_error=True), self._render(session)]
        session.aggregator.toggle_term_everywhere(value, single=self._single_term)
        return [self._render(session)]

    def _on_custom_term_text(self, session: ConversationSession, text: str) -> List[PendingTurn]:
        value = sanitize_parameter(text)
        turns = [user_turn(value or text, step=session.step.value)]
        check = validate_field("term", value)
        if not value or not check.is_valid:
            message = check.error if value else "Please enter a valid term using only letters, numbers, hyphens, and underscores"
            return turns + [self._input_error(session, f"{message}:")]
        session.awaiting_input = None
        if value in session.aggregator.all_terms() and not self._single_term:
            return turns + [_with_notice(f"\"{value}\" is already selected.", self._render(session))]
        session.aggregator.toggle_term_everywhere(value, single=self._single_term)
        return turns + [_with_notice(f"Added term \"{value}\" to every source and medium.", self._render(session))]

    def _on_terms_continue(self, session: ConversationSession, _payload: Optional[str]) -> List[PendingTurn]:
        terms = session.aggregator.all_terms()
        turns = [user_turn(f"Selected terms: {', '.join(terms)}", step=Step.TERMS.value)] if terms else []
        return turns + self._enter(session, Step.TAGS)

    # Tags

    def _on_select_tag(self, session: ConversationSession, payload: Optional[str]) -> List[PendingTurn]:
        if not payload:
            return [bot_turn(UNAVAILABLE_OPTION, step=session.step.value, is_error=True), self._render(session)]
        if not session.aggregator.select_existing_tag(payload):
            return [_with_notice(f"Tag \"{payload}\" is already added.", self._render(session))]
        return [_with_notice(f"Tag \"{payload}\" added! Ready to review your campaign?", self._render(session))]

    def _on_custom_tag_text(self, session: ConversationSession, text: str) -> List[PendingTurn]:
        turns = [user_turn(text, step=session.step.value)]

        def create() -> List[PendingTurn]:
            canonical = session.aggregator.add_tag(text)
            session.awaiting_input = None
            return [_with_notice(f"Custom tag \"{canonical}\" added! Ready to review your campaign?", self._render(session))]

        return turns + self._call(session, create)

    def _on_tags_continue(self, session: ConversationSession, _payload: Optional[str]) -> List[PendingTurn]:
        return self._enter(session, Step.REVIEW)

    # Review, commit, completion

    def _on_commit(self, session: ConversationSession, _payload: Optional[str]) -> List[PendingTurn]:
        creating = "Adding links to your campaign..." if session.draft.is_existing_campaign else "Creating your campaign..."
        return [bot_turn(creating, step=Step.COMMIT.value)] + self._call(session, lambda: self._commit(session))

    def _commit(self, session: ConversationSession) -> List[PendingTurn]:
        """Purpose: Run the commit batch behind the in-flight guard.
        Inputs/Outputs: Input is the session; output is the turns describing the outcome.
        Side Effects / State: Persists through the committer; on success stores links,
            discards the draft, and moves to complete.
        Dependencies: CampaignCommitter.commit.
        Failure Modes: Validation and generation errors become terminal turns here;
            GatewayError propagates to _call for counting.
        If Removed: Reviewed drafts cannot be saved.
        Testing Notes: A second commit while in flight returns no turns.
        """
        # Guard against a second batch for the same draft.
        if session.commit_in_flight:
            return []
        session.commit_in_flight = True
        session.step = Step.COMMIT
        try:
            context = self._committer.commit(
                session.session_id, session.draft, user_id=session.user_id, account_id=session.account_id
            )
        except CommitValidationError as exc:
            session.step = Step.REVIEW
            return [
                bot_turn(
                    str(exc),
                    step=Step.REVIEW.value,
                    options=[Option(label="Start Over", action=ACTION_RESTART, primary=True)],
                    is_error=True,
                )
            ]
        except GatewayError:
            # A failed write leaves the session on review.
            session.step = Step.REVIEW
            raise
        except LinkGenerationError as exc:
            logger.error("session=%s commit=aborted reason=%s", session.session_id, exc)
            session.step = Step.REVIEW
            return [
                bot_turn(
                    f"These links can't be created: {exc}. Nothing was saved.",
                    step=Step.REVIEW.value,
                    options=[Option(label="Start Over", action=ACTION_RESTART, primary=True)],
                    is_error=True,
                )
            ]
        finally:
            session.commit_in_flight = False

        session.generated_links = list(context.links)
        session.completed_campaign = session.draft.name
        session.completed_campaign_key = context.campaign
        session.completed_existing = session.draft.is_existing_campaign
        session.aggregator = SelectionAggregator(
            tag_gateway=self._gateway, user_id=session.user_id, account_id=session.account_id
        )
        session.step = Step.COMPLETE
        return [self._render(session)]

    def _on_view_campaign(self, session: ConversationSession, _payload: Optional[str]) -> List[PendingTurn]:
        url = self._campaign_url(session)
        return [
            bot_turn(
                "Taking you to the Campaign Management page...",
                step=Step.COMPLETE.value,
                options=[Option(label="Open Campaign", action=ACTION_VIEW_CAMPAIGN, url=url, primary=True)],
            )
        ]

    def _on_copy_links(self, session: ConversationSession, _payload: Optional[str]) -> List[PendingTurn]:
        text = format_links_for_copy(session.completed_campaign or "", session.generated_links)
        turn = self._render(session)
        turn.text = f"Here are your {len(session.generated_links)} tracking links:\n\n{text}"
        return [turn]

    def _campaign_url(self, session: ConversationSession) -> str:
        key = session.completed_campaign_key or ""
        return f"{self._settings.campaign_view_url}?expand={quote(key, safe='')}"

    # Navigation

    def _enter(self, session: ConversationSession, step: Step, notice: str = "") -> List[PendingTurn]:
        session.step = step
        session.awaiting_input = None
        return [_with_notice(notice, self._render(session))]

    def _go_back(self, session: ConversationSession) -> List[PendingTurn]:
        """Move to the previous step (or previous source/pair inside the inner loops)."""
        step = session.step
        draft = session.draft
        if step in (Step.CAMPAIGN_NAME, Step.EXISTING_CAMPAIGN):
            return self._enter(session, Step.CAMPAIGN_TYPE)
        if step == Step.LANDING_PAGES:
            if draft.is_existing_campaign:
                return self._on_start_existing(session, None)
            return self._enter(session, Step.CAMPAIGN_NAME)
        if step == Step.SOURCES:
            return self._enter(session, Step.LANDING_PAGES)
        if step == Step.MEDIUMS:
            if session.source_index > 0:
                session.source_index -= 1
                return self._enter(session, Step.MEDIUMS)
            return self._enter(session, Step.SOURCES)
        if step == Step.CONTENT:
            if session.pair_index > 0:
                session.pair_index -= 1
                return self._enter(session, Step.CONTENT)
            session.source_index = max(len(draft.selected_sources) - 1, 0)
            return self._enter(session, Step.MEDIUMS)
        if step == Step.TERMS:
            pairs = session.aggregator.selected_pairs()
            if not pairs:
                return self._enter(session, Step.SOURCES)
            session.pair_index = len(pairs) - 1
            return self._enter(session, Step.CONTENT)
        if step == Step.TAGS:
            return self._enter(session, Step.TERMS)
        if step == Step.REVIEW:
            return self._enter(session, Step.TAGS)
        return [bot_turn(UNAVAILABLE_OPTION, step=step.value, is_error=True), self._render(session)]

    def _prompt_custom(self, session: ConversationSession, action: str) -> PendingTurn:
        step = session.step.value
        if action == INPUT_URL:
            return bot_turn(
                "Enter the custom landing page URL you'd like to add:",
                step=step,
                input_placeholder="Enter landing page URL (e.g., 'https://example.com')",
                expects=INPUT_URL,
            )
        if action == INPUT_SOURCE:
            return bot_turn(
                "What's the name of your custom traffic source?",
                step=step,
                input_placeholder="Enter custom source name (e.g., 'newsletter')",
                expects=INPUT_SOURCE,
            )
        if action == INPUT_MEDIUM:
            return self._medium_prompt(session, self._current_source(session))
        if action == INPUT_CONTENT:
            source, medium = self._current_pair(session)
            return bot_turn(
                f"Enter your custom content variation for {source} -> {medium} (e.g., 'banner-ad', 'text-link', 'cta-button'):",
                step=step,
                input_placeholder="Enter content variation (letters, numbers, hyphens, underscores)",
                expects=INPUT_CONTENT,
            )
        if action == INPUT_TERM:
            return bot_turn(
                "Enter your custom term (e.g., 'summer-sale', 'mobile-users', 'test-a'):",
                step=step,
                input_placeholder="Enter term value (letters, numbers, hyphens, underscores)",
                expects=INPUT_TERM,
            )
        return bot_turn(
            "What would you like to name your new tag?",
            step=step,
            input_placeholder="Enter tag name (e.g., 'summer-campaign')",
            expects=INPUT_TAG,
        )

    def _medium_prompt(self, session: ConversationSession, source: str) -> PendingTurn:
        return bot_turn(
            f"What type of medium will you use for {source}?",
            step=session.step.value,
            options=[Option(label="Back", action=ACTION_BACK)],
            input_placeholder="Enter medium type (e.g., 'email', 'banner', 'post')",
            expects=INPUT_MEDIUM,
        )

    def _input_error(
        self,
        session: ConversationSession,
        message: str,
        expects: Optional[str] = None,
        placeholder: Optional[str] = None,
    ) -> PendingTurn:
        # Input errors keep the same input mode open and never touch the network.
        return bot_turn(
            message,
            step=session.step.value,
            is_error=True,
            input_placeholder=placeholder,
            expects=expects or session.awaiting_input,
        )

    # Rendering

    def _render(self, session: ConversationSession, allow_prompt: bool = True) -> PendingTurn:
        """Purpose: Build the prompt for the session's current step from draft state.
        Inputs/Outputs: Input is the session; output is one PendingTurn with options.
        Side Effects / State: None on the draft; may fetch suggestions/catalogue.
        Dependencies: The _render_* functions below.
        Failure Modes: Suggestion failures degrade to custom-entry options.
        If Removed: Steps cannot be re-rendered after a selection or going back.
        Testing Notes: Rendering twice without changes yields identical options.
        """
        # Dispatch on the current step.
        step = session.step
        if step == Step.WELCOME or step == Step.CAMPAIGN_TYPE:
            return self._render_campaign_type()
        if step == Step.CAMPAIGN_NAME:
            return bot_turn(
                "Perfect! Let's create a new campaign. What would you like to name it?",
                step=step.value,
                options=[Option(label="Back", action=ACTION_BACK)],
                input_placeholder="Enter campaign name (e.g., 'Summer Sale 2025')",
                expects=INPUT_CAMPAIGN_NAME,
            )
        if step == Step.EXISTING_CAMPAIGN:
            return self._render_existing_campaigns(session.recent_campaigns)
        if step == Step.LANDING_PAGES:
            return self._render_landing_pages(session)
        if step == Step.SOURCES:
            return self._render_sources(session)
        if step == Step.MEDIUMS:
            return self._render_mediums(session, allow_prompt=allow_prompt)
        if step == Step.CONTENT:
            return self._render_content(session)
        if step == Step.TERMS:
            return self._render_terms(session)
        if step == Step.TAGS:
            return self._render_tags(session)
        if step in (Step.REVIEW, Step.COMMIT):
            return self._render_review(session)
        return self._render_complete(session)

    def _render_campaign_type(self) -> PendingTurn:
        return bot_turn(
            "Hi! I'm your Campaign Link Assistant. Would you like to add links to an existing campaign "
            "or create a brand new one?",
            step=Step.CAMPAIGN_TYPE.value,
            options=[
                Option(label="Existing Campaign", action=ACTION_START_EXISTING),
                Option(label="New Campaign", action=ACTION_START_NEW, primary=True),
            ],
        )

    def _render_existing_campaigns(self, names: List[str]) -> PendingTurn:
        options = [Option(label=name, action=ACTION_SELECT_CAMPAIGN, payload=name) for name in names]
        options.append(Option(label="Back", action=ACTION_BACK))
        return bot_turn(
            "Here are your recent campaigns. Which one would you like to add links to?",
            step=Step.EXISTING_CAMPAIGN.value,
            options=options,
        )

    def _render_landing_pages(self, session: ConversationSession) -> PendingTurn:
        pages = session.draft.landing_pages
        selected_urls = [page.url for page in pages]
        suggested = self._suggestions.most_used_landing_pages(exclude=selected_urls)
        if not pages:
            text = (
                "Great! Now let's add landing pages. You can choose from your most-used URLs or add a new one.\n\n"
                "Tip: When adding a custom URL, include the full URL starting with https:// (e.g., https://example.com)"
            )
        else:
            text = f"You currently have {len(pages)} landing page(s): {', '.join(selected_urls)}. Choose more URLs or continue:"
        options = [
            Option(label=url, action=ACTION_SELECT_LANDING_PAGE, payload=url, selected=True, disabled=True)
            for url in selected_urls
        ]
        options += [Option(label=url, action=ACTION_SELECT_LANDING_PAGE, payload=url) for url in suggested]
        options.append(Option(label="Add Custom URL", action=INPUT_URL))
        if pages:
            options.append(Option(label="Continue to Sources", action=ACTION_CONTINUE, primary=True))
        options.append(Option(label="Back", action=ACTION_BACK))
        return bot_turn(text, step=Step.LANDING_PAGES.value, options=options)

    def _render_sources(self, session: ConversationSession) -> PendingTurn:
        selected = session.draft.selected_sources
        catalogue = [template.name for template in self._templates(session)]
        if not selected:
            text = "Perfect! Now let's choose your traffic sources. Select all the platforms you'll be promoting on:"
        else:
            text = f"Selected sources: {', '.join(selected)}. Select additional sources or continue:"
        options = [
            Option(label=_label(source), action=ACTION_TOGGLE_SOURCE, payload=source, selected=True, disabled=True)
            for source in selected
        ]
        options += [
            Option(label=_label(source), action=ACTION_TOGGLE_SOURCE, payload=source)
            for source in catalogue
            if source not in selected
        ]
        options.append(Option(label="Add Custom Source", action=INPUT_SOURCE))
        if selected:
            options.append(Option(label="Continue to Mediums", action=ACTION_CONTINUE, primary=True))
        options.append(Option(label="Back", action=ACTION_BACK))
        return bot_turn(text, step=Step.SOURCES.value, options=options)

    def _render_mediums(self, session: ConversationSession, allow_prompt: bool = True) -> PendingTurn:
        source = self._current_source(session)
        selected = session.aggregator.mediums_for(source)
        template = next((item for item in self._templates(session) if item.name == source), None)
        catalogue = template.mediums if template else []
        if not catalogue and not selected and allow_prompt:
            return self._medium_prompt(session, source)
        if not selected:
            text = f"Great! For {source}, select the marketing mediums you'll use:"
        else:
            text = f"Selected mediums for {source}: {', '.join(selected)}. Select additional mediums or continue:"
        options = [
            Option(label=_label(medium), action=ACTION_TOGGLE_MEDIUM, payload=medium, selected=True, disabled=True)
            for medium in selected
        ]
        options += [
            Option(label=_label(medium), action=ACTION_TOGGLE_MEDIUM, payload=medium)
            for medium in catalogue
            if medium not in selected
        ]
        options.append(Option(label="Add Custom Medium", action=INPUT_MEDIUM))
        if selected:
            options.append(Option(label="Continue with Selected Mediums", action=ACTION_CONTINUE, primary=True))
        options.append(Option(label="Back", action=ACTION_BACK))
        return bot_turn(text, step=Step.MEDIUMS.value, options=options)

    def _render_content(self, session: ConversationSession) -> PendingTurn:
        source, medium = self._current_pair(session)
        selected = session.aggregator.content_for(source, medium)
        suggestions = self._suggestions.fetch_content_suggestions(source, medium)
        pairs = session.aggregator.selected_pairs()
        is_last = session.pair_index + 1 >= len(pairs)
        continue_label = "Continue to Terms" if is_last else "Next: {} -> {}".format(*pairs[session.pair_index + 1])

        values = [sanitize_parameter(value) for value in suggestions]
        values = [value for index, value in enumerate(values) if value and value not in values[:index]]
        values += [value for value in selected if value not in values]
        if not values:
            return bot_turn(
                f"No content suggestions found for {source} -> {medium}. Add custom content or skip:",
                step=Step.CONTENT.value,
                options=[
                    Option(label="Add Custom Content", action=INPUT_CONTENT),
                    Option(label="Skip Content" if is_last else continue_label, action=ACTION_SKIP, primary=True),
                    Option(label="Back", action=ACTION_BACK),
                ],
            )
        # Content toggles, so chosen values stay enabled for deselection.
        options = [
            Option(label=value, action=ACTION_TOGGLE_CONTENT, payload=value, selected=value in selected)
            for value in values
        ]
        options.append(Option(label="Add Custom Content", action=INPUT_CONTENT))
        options.append(Option(label=continue_label, action=ACTION_CONTINUE, primary=True))
        options.append(Option(label="Back", action=ACTION_BACK))
        return bot_turn(
            f"Select content variations for {source} -> {medium} (choose multiple if needed):",
            step=Step.CONTENT.value,
            options=options,
        )

    def _render_terms(self, session: ConversationSession) -> PendingTurn:
        selected = session.aggregator.all_terms()
        suggestions = self._suggestions.fetch_term_suggestions()
        remaining = [item for item in suggestions if sanitize_parameter(item.value) not in selected]
        if not suggestions and not selected:
            return bot_turn(
                "Would you like to add terms for tracking?",
                step=Step.TERMS.value,
                options=[
                    Option(label="Add Custom Term", action=INPUT_TERM),
                    Option(label="Skip Terms", action=ACTION_SKIP),
                    Option(label="Back", action=ACTION_BACK),
                ],
            )
        prompt = "Select a term for tracking:" if self._single_term else "Select terms for tracking (choose multiple if needed):"
        options = [
            Option(label=term, action=ACTION_TOGGLE_TERM, payload=term, selected=True, disabled=True) for term in selected
        ]
        options += [Option(label=item.value, action=ACTION_TOGGLE_TERM, payload=item.value) for item in remaining]
        options.append(Option(label="Add Custom Term", action=INPUT_TERM))
        if selected:
            options.append(Option(label="Continue to Tags", action=ACTION_CONTINUE, primary=True))
        else:
            options.append(Option(label="Skip Terms", action=ACTION_SKIP))
        options.append(Option(label="Back", action=ACTION_BACK))
        return bot_turn(prompt, step=Step.TERMS.value, options=options)

    def _render_tags(self, session: ConversationSession) -> PendingTurn:
        selected = session.draft.selected_tags
        known = self._suggestions.fetch_known_tags()
        lowered = {tag.lower() for tag in selected}
        if known:
            text = (
                "Almost done! Let's add some tags to organize your campaign. "
                "Choose from existing tags or create new ones:"
            )
        else:
            text = "Would you like to add tags to organize your campaign?"
        options = [Option(label=tag, action=ACTION_SELECT_TAG, payload=tag, selected=True, disabled=True) for tag in selected]
        options += [Option(label=tag, action=ACTION_SELECT_TAG, payload=tag) for tag in known if tag.lower() not in lowered]
        options.append(Option(label="Add Custom Tag", action=INPUT_TAG))
        if selected:
            options.append(Option(label="Review Campaign", action=ACTION_CONTINUE, primary=True))
        else:
            skip_label = "Skip Tags & Add Links" if session.draft.is_existing_campaign else "Skip Tags"
            options.append(Option(label=skip_label, action=ACTION_SKIP))
        options.append(Option(label="Back", action=ACTION_BACK))
        return bot_turn(text, step=Step.TAGS.value, options=options)

    def _render_review(self, session: ConversationSession) -> PendingTurn:
        summary = session.aggregator.summary()

        def joined(values: object) -> str:
            return ", ".join(values) if values else "None"

        text = "\n".join(
            [
                "Campaign Summary:",
                "",
                f"Type: {'Adding to existing campaign' if summary['type'] == 'existing' else 'New campaign'}",
                f"Name: {summary['name']}",
                f"Landing Pages: {joined(summary['landing_pages'])}",
                f"Sources: {joined(summary['sources'])}",
                f"Mediums: {joined(summary['mediums'])}",
                f"Content: {joined(summary['content'])}",
                f"Terms: {joined(summary['terms'])}",
                f"Tags: {joined(summary['tags'])}",
                "",
                f"This will create {summary['link_count']} tracking link(s) for your campaign.",
            ]
        )
        button = "Add Links to Campaign" if session.draft.is_existing_campaign else "Create Campaign"
        return bot_turn(
            text,
            step=Step.REVIEW.value,
            options=[
                Option(label=button, action=ACTION_COMMIT, primary=True, disabled=session.commit_in_flight),
                Option(label="Back", action=ACTION_BACK),
            ],
        )

    def _render_complete(self, session: ConversationSession) -> PendingTurn:
        if session.completed_existing:
            text = "Your links have been added to your campaign successfully! What would you like to do next?"
        else:
            text = "Your campaign has been created successfully! What would you like to do next?"
        return bot_turn(
            text,
            step=Step.COMPLETE.value,
            options=[
                Option(label="View Campaign", action=ACTION_VIEW_CAMPAIGN, url=self._campaign_url(session), primary=True),
                Option(label="Copy Campaign Links", action=ACTION_COPY_LINKS),
                Option(label="Start Another Campaign", action=ACTION_RESTART),
            ],
        )
