from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

from .config import Settings, load_settings
from .conversation import CampaignConversation, ConversationSession
from .gateway import CollaboratorClient, PersistenceGateway
from .models import (
    GeneratedLinkOut,
    SessionSummary,
    SessionTranscript,
    StartRequest,
    TranscriptMessage,
    TurnRequest,
    TurnResponse,
)
from .session_store import SessionStore
from .suggestions import SuggestionProvider

BASE_DIR = Path(__file__).resolve().parent

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("linkwizard").setLevel(log_level)
logger = logging.getLogger("linkwizard.app")

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)


def _response(session: ConversationSession, messages: List[TranscriptMessage]) -> TurnResponse:
    return TurnResponse(
        session_id=session.session_id,
        step=session.step.value,
        messages=messages,
        awaiting_input=session.awaiting_input,
        link_count=len(session.generated_links) or session.aggregator.combination_count(),
    )


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[PersistenceGateway] = None,
    suggestions: Optional[SuggestionProvider] = None,
    session_store: Optional[SessionStore] = None,
) -> FastAPI:
    """Purpose: Build the FastAPI app and wire the conversation engine.
    Inputs/Outputs: Optional Settings and collaborators (tests inject fakes);
        returns a configured FastAPI instance.
    Side Effects / State: Creates a requests-backed client when no gateway or
        suggestion provider is supplied; the session store may read its file.
    Dependencies: load_settings, CollaboratorClient, CampaignConversation, SessionStore.
    Failure Modes: Invalid configuration raises ValueError at startup.
    If Removed: No HTTP surface exists for the conversation.
    Testing Notes: Pass fakes and drive the endpoints with TestClient.
    """
    # Fall back to environment settings and real collaborators.
    settings = settings or load_settings()
    if gateway is None or suggestions is None:
        client = CollaboratorClient(settings)
        gateway = gateway or PersistenceGateway(client)
        suggestions = suggestions or SuggestionProvider(client)
    store = session_store or SessionStore(settings.sessions_path, max_sessions=settings.max_sessions)
    engine = CampaignConversation(settings, gateway, suggestions)

    app = FastAPI(title="Campaign Link Wizard")
    app.state.settings = settings
    app.state.sessions = store
    app.state.engine = engine

    def live_session(session_id: str) -> ConversationSession:
        session = store.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Unknown or expired session: {session_id}")
        return session

    @app.post("/api/conversations", response_model=TurnResponse)
    def start_conversation(request: StartRequest) -> TurnResponse:
        session = engine.new_session(user_id=request.user_id, account_id=request.account_id)
        messages = engine.start(session)
        store.add(session)
        logger.info("session=%s started step=%s", session.session_id, session.step.value)
        return _response(session, messages)

    @app.post("/api/conversations/{session_id}/turns", response_model=TurnResponse)
    def submit_turn(session_id: str, request: TurnRequest) -> TurnResponse:
        """Purpose: Apply one option action or free-text answer to a session.
        Inputs/Outputs: Input is a TurnRequest; output is the turns it emitted.
        Side Effects / State: Mutates the live session and persists its transcript.
        Dependencies: CampaignConversation.handle and SessionStore.save.
        Failure Modes: Unknown session maps to 404; request without action or text maps to 422.
        If Removed: Clients cannot advance a conversation.
        Testing Notes: Post start-new then a campaign name and expect the landing-pages step.
        """
        # Resolve the live session before touching the engine.
        session = live_session(session_id)
        if not request.action and request.text is None:
            raise HTTPException(status_code=422, detail="Either action or text is required")
        messages = engine.handle(session, action=request.action, payload=request.payload, text=request.text)
        store.save(session)
        return _response(session, messages)

    @app.post("/api/conversations/{session_id}/restart", response_model=TurnResponse)
    def restart_conversation(session_id: str) -> TurnResponse:
        session = live_session(session_id)
        messages = engine.restart(session)
        store.save(session)
        return _response(session, messages)

    @app.get("/api/conversations/{session_id}/links", response_model=List[GeneratedLinkOut])
    def list_generated_links(session_id: str) -> List[GeneratedLinkOut]:
        session = live_session(session_id)
        return [
            GeneratedLinkOut(
                target_url=link.target_url,
                full_tracking_url=link.full_tracking_url,
                campaign=link.campaign,
                source=link.source,
                medium=link.medium,
                content=link.content,
                term=link.term,
                tags=list(link.tags),
            )
            for link in session.generated_links
        ]

    @app.get("/api/sessions", response_model=List[SessionSummary])
    def list_sessions() -> List[SessionSummary]:
        return store.list_sessions()

    @app.get("/api/sessions/{session_id}", response_model=SessionTranscript)
    def get_session(session_id: str) -> SessionTranscript:
        messages = store.get_transcript(session_id)
        if messages is None:
            raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
        live = store.get(session_id)
        summary = live.aggregator.summary() if live is not None else None
        return SessionTranscript(session_id=session_id, messages=messages, summary=summary)

    return app


app = create_app()
