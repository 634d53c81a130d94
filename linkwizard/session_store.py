from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .conversation import ConversationSession
from .models import SessionSummary, TranscriptMessage

logger = logging.getLogger("linkwizard.sessions")


class SessionStore:
    """Live conversation sessions plus persisted transcripts and summaries."""

    def __init__(
        self,
        path: Optional[Path] = None,
        max_sessions: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Purpose: Initialize the session store and hydrate transcripts from disk.
        Inputs/Outputs: Inputs are an optional file path and max_sessions cap; no return.
        Side Effects / State: Loads persisted transcripts/summaries into memory.
        Dependencies: Calls _load; relies on TranscriptMessage/SessionSummary models.
        Failure Modes: A corrupt JSON file is logged and leaves empty caches.
        If Removed: Sessions cannot be looked up between turns and history endpoints break.
        Testing Notes: Save a session, build a new store on the same path, list it back.
        """
        # Keep configuration and preload persisted history if present.
        self._path = path
        self._max_sessions = max_sessions
        self._live: Dict[str, ConversationSession] = {}
        self._transcripts: Dict[str, List[TranscriptMessage]] = {}
        self._summaries: Dict[str, SessionSummary] = {}
        self._clock = clock
        self._lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        if not self._path or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("sessions_file=%s status=corrupt ignored", self._path)
            return
        for session_id, messages in data.get("transcripts", {}).items():
            self._transcripts[session_id] = [TranscriptMessage(**message) for message in messages]
        for session_id, summary in data.get("summaries", {}).items():
            self._summaries[session_id] = SessionSummary(**summary)
        if self._prune_sessions():
            self._persist()

    def _persist(self) -> None:
        # IO errors propagate to the caller.
        if not self._path:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "transcripts": {
                session_id: [message.model_dump() for message in messages]
                for session_id, messages in self._transcripts.items()
            },
            "summaries": {session_id: summary.model_dump() for session_id, summary in self._summaries.items()},
        }
        self._path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    def add(self, session: ConversationSession) -> None:
        with self._lock:
            self._live[session.session_id] = session
            self._record(session)

    def save(self, session: ConversationSession) -> None:
        """Purpose: Snapshot a session's transcript and summary after a turn.
        Inputs/Outputs: Input is the live session; no return value.
        Side Effects / State: Updates caches, prunes beyond max_sessions, writes to disk.
        Dependencies: _record, _prune_sessions, _persist.
        Failure Modes: Persist can raise IO errors.
        If Removed: The sessions sidebar and transcript endpoint go stale.
        Testing Notes: Save after a turn and check updated_at and step in the summary.
        """
        # Refresh the snapshot under the store lock.
        with self._lock:
            self._record(session)

    def _record(self, session: ConversationSession) -> None:
        prompt = session.transcript.last_bot_message()
        self._transcripts[session.session_id] = session.transcript.messages
        self._summaries[session.session_id] = SessionSummary(
            session_id=session.session_id,
            title=session.title[:48],
            updated_at=self._clock(),
            step=session.step.value,
            last_prompt=prompt.text if prompt else None,
        )
        self._prune_sessions()
        self._persist()

    def get(self, session_id: str) -> Optional[ConversationSession]:
        return self._live.get(session_id)

    def list_sessions(self) -> List[SessionSummary]:
        return sorted(self._summaries.values(), key=lambda summary: summary.updated_at, reverse=True)

    def get_transcript(self, session_id: str) -> Optional[List[TranscriptMessage]]:
        live = self._live.get(session_id)
        if live is not None:
            return live.transcript.messages
        return self._transcripts.get(session_id)

    def get_summary(self, session_id: str) -> Optional[SessionSummary]:
        return self._summaries.get(session_id)

    def _prune_sessions(self) -> bool:
        """Purpose: Enforce max_sessions by dropping the least recently updated sessions.
        Inputs/Outputs: No inputs; returns True if any sessions were removed.
        Side Effects / State: Mutates live sessions, transcripts, and summaries.
        Dependencies: Uses _max_sessions and updated_at ordering.
        Failure Modes: None; no-op when max_sessions is unset or not exceeded.
        If Removed: Memory and the sessions file grow without bound.
        Testing Notes: Set max_sessions=2, add three sessions, expect the oldest gone.
        """
        # Remove least-recent sessions when above the configured cap.
        if not self._max_sessions or self._max_sessions <= 0:
            return False
        if len(self._summaries) <= self._max_sessions:
            return False
        ordered = sorted(self._summaries.values(), key=lambda summary: summary.updated_at, reverse=True)
        keep_ids = {summary.session_id for summary in ordered[: self._max_sessions]}
        removed = [session_id for session_id in list(self._summaries) if session_id not in keep_ids]
        for session_id in removed:
            self._summaries.pop(session_id, None)
            self._transcripts.pop(session_id, None)
            self._live.pop(session_id, None)
        logger.info("sessions_pruned=%d", len(removed))
        return bool(removed)
