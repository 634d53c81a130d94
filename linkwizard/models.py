from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class Option(BaseModel):
    """Selectable choice attached to a bot turn."""
    label: str
    action: str
    payload: Optional[str] = None
    primary: bool = False
    selected: bool = False
    disabled: bool = False
    url: Optional[str] = None


class TranscriptMessage(BaseModel):
    """Transcript record for one bot or user turn."""
    id: str
    actor: str
    text: str
    timestamp: float
    step: Optional[str] = None
    options: Optional[List[Option]] = None
    is_error: bool = False
    input_placeholder: Optional[str] = None


class StartRequest(BaseModel):
    """Request payload opening a conversation."""
    user_id: Optional[int] = Field(default=None)
    account_id: Optional[int] = Field(default=None)


class TurnRequest(BaseModel):
    """Either an option action (action + payload) or free text."""
    action: Optional[str] = Field(default=None)
    payload: Optional[str] = Field(default=None)
    text: Optional[str] = Field(default=None)


class TurnResponse(BaseModel):
    """Response payload carrying the turns emitted by one transition."""
    session_id: str
    step: str
    messages: List[TranscriptMessage]
    awaiting_input: Optional[str] = None
    link_count: int = 0


class GeneratedLinkOut(BaseModel):
    target_url: str
    full_tracking_url: str
    campaign: str
    source: str
    medium: str
    content: str
    term: str
    tags: List[str]


class SessionSummary(BaseModel):
    """Lightweight session summary for sidebar listing."""
    session_id: str
    title: str
    updated_at: float
    step: str = "welcome"
    last_prompt: Optional[str] = None


class SessionTranscript(BaseModel):
    session_id: str
    messages: List[TranscriptMessage]
    summary: Optional[Dict[str, object]] = None
