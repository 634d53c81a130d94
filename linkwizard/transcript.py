"""Append-only conversation transcript and the queued-turn scheduler.

A transition never writes to the transcript directly: it returns PendingTurn items
and TurnScheduler appends them in order. Emission is independent of wall-clock
delay, so tests drive the machine one action at a time.
"""

from __future__ import annotations

import itertools
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from .models import Option, TranscriptMessage

BOT = "bot"
USER = "user"


@dataclass
class PendingTurn:
    """A turn waiting to be emitted by the scheduler."""
    actor: str
    text: str
    step: Optional[str] = None
    options: List[Option] = field(default_factory=list)
    is_error: bool = False
    input_placeholder: Optional[str] = None
    # Free-text input mode this turn opens; not stored in the transcript.
    expects: Optional[str] = None


def bot_turn(
    text: str,
    step: Optional[str] = None,
    options: Optional[List[Option]] = None,
    is_error: bool = False,
    input_placeholder: Optional[str] = None,
    expects: Optional[str] = None,
) -> PendingTurn:
    return PendingTurn(
        actor=BOT,
        text=text,
        step=step,
        options=list(options or []),
        is_error=is_error,
        input_placeholder=input_placeholder,
        expects=expects,
    )


def user_turn(text: str, step: Optional[str] = None) -> PendingTurn:
    return PendingTurn(actor=USER, text=text, step=step)


class Transcript:
    """Append-only message list; only clear() (restart) shrinks it."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._messages: List[TranscriptMessage] = []
        self._clock = clock
        self._prefix = uuid.uuid4().hex[:8]
        self._counter = itertools.count(1)

    @property
    def messages(self) -> List[TranscriptMessage]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def append(self, turn: PendingTurn) -> TranscriptMessage:
        message = TranscriptMessage(
            id=f"msg-{self._prefix}-{next(self._counter)}",
            actor=turn.actor,
            text=turn.text,
            timestamp=self._clock(),
            step=turn.step,
            options=turn.options or None,
            is_error=turn.is_error,
            input_placeholder=turn.input_placeholder,
        )
        self._messages.append(message)
        return message

    def clear(self) -> None:
        self._messages = []

    def last_bot_message(self) -> Optional[TranscriptMessage]:
        for message in reversed(self._messages):
            if message.actor == BOT:
                return message
        return None


class TurnScheduler:
    """Emits queued turns into a transcript strictly in queue order."""

    def __init__(self, transcript: Transcript) -> None:
        self._transcript = transcript
        self._queue: List[PendingTurn] = []

    def enqueue(self, turns: Iterable[PendingTurn]) -> None:
        self._queue.extend(turns)

    def flush(self) -> List[TranscriptMessage]:
        """Purpose: Emit every pending turn and return the new transcript records.
        Inputs/Outputs: No inputs; output is the list of appended messages in order.
        Side Effects / State: Appends to the transcript and empties the queue.
        Dependencies: Transcript.append.
        Failure Modes: None.
        If Removed: Transitions produce turns that never reach the user.
        Testing Notes: Enqueue two batches and verify order after one flush.
        """
        # Drain the queue into the transcript.
        emitted: List[TranscriptMessage] = []
        while self._queue:
            emitted.append(self._transcript.append(self._queue.pop(0)))
        return emitted

    def discard(self) -> None:
        self._queue = []
