from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .models import Option
from .transcript import PendingTurn, bot_turn

logger = logging.getLogger("linkwizard.retry")

DEFAULT_MAX_CONSECUTIVE_ERRORS = 3

ACTION_RETRY = "retry"
ACTION_MANUAL = "manual"
ACTION_RESTART = "restart"


@dataclass
class RetryDecision:
    """What the controller decided after a failure."""
    consecutive_errors: int
    fallback: bool
    turn: PendingTurn


class ErrorRetryController:
    """Counts consecutive network failures and chooses between retry and fallback.

    The counter resets on any successful network call. Below the threshold a single
    "Retry" action re-invokes the failed operation; at the threshold the session is
    treated as consistently failing and only manual creation or a restart is offered.
    """

    def __init__(self, max_errors: int = DEFAULT_MAX_CONSECUTIVE_ERRORS, manual_flow_url: str = "/new-campaign") -> None:
        if max_errors < 1:
            raise ValueError("max_errors must be at least 1")
        self._max_errors = max_errors
        self._manual_flow_url = manual_flow_url
        self.consecutive_errors = 0
        self.last_operation: Optional[str] = None

    @property
    def in_fallback(self) -> bool:
        return self.consecutive_errors >= self._max_errors

    def record_success(self) -> None:
        if self.consecutive_errors:
            logger.info("errors_reset from=%d", self.consecutive_errors)
        self.consecutive_errors = 0
        self.last_operation = None

    def reset(self) -> None:
        self.consecutive_errors = 0
        self.last_operation = None

    def record_failure(self, operation: str, step: Optional[str] = None) -> RetryDecision:
        """Purpose: Count a failure and build the user-facing recovery turn.
        Inputs/Outputs: Inputs are the failed operation label and current step;
            output is a RetryDecision with the turn to emit.
        Side Effects / State: Increments consecutive_errors and stores last_operation.
        Dependencies: bot_turn and Option models.
        Failure Modes: None.
        If Removed: Failing calls either loop forever or strand the user.
        Testing Notes: The third consecutive failure yields manual/restart without retry.
        """
        # Count the failure, then pick retry or fallback.
        self.consecutive_errors += 1
        self.last_operation = operation
        fallback = self.in_fallback
        logger.warning(
            "operation=%s consecutive_errors=%d fallback=%s", operation, self.consecutive_errors, fallback
        )
        if fallback:
            turn = bot_turn(
                f"{operation} keeps failing and I'm having trouble connecting to our services. You can:",
                step=step,
                options=[
                    Option(
                        label="Try Manual Campaign Creation",
                        action=ACTION_MANUAL,
                        url=self._manual_flow_url,
                        primary=True,
                    ),
                    Option(label="Start Over", action=ACTION_RESTART),
                ],
                is_error=True,
            )
        else:
            turn = bot_turn(
                f"Connection issue while {operation[0].lower() + operation[1:]}. Let's try again.",
                step=step,
                options=[Option(label="Retry", action=ACTION_RETRY, primary=True)],
                is_error=True,
            )
        return RetryDecision(consecutive_errors=self.consecutive_errors, fallback=fallback, turn=turn)
