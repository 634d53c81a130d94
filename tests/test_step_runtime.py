"""Tests for the ordered step runner and the turn scheduler."""

import pytest

from linkwizard.step_runtime import PipelineStep, StepRunner
from linkwizard.transcript import Transcript, TurnScheduler, bot_turn, user_turn


class TestStepRunner:
    def test_runs_in_order_and_skips(self):
        calls = []
        runner = StepRunner(
            [
                PipelineStep("a", lambda ctx: calls.append("a")),
                PipelineStep("b", lambda ctx: calls.append("b"), skip_if=lambda ctx: True),
                PipelineStep("c", lambda ctx: calls.append("c")),
            ]
        )
        assert runner.run({}) == ["a", "c"]
        assert calls == ["a", "c"]
        assert runner.step_names == ["a", "b", "c"]

    def test_failure_stops_run_but_always_run_steps_execute(self):
        calls = []

        def boom(ctx):
            raise RuntimeError("write failed")

        runner = StepRunner(
            [
                PipelineStep("first", boom),
                PipelineStep("second", lambda ctx: calls.append("second")),
                PipelineStep("report", lambda ctx: calls.append("report"), always_run=True),
            ]
        )
        with pytest.raises(RuntimeError, match="write failed"):
            runner.run({})
        assert calls == ["report"]


class TestTurnScheduler:
    def test_emits_in_queue_order(self):
        clock = iter(range(100))
        transcript = Transcript(clock=lambda: float(next(clock)))
        scheduler = TurnScheduler(transcript)
        scheduler.enqueue([user_turn("New Campaign")])
        scheduler.enqueue([bot_turn("What would you like to name it?", step="campaign-name")])

        emitted = scheduler.flush()

        assert [message.actor for message in emitted] == ["user", "bot"]
        assert [message.timestamp for message in emitted] == [0.0, 1.0]
        assert len(transcript) == 2
        assert transcript.last_bot_message().step == "campaign-name"
        assert scheduler.flush() == []

    def test_discard_drops_pending(self):
        transcript = Transcript()
        scheduler = TurnScheduler(transcript)
        scheduler.enqueue([bot_turn("stale")])
        scheduler.discard()
        assert scheduler.flush() == []
        assert len(transcript) == 0
