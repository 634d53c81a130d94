"""Tests for consecutive-failure counting and the retry/fallback decision."""

import pytest

from linkwizard.retry_controller import ACTION_MANUAL, ACTION_RESTART, ACTION_RETRY, ErrorRetryController


class TestErrorRetryController:
    def test_first_failures_offer_single_retry(self):
        controller = ErrorRetryController()
        for expected in (1, 2):
            decision = controller.record_failure("Saving tracking link", step="commit")
            assert decision.consecutive_errors == expected
            assert not decision.fallback
            assert [option.action for option in decision.turn.options] == [ACTION_RETRY]
            assert decision.turn.is_error
            assert "saving tracking link" in decision.turn.text

    def test_third_failure_routes_to_fallback(self):
        controller = ErrorRetryController(manual_flow_url="/manual")
        controller.record_failure("Saving tracking link")
        controller.record_failure("Saving tracking link")
        decision = controller.record_failure("Saving tracking link")

        assert decision.fallback
        actions = [option.action for option in decision.turn.options]
        assert ACTION_RETRY not in actions
        assert actions == [ACTION_MANUAL, ACTION_RESTART]
        assert decision.turn.options[0].url == "/manual"

    def test_success_resets_counter(self):
        controller = ErrorRetryController()
        controller.record_failure("Creating tag")
        controller.record_failure("Creating tag")
        controller.record_success()
        decision = controller.record_failure("Creating tag")
        assert decision.consecutive_errors == 1
        assert not decision.fallback

    def test_threshold_is_configurable(self):
        controller = ErrorRetryController(max_errors=1)
        assert controller.record_failure("Loading recent campaigns").fallback

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            ErrorRetryController(max_errors=0)
