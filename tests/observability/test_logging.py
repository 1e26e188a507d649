"""
Tests for sol_deploy.logging.

Tests verify:
- Log context carries run_id / pipeline / step
- push_context restores the previous context
- log_step times a block and re-raises errors
"""

import pytest

from sol_deploy.logging import (
    LogContext,
    bind_context,
    clear_context,
    get_context,
    get_logger,
    is_configured,
    log_step,
    push_context,
    set_context,
    timed_block,
)
from sol_deploy.logging.context import add_context_processor


class TestLogContext:
    def test_to_dict_excludes_none(self):
        ctx = LogContext(run_id="a1b2c3d4e5f6", pipeline=None)
        assert ctx.to_dict() == {"run_id": "a1b2c3d4e5f6"}

    def test_merge_creates_new_context(self):
        first = LogContext(run_id="r1")
        second = first.merge(pipeline="deploy", unknown="ignored")
        assert first.pipeline is None
        assert second.run_id == "r1"
        assert second.pipeline == "deploy"


class TestContextManagement:
    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_set_replaces(self):
        bind_context(step="pull-images")
        set_context(run_id="r1", pipeline="deploy")
        assert get_context() == LogContext(run_id="r1", pipeline="deploy")

    def test_bind_merges(self):
        set_context(run_id="r1")
        bind_context(step="start-containers")
        assert get_context().run_id == "r1"
        assert get_context().step == "start-containers"

    def test_push_and_restore(self):
        set_context(run_id="r1", pipeline="deploy")
        token = push_context(step="health-check-all")
        assert get_context().step == "health-check-all"
        token.restore()
        assert get_context().step is None
        assert get_context().run_id == "r1"

    def test_processor_adds_context_without_overwriting(self):
        set_context(run_id="r1", pipeline="deploy", step="s")
        event = add_context_processor(None, "info", {"event": "x", "step": "explicit"})
        assert event["run_id"] == "r1"
        assert event["pipeline"] == "deploy"
        assert event["step"] == "explicit"


class TestTiming:
    def test_timed_block_measures(self):
        with timed_block("work") as timer:
            pass
        assert timer.ended_at is not None
        assert timer.duration_ms >= 0

    def test_log_step_sets_span_and_restores(self):
        clear_context()
        with log_step("compose.up", services=3) as timer:
            assert get_context().span_id == timer.span_id
            timer.add_metric("already_running", True)
        assert get_context().span_id is None
        assert timer.to_log_dict()["already_running"] is True
        assert timer.to_log_dict()["services"] == 3

    def test_log_step_reraises(self):
        with pytest.raises(RuntimeError, match="boom"):
            with log_step("compose.pull"):
                raise RuntimeError("boom")


class TestConfigure:
    def test_configured_by_session_fixture(self):
        assert is_configured()

    def test_get_logger_accepts_events(self):
        log = get_logger("sol_deploy.tests")
        log.info("test.event", key="value")
