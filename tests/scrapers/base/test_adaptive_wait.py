# ABOUTME: Tests for the adaptive wait engine and its timing profiles
# ABOUTME: Budgets are checked against injected clocks, polling against fake sessions

from unittest.mock import AsyncMock

import pytest

from config import WaitSettings
from scrapers.base.adaptive_wait import (
    FAST_POLL_INTERVAL,
    AdaptiveWait,
    TimingProfileStore,
)


@pytest.fixture
def waits(mock_session):
    return AdaptiveWait(
        mock_session, settings=WaitSettings(max_wait_seconds=60.0, default_poll_interval_seconds=0.25)
    )


class TestTimingProfileStore:
    """Test rolling statistics per operation id."""

    def test_first_sample_sets_average(self):
        store = TimingProfileStore()

        profile = store.record("login", 2.0, True, now=100.0)

        assert profile.average == 2.0
        assert profile.minimum == 2.0
        assert profile.maximum == 2.0
        assert profile.samples == 1
        assert profile.last_success == 100.0

    def test_smoothing_and_extremes(self):
        store = TimingProfileStore()
        store.record("login", 1.0, True, now=1.0)

        profile = store.record("login", 2.0, True, now=2.0)

        assert profile.average == pytest.approx(1.3)
        assert profile.minimum == 1.0
        assert profile.maximum == 2.0

    def test_failure_does_not_move_last_success(self):
        store = TimingProfileStore()
        store.record("login", 1.0, True, now=5.0)

        profile = store.record("login", 3.0, False, now=50.0)

        assert profile.last_success == 5.0
        assert profile.samples == 2

    def test_get_returns_copy(self):
        """Mutating a returned profile never changes the stored one."""
        store = TimingProfileStore()
        store.record("op", 1.0, True, now=1.0)

        copy = store.get("op")
        copy.average = 99.0

        assert store.get("op").average == 1.0
        assert store.get("unknown") is None
        assert len(store) == 1


class TestComputeBudget:
    """Test timeout and poll interval derivation."""

    def test_unknown_operation_uses_capped_fraction_of_max(self, waits):
        assert waits.compute_budget("never_seen", now=0.0) == (10.0, 0.25)

    def test_unknown_operation_with_small_max(self, mock_session):
        waits = AdaptiveWait(
            mock_session, settings=WaitSettings(max_wait_seconds=20.0, default_poll_interval_seconds=0.5)
        )
        assert waits.compute_budget("never_seen", now=0.0) == (6.0, 0.5)

    def test_recently_fast_operation(self, waits):
        """Fast recent successes get a short timeout and a quick poll."""
        waits.store.record("click", 0.2, True, now=100.0)

        timeout, interval = waits.compute_budget("click", now=105.0)

        assert timeout == 2.0
        assert interval == FAST_POLL_INTERVAL

    def test_fast_but_stale_operation(self, waits):
        """Outside the recent window the average drives the budget."""
        waits.store.record("click", 0.2, True, now=100.0)

        timeout, interval = waits.compute_budget("click", now=200.0)

        assert timeout == 2.0
        assert interval == 0.25

    def test_slow_operation(self, waits):
        waits.store.record("report", 4.0, True, now=100.0)
        waits.store.record("report", 4.0, True, now=101.0)

        timeout, interval = waits.compute_budget("report", now=102.0)

        assert timeout == pytest.approx(6.0)
        assert interval == 0.25

    def test_timeout_clamped_to_max_wait(self, waits):
        waits.store.record("slow", 100.0, True, now=1.0)

        timeout, _ = waits.compute_budget("slow", now=2.0)

        assert timeout == 60.0


class TestWaitForElement:
    """Test element polling outcomes."""

    @pytest.mark.asyncio
    async def test_found_after_some_polls(self, mock_session, element_factory):
        element = element_factory()
        mock_session.query = AsyncMock(side_effect=[None, None, element])
        waits = AdaptiveWait(
            mock_session, settings=WaitSettings(max_wait_seconds=5.0, default_poll_interval_seconds=0.01)
        )

        result = await waits.wait_for_element("#target", "target")

        assert result.found
        assert result.element is element
        assert result.attempts == 3
        assert waits.store.get("target").samples == 1

    @pytest.mark.asyncio
    async def test_absent_reason(self, mock_session):
        waits = AdaptiveWait(
            mock_session, settings=WaitSettings(max_wait_seconds=5.0, default_poll_interval_seconds=0.01)
        )

        result = await waits.wait_for_element("#missing", "missing", timeout=0.05)

        assert not result
        assert result.reason == "'#missing' not found"

    @pytest.mark.asyncio
    async def test_present_but_not_interactable_reason(self, mock_session, element_factory):
        mock_session.query = AsyncMock(return_value=element_factory(interactable=False))
        waits = AdaptiveWait(
            mock_session, settings=WaitSettings(max_wait_seconds=5.0, default_poll_interval_seconds=0.01)
        )

        result = await waits.wait_for_element(
            "#disabled", "disabled", require_interactable=True, timeout=0.05
        )

        assert not result.found
        assert result.reason == "'#disabled' present but not interactable"

    @pytest.mark.asyncio
    async def test_check_errors_mean_not_yet(self, mock_session, element_factory):
        """A check raising mid-mutation is retried, not propagated."""
        element = element_factory()
        mock_session.query = AsyncMock(side_effect=[RuntimeError("detached"), element])
        waits = AdaptiveWait(
            mock_session, settings=WaitSettings(max_wait_seconds=5.0, default_poll_interval_seconds=0.01)
        )

        result = await waits.wait_for_element("#target", "target")

        assert result.element is element


class TestScriptWaits:
    """Test script and condition based waits."""

    @pytest.mark.asyncio
    async def test_wait_for_script_truthy(self, mock_session):
        mock_session.evaluate = AsyncMock(side_effect=[False, True])
        waits = AdaptiveWait(
            mock_session, settings=WaitSettings(max_wait_seconds=5.0, default_poll_interval_seconds=0.01)
        )

        assert await waits.wait_for_script("() => window.ready", "ready")

    @pytest.mark.asyncio
    async def test_wait_for_condition_times_out(self, mock_session):
        waits = AdaptiveWait(
            mock_session, settings=WaitSettings(max_wait_seconds=5.0, default_poll_interval_seconds=0.01)
        )

        async def never() -> bool:
            return False

        assert not await waits.wait_for_condition(never, "never", timeout=0.05)
        assert waits.store.get("never").last_success is None

    @pytest.mark.asyncio
    async def test_page_settled_runs_context_check(self, mock_session):
        """The post-login check is evaluated after ready state and loaders."""
        mock_session.evaluate = AsyncMock(return_value=True)
        waits = AdaptiveWait(
            mock_session, settings=WaitSettings(max_wait_seconds=5.0, default_poll_interval_seconds=0.01)
        )

        assert await waits.wait_for_page_settled("post_login")
        scripts = [call.args[0] for call in mock_session.evaluate.await_args_list]
        assert any("myMenu" in script for script in scripts)
        assert any("jQuery" in script for script in scripts)
