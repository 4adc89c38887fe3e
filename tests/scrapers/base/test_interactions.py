# ABOUTME: Tests for click escalation, exact text lookup and the page health check
# ABOUTME: Uses AsyncMock sessions and element handles, no browser required

from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError

from config import WaitSettings
from scrapers.base.adaptive_wait import AdaptiveWait
from scrapers.base.exceptions import ErrorKind, ServerDownError
from scrapers.base.interactions import (
    EXACT_TEXT_SCRIPT,
    SCRIPTED_CLICK_SCRIPT,
    Interactions,
    as_server_down,
)


def healthy_evaluate(ready_state="complete"):
    async def evaluate(script, arg=None):
        if "=== 'complete'" in script:
            return ready_state == "complete"
        if "document.readyState" in script:
            return ready_state
        return None

    return evaluate


@pytest.fixture
def clicks(mock_session):
    waits = AdaptiveWait(
        mock_session, settings=WaitSettings(max_wait_seconds=0.1, default_poll_interval_seconds=0.01)
    )
    return Interactions(mock_session, waits)


class TestPageHealth:
    """Test detection of a portal that is down."""

    @pytest.mark.asyncio
    async def test_healthy_page_passes(self, clicks, mock_session):
        mock_session.evaluate = AsyncMock(side_effect=healthy_evaluate())

        await clicks.check_page_health("login_page")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            "<h1>502 Bad Gateway</h1>",
            "<title>503 Service Unavailable</title>",
            "<h3>GlassFish Server Open Source Edition</h3>",
            "<h1>HTTP Status 404 - Not Found</h1>",
        ],
    )
    async def test_error_pages_raise_server_down(self, clicks, mock_session, body):
        mock_session.evaluate = AsyncMock(side_effect=healthy_evaluate())
        mock_session.content = AsyncMock(return_value=f"<html><body>{body}</body></html>")

        with pytest.raises(ServerDownError) as exc_info:
            await clicks.check_page_health("login_page")

        assert exc_info.value.kind is ErrorKind.SERVER_DOWN
        assert exc_info.value.step == "login_page"

    @pytest.mark.asyncio
    async def test_document_never_loaded_raises(self, clicks, mock_session):
        mock_session.evaluate = AsyncMock(side_effect=healthy_evaluate("loading"))

        with pytest.raises(ServerDownError, match="document not loaded"):
            await clicks.check_page_health("post_login")

    @pytest.mark.asyncio
    async def test_browser_error_while_probing_raises(self, clicks, mock_session):
        mock_session.evaluate = AsyncMock(side_effect=healthy_evaluate())
        mock_session.content = AsyncMock(side_effect=PlaywrightError("Target page has been closed"))

        with pytest.raises(ServerDownError):
            await clicks.check_page_health("navigate")


class TestClickWhenClickable:
    """Test the click strategy escalation."""

    @pytest.mark.asyncio
    async def test_requires_selector_or_element(self, clicks):
        with pytest.raises(ValueError):
            await clicks.click_when_clickable()

    @pytest.mark.asyncio
    async def test_native_click(self, clicks, element_factory):
        element = element_factory()

        assert await clicks.click_when_clickable(element=element)
        element.click.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_falls_back_to_scripted_click(self, clicks, element_factory):
        """An intercepted native click is retried through a scripted click."""
        element = element_factory()
        element.click = AsyncMock(side_effect=PlaywrightError("element is not visible"))

        assert await clicks.click_when_clickable(element=element)
        element.evaluate.assert_awaited_with(SCRIPTED_CLICK_SCRIPT)

    @pytest.mark.asyncio
    async def test_gives_up_after_all_strategies(self, clicks, element_factory):
        element = element_factory(interactable=False)
        element.click = AsyncMock(side_effect=PlaywrightError("intercepted"))
        element.bounding_box = AsyncMock(return_value=None)

        assert not await clicks.click_when_clickable(element=element, timeout=1.0, max_attempts=2)
        assert element.click.await_count == 2

    @pytest.mark.asyncio
    async def test_resolves_selector(self, clicks, mock_session, element_factory):
        element = element_factory()
        mock_session.query = AsyncMock(return_value=element)

        assert await clicks.click_when_clickable("#btn_login_login")
        mock_session.query.assert_awaited_with("#btn_login_login")


class TestExactText:
    """Test exact plate lookup."""

    @pytest.mark.asyncio
    async def test_normalizes_target_and_tries_selectors_in_order(
        self, clicks, mock_session, element_factory, handle_factory
    ):
        element = element_factory()
        first, second = handle_factory(None), handle_factory(element)
        mock_session.context.evaluate_handle = AsyncMock(side_effect=[first, second])

        found = await clicks.find_by_exact_text(["tr td", ".vehicle-item"], "  abc123 ")

        assert found is element
        first.dispose.assert_awaited_once()
        calls = mock_session.context.evaluate_handle.await_args_list
        assert calls[0].args == (EXACT_TEXT_SCRIPT, ["tr td", "ABC123"])
        assert calls[1].args == (EXACT_TEXT_SCRIPT, [".vehicle-item", "ABC123"])

    @pytest.mark.asyncio
    async def test_no_match_returns_none(self, clicks):
        assert await clicks.find_by_exact_text(["tr td"], "ABC123") is None


class TestFill:
    """Test typing into inputs."""

    @pytest.mark.asyncio
    async def test_fill_falls_back_to_script(self, clicks, mock_session, element_factory):
        element = element_factory()
        element.fill = AsyncMock(side_effect=PlaywrightError("not editable"))
        mock_session.query = AsyncMock(return_value=element)

        assert await clicks.fill("#user", "operador")
        assert element.evaluate.await_args.args[1] == "operador"

    @pytest.mark.asyncio
    async def test_fill_missing_input(self, clicks):
        assert not await clicks.fill("#user", "operador", timeout=0.02)


class TestAsServerDown:
    """Test mapping of browser errors to server-down."""

    def test_connection_errors_map(self):
        error = as_server_down(
            PlaywrightError("net::ERR_CONNECTION_REFUSED at https://satrack.test/login"), "login"
        )

        assert isinstance(error, ServerDownError)
        assert error.step == "login"

    def test_other_errors_do_not_map(self):
        assert as_server_down(PlaywrightError("Timeout 5000ms exceeded"), "login") is None
        assert as_server_down(ValueError("net::ERR_FAILED"), "login") is None

    def test_server_down_passes_through(self):
        original = ServerDownError("login")
        assert as_server_down(original, "other") is original


@pytest.mark.asyncio
async def test_collect_texts_handles_empty_result(mock_session):
    clicks = Interactions(mock_session, MagicMock())
    mock_session.evaluate = AsyncMock(return_value=None)

    assert await clicks.collect_texts("td") == []
