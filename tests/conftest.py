"""Pytest configuration and fixtures for GPS tracking tests."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from config import BrowserSettings, Settings, WaitSettings


@pytest.fixture
def sample_settings(tmp_path):
    """Settings pointing every provider at a fake portal and files at tmp_path."""
    return Settings(
        _env_file=None,
        detektor={"base_url": "https://detektor.test/login"},
        satrack={"base_url": "https://satrack.test/login"},
        simon_movilidad={"base_url": "https://simon.test/login"},
        browser=BrowserSettings(headless=True),
        waits=WaitSettings(max_wait_seconds=5.0, default_poll_interval_seconds=0.01),
        logs_dir=tmp_path / "logs",
        locations_file=tmp_path / "data" / "locations.jsonl",
        log_level="DEBUG",
    )


@pytest.fixture
def mock_session():
    """Browser session double with the surface the scrapers use."""
    session = MagicMock()
    session.is_started = True
    session.url = "https://portal.test/login"
    session.window_count = 1
    session.start = AsyncMock()
    session.close = AsyncMock()
    session.goto = AsyncMock()
    session.content = AsyncMock(return_value="<html><body>ok</body></html>")
    session.evaluate = AsyncMock(return_value=None)
    session.query = AsyncMock(return_value=None)
    session.query_all = AsyncMock(return_value=[])
    session.deep_find = AsyncMock(return_value=None)
    session.switch_to_frame = AsyncMock(return_value=False)
    session.switch_to_default = MagicMock()

    missing = MagicMock()
    missing.as_element.return_value = None
    missing.dispose = AsyncMock()
    session.context.evaluate_handle = AsyncMock(return_value=missing)
    return session


def make_element(text="", visible=True, interactable=True):
    """Element handle double; ``evaluate`` answers the interactable check."""
    element = MagicMock()
    element.inner_text = AsyncMock(return_value=text)
    element.is_visible = AsyncMock(return_value=visible)
    element.evaluate = AsyncMock(return_value=interactable)
    element.click = AsyncMock()
    element.fill = AsyncMock()
    element.press = AsyncMock()
    element.scroll_into_view_if_needed = AsyncMock()
    element.bounding_box = AsyncMock(return_value={"x": 0, "y": 0, "width": 10, "height": 10})
    element.query_selector = AsyncMock(return_value=None)
    return element


def element_handle(element):
    """JSHandle double whose ``as_element`` resolves to ``element``."""
    handle = MagicMock()
    handle.as_element.return_value = element
    handle.dispose = AsyncMock()
    return handle


@pytest.fixture
def element_factory():
    return make_element


@pytest.fixture
def handle_factory():
    return element_handle
