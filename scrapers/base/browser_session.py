"""Controlled browser session: one unattended Chromium per scraper."""

import asyncio
import time
from typing import Any, List, Optional, Sequence, Union

from playwright.async_api import (
    Browser,
    BrowserContext,
    ElementHandle,
    Frame,
    Page,
    Playwright,
    async_playwright,
)

from config import BrowserSettings, get_settings
from scrapers.base.exceptions import BrowserInitializationError
from utils.logging import ScrapingLogger

# Recursive search through open shadow roots, bounded by maxDepth. Browser
# credential warnings render inside shadow trees that querySelector cannot see.
# Labels must equal a wanted text, so "OK" never matches "Facebook".
DEEP_FIND_SCRIPT = """
([texts, maxDepth]) => {
    const norm = s => (s || '').replace(/\\s+/g, ' ').trim().toLowerCase();
    const wanted = texts.map(norm);
    const clickable = 'button, [role="button"], a, input[type="button"], input[type="submit"]';
    const visit = (root, depth) => {
        if (!root || depth > maxDepth) return null;
        for (const node of root.querySelectorAll(clickable)) {
            const label = norm(node.innerText || node.value || node.getAttribute('aria-label'));
            if (label && wanted.includes(label)) return node;
        }
        for (const el of root.querySelectorAll('*')) {
            if (el.shadowRoot) {
                const found = visit(el.shadowRoot, depth + 1);
                if (found) return found;
            }
        }
        return null;
    };
    return visit(document, 0);
}
"""


class BrowserSession:
    """Owns the Playwright browser and tracks which document is active.

    Every query and script runs against ``context``, which is either the
    current page or a frame entered with ``switch_to_frame``. Code that enters
    a frame is responsible for leaving it (``switch_to_default``) or handing
    it off to the next step explicitly.
    """

    LAUNCH_ARGS = [
        "--no-sandbox",
        "--disable-dev-shm-usage",
        "--disable-gpu",
        "--disable-notifications",
        "--disable-popup-blocking",
        "--disable-features=PasswordManagerLeakDetection,PasswordElement,"
        "PasswordProtectionWarning,AutofillServerCommunication",
        "--disable-blink-features=CredentialManagerAPI",
        "--no-first-run",
        "--disable-default-apps",
    ]

    def __init__(
        self,
        settings: Optional[BrowserSettings] = None,
        logger: Optional[ScrapingLogger] = None,
    ):
        self.settings = settings or get_settings().browser
        self.logger = logger or ScrapingLogger("scraper.browser")

        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.browser_context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self._frame: Optional[Frame] = None
        self.context_label = "page"
        self._closed = False

    @property
    def is_started(self) -> bool:
        return self.page is not None and not self._closed

    @property
    def context(self) -> Union[Page, Frame]:
        """The document every query runs against."""
        if self.page is None:
            raise RuntimeError("Browser session has not been started")
        return self._frame or self.page

    @property
    def url(self) -> str:
        return self.page.url if self.page else ""

    @property
    def window_count(self) -> int:
        return len(self.browser_context.pages) if self.browser_context else 0

    async def start(self) -> None:
        """Launch the browser. Any failure leaves nothing running."""
        try:
            self.logger.info("launching_browser", headless=self.settings.headless)
            self.playwright = await async_playwright().start()

            args = self.LAUNCH_ARGS + [
                f"--window-size={self.settings.window_width},{self.settings.window_height}"
            ]
            launch_options: dict = {"headless": self.settings.headless, "args": args}
            if self.settings.executable_path:
                launch_options["executable_path"] = self.settings.executable_path
            self.browser = await self.playwright.chromium.launch(**launch_options)

            self.browser_context = await self.browser.new_context(
                viewport={
                    "width": self.settings.window_width,
                    "height": self.settings.window_height,
                },
                ignore_https_errors=True,
            )
            # All waiting is done by the adaptive wait engine, actions only
            # get a short bound so a missing element fails fast
            self.browser_context.set_default_timeout(self.settings.action_timeout_ms)
            self.browser_context.set_default_navigation_timeout(
                self.settings.navigation_timeout_ms
            )
            self.page = await self.browser_context.new_page()
            self.logger.info("browser_started")

        except Exception as e:
            self.logger.error("browser_start_failed", error=str(e), error_type=type(e).__name__)
            await self.close()
            raise BrowserInitializationError(
                f"Failed to initialize browser: {e}",
                context={"error_type": type(e).__name__},
            ) from e

    async def goto(self, url: str, wait_until: str = "load") -> None:
        self.switch_to_default()
        self.logger.debug("navigating_to_url", url=url)
        await self.page.goto(url, wait_until=wait_until)

    async def content(self) -> str:
        return await self.context.content()

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if arg is None:
            return await self.context.evaluate(script)
        return await self.context.evaluate(script, arg)

    async def query(self, selector: str) -> Optional[ElementHandle]:
        return await self.context.query_selector(selector)

    async def query_all(self, selector: str) -> List[ElementHandle]:
        return await self.context.query_selector_all(selector)

    async def switch_to_frame(
        self,
        selector: str,
        require_selector: Optional[str] = None,
        visible_only: bool = True,
    ) -> bool:
        """Enter the first matching iframe, optionally one containing ``require_selector``."""
        for handle in await self.query_all(selector):
            if visible_only and not await handle.is_visible():
                continue
            frame = await handle.content_frame()
            if frame is None:
                continue
            if require_selector and not await frame.query_selector(require_selector):
                continue
            self._frame = frame
            self.context_label = f"frame:{selector}"
            self.logger.debug("switched_to_frame", selector=selector)
            return True
        return False

    def switch_to_default(self) -> None:
        if self._frame is not None:
            self.logger.debug("switched_to_default_content", previous=self.context_label)
        self._frame = None
        self.context_label = "page"

    async def switch_to_latest_window(
        self, previous_count: Optional[int] = None, timeout: float = 10.0
    ) -> bool:
        """Make the newest tab current.

        When ``previous_count`` is given, wait until a tab beyond that count
        has opened; returns False if none appears within ``timeout``.
        """
        if self.browser_context is None:
            return False
        deadline = time.monotonic() + timeout
        while previous_count is not None and self.window_count <= previous_count:
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(0.1)

        self.page = self.browser_context.pages[-1]
        self._frame = None
        self.context_label = "page"
        await self.page.bring_to_front()
        self.logger.debug("switched_to_window", windows=self.window_count, url=self.page.url)
        return True

    async def use_page(self, page: Page, close_others: bool = False) -> None:
        """Make ``page`` current, optionally closing every other tab."""
        if close_others and self.browser_context is not None:
            for other in list(self.browser_context.pages):
                if other is not page:
                    try:
                        await other.close()
                    except Exception as e:
                        self.logger.debug("tab_close_failed", error=str(e))
        self.page = page
        self._frame = None
        self.context_label = "page"
        await page.bring_to_front()

    async def deep_find(
        self, texts: Sequence[str], max_depth: int = 5
    ) -> Optional[ElementHandle]:
        """Find a clickable whose whole label is one of ``texts``, descending into shadow roots."""
        handle = await self.context.evaluate_handle(
            DEEP_FIND_SCRIPT, [list(texts), max_depth]
        )
        element = handle.as_element()
        if element is None:
            await handle.dispose()
        return element

    async def close(self) -> None:
        """Shut the browser down. Safe to call repeatedly, never raises."""
        if self._closed:
            return
        self._closed = True
        self._frame = None
        for name in ("browser_context", "browser"):
            resource = getattr(self, name)
            if resource is None:
                continue
            try:
                await resource.close()
            except Exception as e:
                self.logger.warning("browser_resource_close_failed", resource=name, error=str(e))
            setattr(self, name, None)
        if self.playwright is not None:
            try:
                await self.playwright.stop()
            except Exception as e:
                self.logger.warning("playwright_stop_failed", error=str(e))
            self.playwright = None
        self.page = None
        self.logger.info("browser_closed")
