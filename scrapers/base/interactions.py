"""Robust click/type primitives and the remote page health check."""

import asyncio
from typing import List, Optional, Sequence

from playwright.async_api import ElementHandle, Error as PlaywrightError

from scrapers.base.adaptive_wait import DOCUMENT_READY_SCRIPT, AdaptiveWait
from scrapers.base.exceptions import ServerDownError
from utils.logging import ScrapingLogger
from utils.scraping_utils import normalize_plate

HTTP_ERROR_SIGNATURES = (
    "404 - not found",
    "403 forbidden",
    "500 internal server error",
    "502 bad gateway",
    "503 service unavailable",
    "504 gateway timeout",
)

APP_SERVER_SIGNATURES = (
    "glassfish server",
    "apache tomcat",
    "server error",
)

CONNECTION_ERROR_MARKERS = (
    "net::err_",
    "target closed",
    "has been closed",
    "connection refused",
    "connection closed",
)

SCRIPTED_CLICK_SCRIPT = "(el) => { el.click(); return true; }"

DISPATCH_CLICK_SCRIPT = """
(el) => {
    const rect = el.getBoundingClientRect();
    const options = {
        bubbles: true, cancelable: true, view: window,
        clientX: rect.left + rect.width / 2, clientY: rect.top + rect.height / 2
    };
    ['mousedown', 'mouseup', 'click'].forEach(type => el.dispatchEvent(new MouseEvent(type, options)));
    return true;
}
"""

# Exact, whitespace-normalized, case-insensitive match. Matches that contain
# another match are dropped so the innermost element wins.
EXACT_TEXT_SCRIPT = """
([selector, target]) => {
    const norm = s => (s || '').replace(/\\s+/g, ' ').trim().toUpperCase();
    const matches = Array.from(document.querySelectorAll(selector))
        .filter(el => norm(el.innerText || el.textContent) === target);
    const innermost = matches.filter(el => !matches.some(o => o !== el && el.contains(o)));
    return innermost[0] || null;
}
"""

# Innermost visible element whose whole text is the target, lifted to the
# nearest clickable ancestor within three levels
SWEEP_TEXT_SCRIPT = """
(target) => {
    const norm = s => (s || '').replace(/\\s+/g, ' ').trim().toUpperCase();
    const visible = el => el.offsetWidth > 0 && el.offsetHeight > 0;
    const matches = Array.from(document.querySelectorAll('body *'))
        .filter(el => visible(el) && norm(el.innerText || el.textContent) === target);
    const innermost = matches.filter(el => !matches.some(o => o !== el && el.contains(o)));
    for (const el of innermost) {
        let node = el;
        for (let i = 0; i < 3 && node; i++) {
            const tag = node.tagName.toLowerCase();
            const cls = (node.className && node.className.toString()) || '';
            if (['button', 'a', 'tr'].includes(tag) || /item|vehicle|marker/.test(cls)) return node;
            node = node.parentElement;
        }
        return el;
    }
    return null;
}
"""

COLLECT_TEXTS_SCRIPT = """
(selector) => Array.from(document.querySelectorAll(selector))
    .map(el => (el.innerText || el.textContent || '').replace(/\\s+/g, ' ').trim())
    .filter(Boolean)
"""


def as_server_down(error: BaseException, context: str) -> Optional[ServerDownError]:
    """Map a connection-level browser error to ServerDownError, else None."""
    if isinstance(error, ServerDownError):
        return error
    if not isinstance(error, PlaywrightError):
        return None
    message = str(error).lower()
    if any(marker in message for marker in CONNECTION_ERROR_MARKERS):
        return ServerDownError(context, str(error).splitlines()[0])
    return None


class Interactions:
    """Element interactions that escalate through several click strategies."""

    def __init__(
        self,
        session,
        waits: AdaptiveWait,
        logger: Optional[ScrapingLogger] = None,
    ):
        self.session = session
        self.waits = waits
        self.logger = logger or ScrapingLogger("scraper.interactions")

    async def click_when_clickable(
        self,
        selector: Optional[str] = None,
        element: Optional[ElementHandle] = None,
        timeout: float = 10.0,
        max_attempts: int = 3,
        op_id: Optional[str] = None,
    ) -> bool:
        """Click an element, trying native, scripted, pointer and dispatched clicks.

        Args:
            selector: Selector used to (re)resolve the element
            element: Already resolved element, reused on the first attempt
            timeout: Budget in seconds for resolving and for each native click
            max_attempts: Full rounds of strategies before giving up
            op_id: Timing profile id, defaults to one derived from the selector

        Returns:
            True if one strategy reported success, False otherwise
        """
        if selector is None and element is None:
            raise ValueError("click_when_clickable needs a selector or an element")
        op_id = op_id or f"click:{selector or 'element'}"
        backoff = min(timeout / 25, 0.3)

        for attempt in range(max_attempts):
            target = element if attempt == 0 else None
            if target is None and selector is not None:
                result = await self.waits.wait_for_element(
                    selector, op_id, require_interactable=True, timeout=timeout
                )
                target = result.element
            elif target is None:
                target = element

            if target is None:
                self.logger.debug("click_target_unavailable", operation=op_id, attempt=attempt + 1)
            elif await self._click_with_strategies(target, timeout, op_id):
                if attempt > 0:
                    self.logger.debug("click_succeeded_after_retry", operation=op_id, attempt=attempt + 1)
                return True

            if attempt < max_attempts - 1:
                await asyncio.sleep(backoff)

        self.logger.warning("click_failed", operation=op_id, attempts=max_attempts)
        return False

    async def _click_with_strategies(
        self, element: ElementHandle, timeout: float, op_id: str
    ) -> bool:
        try:
            await element.scroll_into_view_if_needed(timeout=min(timeout, 2.0) * 1000)
        except Exception as e:
            self.logger.debug("scroll_into_view_failed", operation=op_id, error=str(e))

        strategies = (
            ("native", self._native_click),
            ("scripted", self._scripted_click),
            ("pointer", self._pointer_click),
            ("dispatch", self._dispatch_click),
        )
        for name, strategy in strategies:
            try:
                if await strategy(element, timeout):
                    self.logger.debug("element_clicked", operation=op_id, strategy=name)
                    return True
            except Exception as e:
                self.logger.debug(
                    "click_strategy_failed", operation=op_id, strategy=name, error=str(e)
                )
        return False

    async def _native_click(self, element: ElementHandle, timeout: float) -> bool:
        await element.click(timeout=min(timeout, 2.0) * 1000)
        return True

    async def _scripted_click(self, element: ElementHandle, timeout: float) -> bool:
        return bool(await element.evaluate(SCRIPTED_CLICK_SCRIPT))

    async def _pointer_click(self, element: ElementHandle, timeout: float) -> bool:
        box = await element.bounding_box()
        if not box:
            return False
        await self.session.page.mouse.click(
            box["x"] + box["width"] / 2, box["y"] + box["height"] / 2
        )
        return True

    async def _dispatch_click(self, element: ElementHandle, timeout: float) -> bool:
        return bool(await element.evaluate(DISPATCH_CLICK_SCRIPT))

    async def fill(
        self,
        selector: str,
        value: str,
        op_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> bool:
        """Clear and type into an input. Returns False if it never becomes interactable."""
        op_id = op_id or f"fill:{selector}"
        result = await self.waits.wait_for_element(
            selector, op_id, require_interactable=True, timeout=timeout
        )
        if not result:
            self.logger.warning("input_not_available", operation=op_id, reason=result.reason)
            return False
        try:
            await result.element.fill(value)
        except PlaywrightError as e:
            self.logger.debug("native_fill_failed", operation=op_id, error=str(e))
            await result.element.evaluate(
                "(el, v) => { el.value = v; el.dispatchEvent(new Event('input', {bubbles: true})); "
                "el.dispatchEvent(new Event('change', {bubbles: true})); }",
                value,
            )
        self.logger.debug("element_filled", operation=op_id, value_length=len(value))
        return True

    async def find_by_exact_text(
        self, selectors: Sequence[str], text: str
    ) -> Optional[ElementHandle]:
        """Return the innermost element whose whole text equals ``text``.

        Comparison is trimmed and case-insensitive; a plate that merely
        contains ``text`` never matches. Selectors must be CSS.
        """
        target = normalize_plate(text)
        for selector in selectors:
            handle = await self.session.context.evaluate_handle(
                EXACT_TEXT_SCRIPT, [selector, target]
            )
            element = handle.as_element()
            if element is not None:
                return element
            await handle.dispose()
        return None

    async def sweep_for_text(self, text: str) -> Optional[ElementHandle]:
        """Last-resort scan of every visible element for an exact text match."""
        handle = await self.session.context.evaluate_handle(
            SWEEP_TEXT_SCRIPT, normalize_plate(text)
        )
        element = handle.as_element()
        if element is None:
            await handle.dispose()
        return element

    async def collect_texts(self, selector: str) -> List[str]:
        return list(await self.session.evaluate(COLLECT_TEXTS_SCRIPT, selector) or [])

    async def check_page_health(self, context: str) -> None:
        """Raise ServerDownError if the page shows an HTTP or app-server error.

        A page that never reaches ``readyState == 'complete'`` and any browser
        error while probing count as the server being down too.
        """
        try:
            await self.waits.wait_for_script(DOCUMENT_READY_SCRIPT, "document_ready")
            content = (await self.session.content()).lower()
            ready_state = await self.session.evaluate("() => document.readyState")
        except PlaywrightError as e:
            self.logger.error("page_health_check_failed", step=context, error=str(e))
            raise ServerDownError(context, str(e).splitlines()[0]) from e

        for signature in HTTP_ERROR_SIGNATURES + APP_SERVER_SIGNATURES:
            if signature in content:
                self.logger.error("server_error_detected", step=context, signature=signature)
                raise ServerDownError(context, signature)

        if ready_state != "complete":
            self.logger.error("page_not_loaded", step=context, ready_state=ready_state)
            raise ServerDownError(context, f"document not loaded ({ready_state})")
