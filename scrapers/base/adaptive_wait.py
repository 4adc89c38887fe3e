"""Adaptive wait engine.

Replaces fixed sleeps with condition polling whose timeout and poll interval
are derived from the latency each named operation has shown so far in this
scraper's lifetime.
"""

import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional, Tuple

from playwright.async_api import ElementHandle

from config import WaitSettings, get_settings
from utils.logging import ScrapingLogger

RECENT_WINDOW_SECONDS = 30.0
FAST_THRESHOLD_SECONDS = 1.0
FAST_POLL_INTERVAL = 0.1
MIN_TIMEOUT_SECONDS = 2.0
UNKNOWN_TIMEOUT_CAP = 10.0
SMOOTHING_WEIGHT = 0.3

# Visible, enabled, laid out and not hidden by style or a backgrounded tab
INTERACTABLE_SCRIPT = """
(el) => {
    if (!el || !el.isConnected) return false;
    const rect = el.getBoundingClientRect();
    if (rect.width === 0 || rect.height === 0) return false;
    if (el.disabled) return false;
    const style = window.getComputedStyle(el);
    if (style.display === 'none' || style.visibility === 'hidden') return false;
    return !document.hidden;
}
"""

DOCUMENT_READY_SCRIPT = "() => document.readyState === 'complete'"

ANY_VISIBLE_SCRIPT = """
(selector) => Array.from(document.querySelectorAll(selector)).some(el => {
    const rect = el.getBoundingClientRect();
    const style = window.getComputedStyle(el);
    return rect.width > 0 && rect.height > 0 && style.display !== 'none' && style.visibility !== 'hidden';
})
"""

LOADING_INDICATORS_ABSENT_SCRIPT = """
() => {
    const busy = document.querySelectorAll('.loading, .spinner, .wait, .x-mask, .x-masked');
    return Array.from(busy).every(el => {
        const style = window.getComputedStyle(el);
        return style.display === 'none' || style.visibility === 'hidden' || el.offsetParent === null;
    });
}
"""

PENDING_REQUESTS_DRAINED_SCRIPT = """
() => {
    if (typeof window.jQuery === 'undefined') return true;
    const $ = window.jQuery;
    if ($.active !== 0) return false;
    if ($.queue && $.queue(document.body).length > 0) return false;
    try { return $(':animated').length === 0; } catch (e) { return true; }
}
"""

# Context-specific structural checks used by wait_for_page_settled
SETTLE_CHECKS: Dict[str, str] = {
    "post_login": """
        () => {
            const menu = document.querySelector('td.myMenu');
            return !!menu && menu.offsetParent !== null;
        }
    """,
}


@dataclass
class TimingProfile:
    """Rolling latency statistics for one operation id."""

    average: float = 0.0
    minimum: float = float("inf")
    maximum: float = 0.0
    last_success: Optional[float] = None
    samples: int = 0

    def is_recently_fast(self, now: float) -> bool:
        return (
            self.last_success is not None
            and now - self.last_success < RECENT_WINDOW_SECONDS
            and self.minimum < FAST_THRESHOLD_SECONDS
        )


class TimingProfileStore:
    """Timing profiles keyed by operation id, serialized under one lock."""

    def __init__(self):
        self._profiles: Dict[str, TimingProfile] = {}
        self._lock = threading.Lock()

    def get(self, op_id: str) -> Optional[TimingProfile]:
        """Return a copy of the profile, or None for an unseen operation."""
        with self._lock:
            profile = self._profiles.get(op_id)
            return None if profile is None else TimingProfile(**vars(profile))

    def record(self, op_id: str, elapsed: float, success: bool, now: Optional[float] = None) -> TimingProfile:
        with self._lock:
            profile = self._profiles.setdefault(op_id, TimingProfile())
            if profile.samples == 0:
                profile.average = elapsed
            else:
                profile.average = (
                    profile.average * (1 - SMOOTHING_WEIGHT) + elapsed * SMOOTHING_WEIGHT
                )
            profile.minimum = min(profile.minimum, elapsed)
            profile.maximum = max(profile.maximum, elapsed)
            profile.samples += 1
            if success:
                profile.last_success = time.monotonic() if now is None else now
            return TimingProfile(**vars(profile))

    def __len__(self) -> int:
        with self._lock:
            return len(self._profiles)


@dataclass
class WaitResult:
    """Outcome of wait_for_element: the element, or why it was not found."""

    element: Optional[ElementHandle] = None
    reason: str = ""
    elapsed: float = 0.0
    attempts: int = field(default=0)

    @property
    def found(self) -> bool:
        return self.element is not None

    def __bool__(self) -> bool:
        return self.found


class AdaptiveWait:
    """Polling waits that self-tune per operation id.

    One instance belongs to one scraper, together with its profile store.
    """

    def __init__(
        self,
        session,
        logger: Optional[ScrapingLogger] = None,
        settings: Optional[WaitSettings] = None,
        store: Optional[TimingProfileStore] = None,
    ):
        settings = settings or get_settings().waits
        self.session = session
        self.logger = logger or ScrapingLogger("scraper.waits")
        self.max_wait = settings.max_wait_seconds
        self.default_poll_interval = settings.default_poll_interval_seconds
        self.store = store or TimingProfileStore()

    def compute_budget(self, op_id: str, now: Optional[float] = None) -> Tuple[float, float]:
        """Return (timeout, poll_interval) in seconds for the next wait on op_id."""
        now = time.monotonic() if now is None else now
        profile = self.store.get(op_id)
        if profile is None or profile.samples == 0:
            return min(self.max_wait * 0.3, UNKNOWN_TIMEOUT_CAP), self.default_poll_interval

        recently_fast = profile.is_recently_fast(now)
        if recently_fast and profile.maximum < MIN_TIMEOUT_SECONDS:
            timeout = max(profile.maximum * 2, MIN_TIMEOUT_SECONDS)
        else:
            timeout = min(max(profile.average * 1.5, MIN_TIMEOUT_SECONDS), self.max_wait)

        if recently_fast and profile.average < FAST_THRESHOLD_SECONDS:
            interval = FAST_POLL_INTERVAL
        else:
            interval = self.default_poll_interval
        return timeout, interval

    async def _poll(
        self,
        check: Callable[[], Awaitable[bool]],
        op_id: str,
        timeout: Optional[float],
    ) -> Tuple[bool, float, int]:
        start = time.monotonic()
        profile = self.store.get(op_id)
        budget, interval = self.compute_budget(op_id, start)
        if timeout is not None:
            budget = timeout

        attempts = 0
        if profile is not None and profile.is_recently_fast(start):
            attempts += 1
            if await self._safe_check(check, op_id):
                elapsed = time.monotonic() - start
                self.store.record(op_id, elapsed, True)
                return True, elapsed, attempts
            await asyncio.sleep(interval)

        deadline = start + budget
        while True:
            attempts += 1
            if await self._safe_check(check, op_id):
                elapsed = time.monotonic() - start
                self.store.record(op_id, elapsed, True)
                return True, elapsed, attempts
            if time.monotonic() + interval > deadline:
                break
            await asyncio.sleep(interval)

        elapsed = time.monotonic() - start
        self.store.record(op_id, elapsed, False)
        return False, elapsed, attempts

    async def _safe_check(self, check: Callable[[], Awaitable[bool]], op_id: str) -> bool:
        try:
            return bool(await check())
        except Exception as e:
            # The DOM may be mid-mutation, a failing check just means "not yet"
            self.logger.debug("wait_check_failed", operation=op_id, error=str(e))
            return False

    async def wait_for_element(
        self,
        selector: str,
        op_id: Optional[str] = None,
        require_interactable: bool = False,
        timeout: Optional[float] = None,
    ) -> WaitResult:
        """Poll for an element in the active document.

        Never raises on timeout; returns a WaitResult whose ``reason`` says
        whether the element was absent or present but not interactable.
        """
        op_id = op_id or f"element:{selector}"
        found: Dict[str, ElementHandle] = {}
        seen = {"present": False}

        async def check() -> bool:
            element = await self.session.query(selector)
            if element is None:
                return False
            seen["present"] = True
            if require_interactable and not await element.evaluate(INTERACTABLE_SCRIPT):
                return False
            found["element"] = element
            return True

        ok, elapsed, attempts = await self._poll(check, op_id, timeout)
        if ok:
            return WaitResult(element=found["element"], elapsed=elapsed, attempts=attempts)

        reason = (
            f"'{selector}' present but not interactable"
            if seen["present"]
            else f"'{selector}' not found"
        )
        self.logger.debug(
            "element_wait_timed_out",
            operation=op_id,
            reason=reason,
            elapsed=f"{elapsed:.2f}s",
        )
        return WaitResult(reason=reason, elapsed=elapsed, attempts=attempts)

    async def wait_for_condition(
        self,
        predicate: Callable[[], Awaitable[bool]],
        op_id: str,
        timeout: Optional[float] = None,
    ) -> bool:
        ok, elapsed, _ = await self._poll(predicate, op_id, timeout)
        if not ok:
            self.logger.debug("condition_wait_timed_out", operation=op_id, elapsed=f"{elapsed:.2f}s")
        return ok

    async def wait_for_script(
        self, script: str, op_id: str, timeout: Optional[float] = None
    ) -> bool:
        """Wait until an in-page script returns a truthy value."""

        async def check() -> bool:
            return bool(await self.session.evaluate(script))

        return await self.wait_for_condition(check, op_id, timeout)

    async def wait_for_visible(
        self, selector: str, op_id: Optional[str] = None, timeout: Optional[float] = None
    ) -> bool:
        """Wait until any element matching a CSS selector is rendered visibly."""

        async def check() -> bool:
            return bool(await self.session.evaluate(ANY_VISIBLE_SCRIPT, selector))

        return await self.wait_for_condition(check, op_id or f"visible:{selector}", timeout)

    async def wait_for_page_settled(
        self, context_label: str = "", timeout: Optional[float] = None
    ) -> bool:
        """Document ready, no visible loading indicators, plus any context check."""
        extra = SETTLE_CHECKS.get(context_label)

        async def check() -> bool:
            if not await self.session.evaluate(DOCUMENT_READY_SCRIPT):
                return False
            if not await self.session.evaluate(LOADING_INDICATORS_ABSENT_SCRIPT):
                return False
            if extra and not await self.session.evaluate(extra):
                return False
            return True

        settled = await self.wait_for_condition(
            check, f"page_settled:{context_label or 'default'}", timeout
        )
        if settled and extra:
            await self.wait_for_pending_requests(timeout)
        return settled

    async def wait_for_pending_requests(self, timeout: Optional[float] = None) -> bool:
        """Wait for jQuery requests and animations; immediate when the page has no jQuery."""
        return await self.wait_for_script(
            PENDING_REQUESTS_DRAINED_SCRIPT, "pending_requests", timeout
        )
