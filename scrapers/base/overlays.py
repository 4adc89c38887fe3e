"""Detection and dismissal of unsolicited overlays.

Survey modals, forced password-change dialogs and browser credential warnings
can show up at any point. The handler clears them opportunistically; failing
to clear one is never fatal to the calling flow.
"""

import asyncio
from typing import Optional, Sequence

from scrapers.base.interactions import Interactions
from utils.logging import ScrapingLogger

DETECT_OVERLAY_SCRIPT = """
() => {
    const shown = el => {
        const style = window.getComputedStyle(el);
        return style.display !== 'none' && style.visibility !== 'hidden' && el.offsetParent !== null;
    };
    if (document.querySelector('div.encuesta')) return true;
    const blocking = document.querySelectorAll('.modal, .popup, [role="dialog"]');
    if (Array.from(blocking).some(el => window.getComputedStyle(el).display === 'block')) return true;
    if (document.querySelector('.modal-backdrop')) return true;
    return Array.from(document.querySelectorAll('.overlay')).some(shown);
}
"""

SWEEP_OVERLAYS_SCRIPT = """
() => {
    let removed = 0;
    document.querySelectorAll('div.encuesta, .modal-backdrop').forEach(el => { el.remove(); removed++; });
    if (document.body && document.body.classList.contains('modal-open')) {
        document.body.classList.remove('modal-open');
        document.body.style.removeProperty('padding-right');
    }
    document.querySelectorAll('.modal, .popup, [role="dialog"], .overlay').forEach(el => {
        const style = window.getComputedStyle(el);
        if (style.display !== 'none' && style.visibility !== 'hidden') {
            el.style.display = 'none';
            el.classList.remove('show', 'in');
            removed++;
        }
    });
    return removed;
}
"""

CLOSE_BUTTON_SELECTORS = (
    "#btnClearEsat",
    "button.close",
    "div.modal button",
    "button.btn-close",
)

CREDENTIAL_PROMPT_TEXTS = (
    "Cambia la contraseña",
    "Cambiar contraseña",
    "Gestor de contraseñas",
    "Aceptar",
    "OK",
)


class OverlayHandler:
    """Scripted sweep first, selector fallback second, then verify."""

    def __init__(
        self,
        session,
        clicks: Interactions,
        logger: Optional[ScrapingLogger] = None,
        extra_close_selectors: Sequence[str] = (),
    ):
        self.session = session
        self.clicks = clicks
        self.logger = logger or ScrapingLogger("scraper.overlays")
        self.close_selectors = tuple(extra_close_selectors) + CLOSE_BUTTON_SELECTORS

    async def detect(self) -> bool:
        try:
            return bool(await self.session.evaluate(DETECT_OVERLAY_SCRIPT))
        except Exception as e:
            self.logger.debug("overlay_check_failed", error=str(e))
            return False

    async def dismiss(self) -> bool:
        """Close any visible overlay. Returns True when none remains."""
        if not await self.detect():
            return True

        try:
            removed = await self.session.evaluate(SWEEP_OVERLAYS_SCRIPT)
            self.logger.debug("overlay_sweep_completed", removed=removed)
        except Exception as e:
            self.logger.debug("overlay_sweep_failed", error=str(e))

        if await self.detect():
            for selector in self.close_selectors:
                try:
                    element = await self.session.query(selector)
                    if element is None or not await element.is_visible():
                        continue
                    await self.clicks.click_when_clickable(
                        selector, element=element, timeout=2.0, max_attempts=1,
                        op_id="overlay_close",
                    )
                except Exception as e:
                    self.logger.debug("overlay_close_failed", selector=selector, error=str(e))

        closed = not await self.detect()
        if closed:
            self.logger.info("overlay_dismissed")
        else:
            self.logger.warning("overlay_still_visible")
        return closed

    async def dismiss_credential_prompt(
        self, texts: Sequence[str] = CREDENTIAL_PROMPT_TEXTS, max_depth: int = 5
    ) -> bool:
        """Close a browser password warning, searching inside shadow roots."""
        try:
            button = await self.session.deep_find(texts, max_depth=max_depth)
        except Exception as e:
            self.logger.debug("credential_prompt_search_failed", error=str(e))
            return False
        if button is None:
            return False
        clicked = await self.clicks.click_when_clickable(
            element=button, timeout=2.0, max_attempts=1, op_id="credential_prompt"
        )
        if clicked:
            self.logger.info("credential_prompt_dismissed")
        return clicked


class PopupMonitor:
    """Background task that keeps dismissing overlays during a slow step.

    Use as ``async with PopupMonitor(handler):``. The task is stopped through
    an Event and awaited on exit, so it never outlives the step or scraper.
    """

    def __init__(
        self,
        handler: OverlayHandler,
        duration: float = 10.0,
        interval: float = 0.05,
        logger: Optional[ScrapingLogger] = None,
    ):
        self.handler = handler
        self.duration = duration
        self.interval = interval
        self.logger = logger or handler.logger
        self.dismissed = 0
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "PopupMonitor":
        if self._task is None:
            self._stop.clear()
            self._task = asyncio.create_task(self._run())
        return self

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.duration
        while not self._stop.is_set() and loop.time() < deadline:
            try:
                if await self.handler.detect():
                    if await self.handler.dismiss():
                        self.dismissed += 1
            except Exception as e:
                self.logger.debug("popup_monitor_iteration_failed", error=str(e))
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        self.logger.debug("popup_monitor_finished", dismissed=self.dismissed)

    async def __aenter__(self) -> "PopupMonitor":
        return self.start()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()
