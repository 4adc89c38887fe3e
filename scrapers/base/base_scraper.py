"""Base tracking scraper: the shared login/lookup/dispose state machine."""

import asyncio
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from functools import wraps
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple, Type

from config import ProviderSettings, Settings, get_settings
from models.location import LocationRecord
from scrapers.base.adaptive_wait import AdaptiveWait
from scrapers.base.browser_session import BrowserSession
from scrapers.base.exceptions import (
    ErrorKind,
    NotAuthenticatedError,
    ServerDownError,
    TrackingError,
    TransientOperationError,
)
from scrapers.base.extractor import LocationRecordExtractor
from scrapers.base.interactions import Interactions, as_server_down
from scrapers.base.overlays import OverlayHandler, PopupMonitor
from utils.logging import ScrapingLogger
from utils.scraping_utils import calculate_retry_delay


def log_execution_time(func):
    """Decorator to log coroutine execution time on the instance logger."""

    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        start_time = time.monotonic()
        self.logger.debug(f"entering_{func.__name__}")
        try:
            result = await func(self, *args, **kwargs)
        except Exception as e:
            self.logger.debug(
                f"{func.__name__}_raised",
                execution_time=f"{time.monotonic() - start_time:.3f}s",
                error_type=type(e).__name__,
            )
            raise
        self.logger.debug(
            f"exiting_{func.__name__}",
            execution_time=f"{time.monotonic() - start_time:.3f}s",
            result_type=type(result).__name__,
        )
        return result

    return wrapper


class BaseScraper(ABC):
    """Common skeleton for provider portals.

    Subclasses provide selectors and the three lookup steps
    (``navigate_to_vehicles``, ``locate_vehicle``, ``extract_detail``) and may
    override the login hooks. Waiting, clicking, overlay handling and text
    extraction are composed collaborators owned by each instance.
    """

    provider_key: str = ""
    provider_name: str = ""

    username_selector: str = ""
    password_selector: str = ""
    submit_selector: str = ""
    post_login_selectors: Sequence[str] = ()
    login_url_markers: Sequence[str] = ("login", "signin")
    overlay_close_selectors: Sequence[str] = ()
    extractor_patterns: Optional[Dict[str, str]] = None

    login_verify_attempts = 3
    step_retry_delay = 1.0

    def __init__(
        self,
        provider_settings: Optional[ProviderSettings] = None,
        settings: Optional[Settings] = None,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        session: Optional[BrowserSession] = None,
        headless: Optional[bool] = None,
    ):
        """Initialize the scraper.

        Args:
            provider_settings: Portal settings, defaults to the configured ones
            settings: Application settings
            user_id: Operator identity attached to every log entry
            ip_address: Origin IP attached to every log entry
            session: Pre-built browser session (tests inject fakes here)
            headless: Override for the configured headless flag
        """
        self.settings = settings or get_settings()
        self.provider_settings = (
            provider_settings or self.settings.providers[self.provider_key]
        )
        self.logger = ScrapingLogger(
            f"scraper.{self.provider_key or 'generic'}",
            user_id=user_id,
            ip_address=ip_address,
            context=self.provider_settings.name,
        )

        browser_settings = self.settings.browser
        if headless is not None:
            browser_settings = browser_settings.model_copy(update={"headless": headless})
        self.session = session or BrowserSession(browser_settings, self.logger)
        self.waits = AdaptiveWait(self.session, self.logger, self.settings.waits)
        self.clicks = Interactions(self.session, self.waits, self.logger)
        self.overlays = OverlayHandler(
            self.session, self.clicks, self.logger, self.overlay_close_selectors
        )
        self.extractor = LocationRecordExtractor(self.extractor_patterns)

        self.is_authenticated = False
        self.current_plate: Optional[str] = None
        self.max_step_attempts = self.provider_settings.max_retry_attempts
        self._monitors: List[PopupMonitor] = []
        self._disposed = False

        self.logger.debug(
            "scraper_init",
            provider=self.provider_settings.name,
            base_url=self.provider_settings.base_url,
            max_step_attempts=self.max_step_attempts,
        )

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.dispose()

    async def initialize(self) -> None:
        """Start the browser. Raises BrowserInitializationError on failure."""
        if not self.session.is_started:
            await self.session.start()

    @log_execution_time
    async def login(self, username: str, password: str, plate: Optional[str] = None) -> bool:
        """Authenticate against the portal.

        Returns False for empty credentials (without touching the browser) and
        for any authentication failure. Starts the browser if needed; only
        BrowserInitializationError and ServerDownError propagate.
        """
        username = (username or "").strip()
        password = (password or "").strip()
        if not username or not password:
            self.logger.warning("login_rejected_empty_credentials", persist=True, plate=plate)
            return False
        if not self.provider_settings.base_url:
            self.logger.error("login_rejected_missing_base_url", provider=self.provider_settings.name)
            return False

        # Start failures propagate as BrowserInitializationError
        await self.initialize()

        self.current_plate = plate
        self.logger.action("login", username=username, plate=plate)
        try:
            await self.session.goto(self.provider_settings.base_url)
            await self.clicks.check_page_health("login_page")

            if not await self.submit_credentials(username, password):
                return False
            await self.after_submit()
            if await self.login_rejected():
                self.logger.warning("login_rejected_by_portal", persist=True, username=username)
                return False

            for attempt in range(self.login_verify_attempts):
                if await self.verify_login():
                    self.is_authenticated = True
                    self.logger.info("login_succeeded", persist=True, username=username)
                    return True
                self.logger.debug("login_not_yet_confirmed", attempt=attempt + 1)
                await asyncio.sleep(self.step_retry_delay)

            self.logger.warning("login_not_confirmed", persist=True, username=username)
            return False

        except ServerDownError:
            raise
        except Exception as e:
            server_down = as_server_down(e, "login")
            if server_down is not None:
                self.logger.error("login_server_down", error=str(e))
                raise server_down from e
            self.logger.error("login_failed", error=str(e), error_type=type(e).__name__)
            return False

    async def submit_credentials(self, username: str, password: str) -> bool:
        """Fill the login form and submit it."""
        fields = (
            (self.username_selector, username, "login_username"),
            (self.password_selector, password, "login_password"),
        )
        for selector, value, op_id in fields:
            if not await self.clicks.fill(selector, value, op_id=op_id):
                self.logger.warning("login_control_missing", persist=True, selector=selector)
                return False

        if not await self.clicks.click_when_clickable(self.submit_selector, op_id="login_submit"):
            self.logger.warning("login_submit_failed", persist=True, selector=self.submit_selector)
            return False
        return True

    async def after_submit(self) -> None:
        """Hook run after submitting credentials."""
        await self.waits.wait_for_page_settled()

    async def verify_login(self) -> bool:
        """Any of: post-login element, URL left the login page, provider marker."""
        if self.post_login_selectors:
            result = await self.waits.wait_for_element(
                ", ".join(self.post_login_selectors), "post_login_marker", timeout=3.0
            )
            if result:
                return True

        url = self.session.url.lower().rstrip("/")
        base = self.provider_settings.base_url.lower().rstrip("/")
        if url and url != base and not any(marker in url for marker in self.login_url_markers):
            self.logger.debug("login_confirmed_by_url", url=url)
            return True

        return await self.has_success_marker()

    async def has_success_marker(self) -> bool:
        """Provider-specific explicit success signal."""
        return False

    async def login_rejected(self) -> bool:
        """Provider-specific check for a visible "wrong credentials" message."""
        return False

    @log_execution_time
    async def get_vehicle_location(self, plate: str) -> LocationRecord:
        """Navigate, locate the vehicle and extract its current location.

        Raises:
            NotAuthenticatedError: If login has not succeeded
            ServerDownError: If the portal is down at any step
            ConfigurationInvalidError: If the plate is not in this account
            ExtractionError: If the popup has no parseable coordinates
            TransientOperationError: If a step keeps failing, or the overall
                deadline is exceeded
        """
        if not self.is_authenticated:
            raise NotAuthenticatedError(
                "Login must succeed before requesting a location", context={"plate": plate}
            )
        plate = plate.strip()
        self.current_plate = plate
        self.logger.action("get_vehicle_location", plate=plate)

        deadline = self.provider_settings.call_deadline_seconds
        try:
            if deadline:
                return await asyncio.wait_for(self._lookup(plate), timeout=deadline)
            return await self._lookup(plate)
        except asyncio.TimeoutError as e:
            self.logger.error("vehicle_lookup_deadline_exceeded", plate=plate, deadline=deadline)
            raise TransientOperationError(
                f"Lookup for {plate} exceeded {deadline}s", context={"plate": plate}
            ) from e
        except TrackingError as e:
            self.logger.error(
                "vehicle_lookup_failed", plate=plate, kind=e.kind.value, error=str(e)
            )
            raise
        finally:
            await self._stop_monitors()

    async def _lookup(self, plate: str) -> LocationRecord:
        await self.run_step("navigate_to_vehicles", self.navigate_to_vehicles)
        await self.run_step("locate_vehicle", self.locate_vehicle, plate)
        record = await self.run_step("extract_detail", self.extract_detail, plate)
        self.logger.info(
            "vehicle_location_obtained",
            persist=True,
            plate=plate,
            latitude=record.latitude,
            longitude=record.longitude,
        )
        return record

    async def run_step(self, step_name: str, operation, *args, **kwargs) -> Any:
        """Run one state-machine step with bounded local retries.

        Non-transient tracking errors propagate on the first occurrence;
        browser connection errors are reported as ServerDownError.
        """
        last_error: Optional[BaseException] = None

        for attempt in range(self.max_step_attempts):
            try:
                self.logger.debug(
                    "attempting_step",
                    step=step_name,
                    attempt=attempt + 1,
                    max_attempts=self.max_step_attempts,
                )
                result = await operation(*args, **kwargs)
                if attempt > 0:
                    self.logger.info("step_succeeded_after_retry", step=step_name, attempt=attempt + 1)
                return result

            except TrackingError as e:
                if e.kind is not ErrorKind.TRANSIENT:
                    raise
                last_error = e
            except Exception as e:
                server_down = as_server_down(e, step_name)
                if server_down is not None:
                    self.logger.error("step_server_down", step=step_name, error=str(e))
                    raise server_down from e
                last_error = e

            self.logger.warning(
                "step_attempt_failed",
                step=step_name,
                attempt=attempt + 1,
                error=str(last_error),
            )
            if attempt < self.max_step_attempts - 1:
                await asyncio.sleep(calculate_retry_delay(attempt, self.step_retry_delay, 5.0))

        self.logger.error(
            "step_failed_all_attempts",
            step=step_name,
            max_attempts=self.max_step_attempts,
            final_error=str(last_error),
        )
        raise TransientOperationError(
            f"{step_name} failed after {self.max_step_attempts} attempts: {last_error}",
            context={"step": step_name, "plate": self.current_plate},
        ) from last_error

    def monitor_popups(self, duration: float = 10.0, interval: float = 0.05) -> PopupMonitor:
        """Background overlay monitor for a slow step, use with ``async with``."""
        monitor = PopupMonitor(self.overlays, duration=duration, interval=interval)
        self._monitors.append(monitor)
        return monitor

    async def _stop_monitors(self) -> None:
        monitors, self._monitors = self._monitors, []
        for monitor in monitors:
            try:
                await monitor.stop()
            except Exception as e:
                self.logger.warning("popup_monitor_stop_failed", error=str(e))

    def extract_record(
        self,
        text: str,
        plate: str,
        heading: int = 0,
        coordinates: Optional[Tuple[float, float]] = None,
    ) -> LocationRecord:
        return self.extractor.extract(
            text,
            plate,
            heading=heading,
            provider=self.provider_settings.name,
            coordinates=coordinates,
        )

    @abstractmethod
    async def navigate_to_vehicles(self) -> None:
        """Bring the portal to the section where vehicles are listed or mapped."""

    @abstractmethod
    async def locate_vehicle(self, plate: str) -> None:
        """Select the vehicle whose plate equals ``plate``.

        Raises ConfigurationInvalidError listing the visible plates when the
        plate is not in the account.
        """

    @abstractmethod
    async def extract_detail(self, plate: str) -> LocationRecord:
        """Open the selected vehicle's detail and parse it."""

    async def before_dispose(self) -> None:
        """Hook for provider teardown such as logging out."""

    async def dispose(self) -> None:
        """Release the browser. Idempotent and never raises."""
        if self._disposed:
            return
        self._disposed = True
        try:
            await self._stop_monitors()
            if self.is_authenticated and self.session.is_started:
                try:
                    await self.before_dispose()
                except Exception as e:
                    self.logger.warning("provider_teardown_failed", error=str(e))
            await self.session.close()
        except Exception as e:
            self.logger.error("scraper_dispose_failed", error=str(e))
        finally:
            self.is_authenticated = False


@asynccontextmanager
async def create_scraper(
    scraper_class: Type[BaseScraper], *args, **kwargs
) -> AsyncIterator[BaseScraper]:
    """Create a scraper with its browser started and always disposed.

    Args:
        scraper_class: Scraper class to instantiate
        *args: Positional arguments for scraper constructor
        **kwargs: Keyword arguments for scraper constructor

    Yields:
        Initialized scraper instance
    """
    scraper = scraper_class(*args, **kwargs)
    try:
        await scraper.initialize()
        yield scraper
    finally:
        await scraper.dispose()
