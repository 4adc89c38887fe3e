"""Detektor GPS (Skytrack) portal scraper.

After login the portal opens Skytrack in a new tab. The "Ultimo Punto"
report comes in two flavours: a classic ExtJS table, and an Angular "Beta"
table that opens in yet another tab. Both end on an OpenLayers map where the
vehicle icon is clicked to show the telemetry popup.
"""

import asyncio
import time
from typing import Optional, Tuple

from playwright.async_api import ElementHandle, Page

from models.location import LocationRecord
from scrapers.base.base_scraper import BaseScraper
from scrapers.base.exceptions import ConfigurationInvalidError, TransientOperationError
from scrapers.base.extractor import derive_heading

SKYTRACK_BUTTON_SELECTORS = (
    "#idBtnProductSkytrack",
    "#idBtnProductSkytrack-btnInnerEl",
    "//a[contains(@id,'idBtnProductSkytrack')]",
    "//a[contains(@class,'hexa_btk_si')]",
    "//span[contains(text(),'ACCEDER')]",
)

MAIN_MENU = "//td[contains(@class,'myMenu') and not(ancestor::*[contains(@style,'display: none')])]"
REPORTS_LINK = "//a[normalize-space(text())='Informes']"
LATEST_POINT_ANY = "//a[contains(normalize-space(.),'Ultimo Punto')]"
LATEST_POINT_BETA = "//a[contains(normalize-space(.),'Ultimo Punto (Beta)')]"
LATEST_POINT_CLASSIC = "//a[normalize-space(.)='Ultimo Punto']"
REPORT_FRAME = "iframe[id^='ttab']"

CLASSIC_TABLE_CELLS = "table.rounded-corner td"
CLASSIC_TABLE_READY_SCRIPT = """
() => {
    const table = document.querySelector('table.rounded-corner');
    return !!table && table.offsetParent !== null && table.querySelectorAll('tr').length > 1;
}
"""
CLASSIC_PLATES_SCRIPT = """
() => Array.from(document.querySelectorAll('table.rounded-corner tr'))
    .slice(1)
    .map(row => row.querySelector('td'))
    .filter(Boolean)
    .map(td => (td.innerText || '').trim())
    .filter(Boolean)
"""

BETA_ROWS = "tr.ng-star-inserted"
BETA_PLATE_CELLS = "tr.ng-star-inserted td:nth-child(3)"
BETA_COMPASS_BUTTON = "button.ui-button-danger[icon='pi pi-compass']"
BETA_REFRESH_BUTTON = "button.ui-button-danger"
BETA_TABLE_STATE_SCRIPT = """
() => ({
    table: !!document.querySelector('p-table'),
    loading: !!document.querySelector('.ui-table-loading')?.offsetParent,
    rows: document.querySelectorAll('tr.ng-star-inserted').length
})
"""
# Plate is the third centred cell of each row
BETA_FIND_ROW_SCRIPT = """
(target) => {
    const norm = s => (s || '').replace(/\\s+/g, ' ').trim().toUpperCase();
    for (const row of document.querySelectorAll('tr.ng-star-inserted')) {
        const cells = row.querySelectorAll('td.text-center.ng-star-inserted div.ng-star-inserted');
        if (cells.length > 2 && norm(cells[2].innerText) === target) return row;
    }
    return null;
}
"""
BETA_NOT_LOADING_SCRIPT = "() => !document.querySelector('.ui-table-loading')?.offsetParent"
SVG_PRESENT_SCRIPT = "() => document.querySelectorAll('svg').length > 0"

FIND_VEHICLE_ICON_SCRIPT = """
() => {
    const sizes = [['35', '35'], ['16', '14'], ['20', '20']];
    for (const img of document.querySelectorAll('svg image')) {
        const w = img.getAttribute('width');
        const h = img.getAttribute('height');
        const href = (img.getAttribute('href') || img.getAttribute('xlink:href') || '').toLowerCase();
        const rect = img.getBoundingClientRect();
        if (sizes.some(([sw, sh]) => sw === w && sh === h)
            && (href.includes('carro') || href.includes('camion'))
            && rect.width > 0 && rect.height > 0) {
            return img;
        }
    }
    return null;
}
"""
ICON_ATTRIBUTES_SCRIPT = """
(el) => {
    const rect = el.getBoundingClientRect();
    return {
        transform: el.getAttribute('transform') || el.style.transform || '',
        href: el.getAttribute('href') || el.getAttribute('xlink:href') || '',
        top: rect.top, bottom: rect.bottom, left: rect.left, right: rect.right,
        viewportWidth: window.innerWidth, viewportHeight: window.innerHeight
    };
}
"""
ZOOM_OUT_SCRIPT = """
() => {
    let map = null;
    for (const key in window) {
        try {
            if (window[key] && window[key].CLASS_NAME === 'OpenLayers.Map') { map = window[key]; break; }
        } catch (e) {}
    }
    if (!map) return false;
    map.zoomTo(map.getZoom() - 2);
    const center = new OpenLayers.LonLat(-75.0, 4.5);
    center.transform(new OpenLayers.Projection('EPSG:4326'), map.getProjectionObject());
    map.setCenter(center);
    return true;
}
"""
PANEL_LATEST_POINT_BUTTON = "//a[contains(@class,'button')][.//span[text()='Ultimo Punto']]"
PANEL_TOGGLE = "#ext-gen17"
MAP_CONTAINER = "div.olMap"
POPUP_CONTENT = "div.olFramedCloudPopupContent"

EDGE_MARGIN = 100
MAX_DRAG_DISTANCE = 150
BETA_POLL_SECONDS = 10.0
BETA_REFRESH_AFTER_ROWS = 5.0
BETA_FORCED_REFRESH_AT = 8.0


class DetektorScraper(BaseScraper):
    """Scraper for the Detektor GPS portal."""

    provider_key = "detektor"
    provider_name = "Detektor"

    username_selector = "input[name='username'].form-control"
    password_selector = "input[name='password'].form-control"
    submit_selector = "#initSession"
    post_login_selectors = ("td.myMenu", "div.myMenu", ".myMenu")

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.is_beta_flow = False
        self._portal_page: Optional[Page] = None

    async def after_submit(self) -> None:
        """Open Skytrack from the product launcher and move to its tab."""
        await self.waits.wait_for_page_settled()
        await self.overlays.dismiss()

        button = await self._find_skytrack_button()
        if button is None:
            self.logger.warning("skytrack_button_not_found", persist=True)
            return

        windows = self.session.window_count
        if not await self.clicks.click_when_clickable(element=button, op_id="skytrack_button"):
            self.logger.warning("skytrack_button_click_failed", persist=True)
            return
        if await self.session.switch_to_latest_window(windows, timeout=15.0):
            self.logger.debug("skytrack_tab_opened", url=self.session.url)
        self._portal_page = self.session.page

        await self.waits.wait_for_page_settled(
            "post_login", timeout=float(self.provider_settings.timeout_seconds)
        )
        await self.clicks.check_page_health("post_login")

    async def _find_skytrack_button(self) -> Optional[ElementHandle]:
        for index, selector in enumerate(SKYTRACK_BUTTON_SELECTORS):
            result = await self.waits.wait_for_element(
                selector,
                "skytrack_button",
                require_interactable=True,
                timeout=None if index == 0 else 2.0,
            )
            if result:
                self.logger.debug("skytrack_button_found", selector=selector)
                return result.element
        return None

    async def has_success_marker(self) -> bool:
        url = self.session.url.lower()
        if "skytrack" not in url and "detektor" not in url:
            return False
        return await self.session.evaluate("() => document.readyState === 'complete'")

    async def _return_to_portal_tab(self) -> None:
        if self._portal_page is not None and self.session.page is not self._portal_page:
            await self.session.use_page(self._portal_page, close_others=True)
        self.session.switch_to_default()

    async def navigate_to_vehicles(self) -> None:
        """Expand the main menu and open "Informes"."""
        await self._return_to_portal_tab()
        await self.clicks.check_page_health("navigate_to_vehicles")
        await self.overlays.dismiss()

        reports = await self.session.query(REPORTS_LINK)
        if reports is None or not await reports.is_visible():
            if not await self.clicks.click_when_clickable(MAIN_MENU, op_id="main_menu"):
                raise TransientOperationError("Main menu could not be clicked")
            expanded = await self.waits.wait_for_element(
                REPORTS_LINK, "reports_link", require_interactable=True
            )
            if not expanded:
                raise TransientOperationError(f"Main menu did not expand: {expanded.reason}")

        if not await self.clicks.click_when_clickable(REPORTS_LINK, op_id="reports_link"):
            raise TransientOperationError("Reports link could not be clicked")

        latest = await self.waits.wait_for_element(
            LATEST_POINT_ANY, "latest_point_link", require_interactable=True
        )
        if not latest:
            raise TransientOperationError(f"Latest point report not offered: {latest.reason}")

    async def _find_latest_point_link(self) -> Tuple[Optional[ElementHandle], bool]:
        """Prefer the Beta report when the portal offers it."""
        for selector, is_beta in ((LATEST_POINT_BETA, True), (LATEST_POINT_CLASSIC, False)):
            element = await self.session.query(selector)
            if element is not None and await element.is_visible():
                return element, is_beta
        return None, False

    async def locate_vehicle(self, plate: str) -> None:
        await self._return_to_portal_tab()
        link, is_beta = await self._find_latest_point_link()
        if link is None:
            await self.navigate_to_vehicles()
            link, is_beta = await self._find_latest_point_link()
        if link is None:
            raise TransientOperationError("Latest point report link not available")

        self.is_beta_flow = is_beta
        self.logger.info("report_flow_selected", flow="beta" if is_beta else "classic")

        async with self.monitor_popups(duration=BETA_POLL_SECONDS):
            if self.is_beta_flow:
                await self._locate_in_beta_report(plate, link)
            else:
                await self._locate_in_classic_report(plate, link)

    async def _enter_report_frame(self, require_selector: Optional[str], op_id: str) -> bool:
        async def check() -> bool:
            self.session.switch_to_default()
            return await self.session.switch_to_frame(REPORT_FRAME, require_selector)

        return await self.waits.wait_for_condition(check, op_id, timeout=10.0)

    async def _locate_in_classic_report(self, plate: str, link: ElementHandle) -> None:
        if not await self.clicks.click_when_clickable(
            LATEST_POINT_CLASSIC, element=link, op_id="latest_point_classic"
        ):
            raise TransientOperationError("Latest point link could not be clicked")

        try:
            if not await self._enter_report_frame("table.rounded-corner", "classic_report_frame"):
                raise TransientOperationError("Report iframe not found")
            if not await self.waits.wait_for_script(
                CLASSIC_TABLE_READY_SCRIPT, "classic_table_rows", timeout=10.0
            ):
                raise TransientOperationError("Report table has no rows")

            delay = 0.5
            cell_seen = False
            for attempt in range(3):
                cell = await self.clicks.find_by_exact_text([CLASSIC_TABLE_CELLS], plate)
                if cell is not None:
                    cell_seen = True
                    if await self.clicks.click_when_clickable(
                        element=cell, timeout=5.0, max_attempts=1, op_id="classic_plate_cell"
                    ):
                        self.logger.info("vehicle_selected", persist=True, plate=plate, flow="classic")
                        return
                if attempt < 2:
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, 2.0)

            if not cell_seen:
                plates = await self.session.evaluate(CLASSIC_PLATES_SCRIPT) or []
                raise ConfigurationInvalidError(plate, plates)
            raise TransientOperationError(f"Plate {plate} found but could not be selected")
        finally:
            self.session.switch_to_default()

    async def _locate_in_beta_report(self, plate: str, link: ElementHandle) -> None:
        windows = self.session.window_count
        await self.clicks.click_when_clickable(
            LATEST_POINT_BETA, element=link, op_id="latest_point_beta"
        )
        if not await self.session.switch_to_latest_window(windows, timeout=5.0):
            self.logger.debug("beta_tab_not_opened_retrying_click")
            await self.clicks.click_when_clickable(LATEST_POINT_BETA, op_id="latest_point_beta")
            if not await self.session.switch_to_latest_window(windows, timeout=10.0):
                raise TransientOperationError("Beta report tab did not open")

        if not await self._enter_report_frame(None, "beta_report_frame"):
            raise TransientOperationError("Beta report iframe not found")
        app = await self.waits.wait_for_element("app-root", "beta_app_root", timeout=10.0)
        if not app:
            raise TransientOperationError("Beta report application did not load")

        row = await self._poll_beta_table(plate)
        if row is None:
            plates = await self.clicks.collect_texts(BETA_PLATE_CELLS)
            raise ConfigurationInvalidError(plate, plates)

        for attempt in range(3):
            if not await self.waits.wait_for_script(
                BETA_NOT_LOADING_SCRIPT, "beta_loading_overlay", timeout=2.0
            ):
                self.logger.debug("beta_loading_overlay_present", attempt=attempt + 1)
                continue
            button = await row.query_selector(BETA_COMPASS_BUTTON)
            if button is None:
                row = await self._find_beta_row(plate)
                if row is None:
                    break
                continue
            if await self.clicks.click_when_clickable(
                element=button, max_attempts=1, op_id="beta_compass_button"
            ):
                self.logger.info("vehicle_selected", persist=True, plate=plate, flow="beta")
                await self.waits.wait_for_script(SVG_PRESENT_SCRIPT, "beta_map_svg", timeout=10.0)
                return
            await asyncio.sleep(0.5)

        raise TransientOperationError(f"Compass button for {plate} could not be clicked")

    async def _find_beta_row(self, plate: str) -> Optional[ElementHandle]:
        handle = await self.session.context.evaluate_handle(
            BETA_FIND_ROW_SCRIPT, plate.strip().upper()
        )
        element = handle.as_element()
        if element is None:
            await handle.dispose()
        return element

    async def _poll_beta_table(self, plate: str) -> Optional[ElementHandle]:
        """Poll the lazily populated table, refreshing it once if the plate is late."""
        start = time.monotonic()
        rows_seen_at: Optional[float] = None
        refreshed = False

        while time.monotonic() - start < BETA_POLL_SECONDS:
            now = time.monotonic()
            try:
                state = await self.session.evaluate(BETA_TABLE_STATE_SCRIPT)
            except Exception as e:
                self.logger.debug("beta_table_check_failed", error=str(e))
                state = {"rows": 0, "loading": True}

            if state["rows"] > 0 and not state["loading"]:
                row = await self._find_beta_row(plate)
                if row is not None:
                    return row
                rows_seen_at = rows_seen_at or now

            elapsed = now - start
            due = (rows_seen_at is not None and now - rows_seen_at >= BETA_REFRESH_AFTER_ROWS) or (
                elapsed >= BETA_FORCED_REFRESH_AT
            )
            if not refreshed and due:
                refreshed = True
                self.logger.info("beta_table_refresh", plate=plate, elapsed=f"{elapsed:.1f}s")
                await self.clicks.click_when_clickable(
                    BETA_REFRESH_BUTTON, timeout=2.0, max_attempts=1, op_id="beta_refresh"
                )
            await asyncio.sleep(0.1)

        return await self._find_beta_row(plate)

    async def extract_detail(self, plate: str) -> LocationRecord:
        """Click the vehicle icon on the map and parse its popup."""
        try:
            if not await self._enter_map_frame():
                raise TransientOperationError("Map iframe not found")

            icon = await self._find_vehicle_icon()
            if icon is None:
                icon = await self._rescue_map_view()
            if icon is None:
                raise TransientOperationError(f"Icon for {plate} not visible on the map")

            attributes = await icon.evaluate(ICON_ATTRIBUTES_SCRIPT)
            if not await self.clicks.click_when_clickable(element=icon, op_id="vehicle_icon"):
                raise TransientOperationError("Vehicle icon could not be clicked")

            popup = await self._find_popup(attributes)
            if popup is None:
                raise TransientOperationError("Vehicle popup did not appear")

            text = await popup.inner_text()
            heading = derive_heading(attributes.get("transform"), attributes.get("href"), text)
            return self.extract_record(text, plate, heading)
        finally:
            self.session.switch_to_default()

    async def _enter_map_frame(self) -> bool:
        for attempt in range(3):
            if await self._enter_report_frame("svg", "map_frame"):
                return True
            self.logger.debug("map_frame_not_ready", attempt=attempt + 1)
            await asyncio.sleep(1.0)
        return False

    async def _find_vehicle_icon(self, timeout: Optional[float] = None) -> Optional[ElementHandle]:
        found = {}

        async def check() -> bool:
            handle = await self.session.context.evaluate_handle(FIND_VEHICLE_ICON_SCRIPT)
            element = handle.as_element()
            if element is None:
                await handle.dispose()
                return False
            found["icon"] = element
            return True

        if await self.waits.wait_for_condition(check, "vehicle_icon", timeout=timeout):
            return found["icon"]
        return None

    async def _rescue_map_view(self) -> Optional[ElementHandle]:
        """Collapse the report panel and zoom out so an edge vehicle becomes visible."""
        self.logger.info("vehicle_icon_rescue_started")
        button = await self.session.query(PANEL_LATEST_POINT_BUTTON)
        if button is not None:
            await self.clicks.click_when_clickable(
                element=button, max_attempts=1, op_id="panel_latest_point"
            )
        toggle = await self.session.query(PANEL_TOGGLE)
        if toggle is not None:
            await self.clicks.click_when_clickable(element=toggle, max_attempts=1, op_id="panel_toggle")
        try:
            zoomed = await self.session.evaluate(ZOOM_OUT_SCRIPT)
            self.logger.debug("map_zoomed_out", zoomed=zoomed)
        except Exception as e:
            self.logger.warning("map_zoom_out_failed", error=str(e))
        await asyncio.sleep(1.0)
        return await self._find_vehicle_icon(timeout=5.0)

    async def _find_popup(self, icon_position: dict) -> Optional[ElementHandle]:
        """Wait for the info popup, dragging the map when the icon hugs an edge."""
        result = await self.waits.wait_for_element(
            POPUP_CONTENT, "vehicle_popup", require_interactable=True
        )
        if result and (await result.element.inner_text()).strip():
            return result.element

        for attempt in range(3):
            popup = await self.session.query(POPUP_CONTENT)
            if popup is not None and await popup.is_visible():
                if (await popup.inner_text()).strip():
                    return popup
            elif popup is not None:
                await self._drag_map_towards_icon(icon_position, attempt)
            await asyncio.sleep(1.0)
        return None

    async def _drag_map_towards_icon(self, icon: dict, attempt: int) -> None:
        distance = min(EDGE_MARGIN * (attempt + 1), MAX_DRAG_DISTANCE)
        width, height = icon["viewportWidth"], icon["viewportHeight"]
        if icon["top"] < EDGE_MARGIN:
            offset = (0, distance)
        elif icon["bottom"] > height - EDGE_MARGIN:
            offset = (0, -distance)
        elif icon["left"] < EDGE_MARGIN:
            offset = (distance, 0)
        elif icon["right"] > width - EDGE_MARGIN:
            offset = (-distance, 0)
        else:
            return

        map_element = await self.session.query(MAP_CONTAINER)
        box = await map_element.bounding_box() if map_element else None
        if not box:
            return
        x, y = box["x"] + box["width"] / 2, box["y"] + box["height"] / 2
        mouse = self.session.page.mouse
        self.logger.debug("dragging_map", offset=offset, attempt=attempt + 1)
        await mouse.move(x, y)
        await mouse.down()
        await mouse.move(x + offset[0], y + offset[1], steps=10)
        await mouse.up()
