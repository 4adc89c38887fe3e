"""Satrack portal scraper.

Satrack is a Leaflet map application. A vehicle can be selected from its map
marker, the search box, the side list (virtualized, so only part of it is in
the DOM at once) or a vehicle drop-down. The position is read from the URL,
from data attributes or from the selected Leaflet marker; the remaining
telemetry comes from the info panel text.
"""

import re
from typing import Optional, Tuple

from playwright.async_api import ElementHandle

from models.location import LocationRecord
from scrapers.base.adaptive_wait import LOADING_INDICATORS_ABSENT_SCRIPT
from scrapers.base.base_scraper import BaseScraper
from scrapers.base.exceptions import ConfigurationInvalidError, ExtractionError, TransientOperationError
from scrapers.base.extractor import derive_heading
from utils.scraping_utils import join_reason, normalize_plate, parse_decimal

LOGIN_ERROR_SELECTORS = ".alert-danger, .error-message, #errorMsg, .login-error"
MAP_CONTAINER = ".leaflet-container"
MAP_LINKS = "a[href*='/map'], a[href*='/vehicles'], button[data-target='map']"
MARKERS = ".leaflet-marker-icon, .vehicle-marker, .marker-cluster"
SEARCH_INPUT = "input[placeholder*='Buscar'], input[aria-label*='buscar']"
LIST_ITEM_SELECTORS = ("tr td", ".vehicle-item", ".vehicle-item span", ".vehicle-item div")
LIST_CONTAINERS = (
    "cdk-virtual-scroll-viewport, .virtual-scroll, .vehicle-list, .list-container, "
    ".vehicles-list"
)
VEHICLE_SELECT = "select[id*='vehicle'], select[name*='vehicle']"
INFO_PANEL = ".vehicle-info-panel, .vehicle-details, .info-window, .popup-content"

MAX_SCROLL_STEPS = 20

FIND_MARKER_SCRIPT = """
(target) => {
    const norm = s => (s || '').replace(/\\s+/g, ' ').trim().toUpperCase();
    for (const el of document.querySelectorAll('.leaflet-marker-icon[title], .vehicle-marker[data-plate]')) {
        if (norm(el.getAttribute('title')) === target || norm(el.getAttribute('data-plate')) === target) {
            return el;
        }
    }
    return null;
}
"""

SCROLL_LIST_SCRIPT = """
(selector) => {
    const list = document.querySelector(selector);
    if (!list) return 'missing';
    const before = list.scrollTop;
    list.scrollTop = before + Math.max(list.clientHeight * 0.8, 50);
    return list.scrollTop > before ? 'scrolled' : 'end';
}
"""

SELECT_OPTION_SCRIPT = """
([selector, target]) => {
    const norm = s => (s || '').replace(/\\s+/g, ' ').trim().toUpperCase();
    for (const select of document.querySelectorAll(selector)) {
        for (const option of select.options) {
            if (norm(option.text) === target || norm(option.value) === target) {
                select.value = option.value;
                select.dispatchEvent(new Event('change', {bubbles: true}));
                return true;
            }
        }
    }
    return false;
}
"""

VISIBLE_PLATES_SCRIPT = """
() => {
    const norm = s => (s || '').replace(/\\s+/g, ' ').trim();
    const plates = new Set();
    document.querySelectorAll('.leaflet-marker-icon[title]').forEach(el => plates.add(norm(el.getAttribute('title'))));
    document.querySelectorAll('.vehicle-marker[data-plate]').forEach(el => plates.add(norm(el.getAttribute('data-plate'))));
    document.querySelectorAll('.vehicle-item').forEach(el => plates.add(norm(el.innerText).split(' ')[0]));
    document.querySelectorAll("select[id*='vehicle'] option, select[name*='vehicle'] option")
        .forEach(el => { if (el.value) plates.add(norm(el.text)); });
    plates.delete('');
    return Array.from(plates);
}
"""

DATA_COORDINATES_SCRIPT = """
() => {
    for (const el of document.querySelectorAll('[data-lat], [data-latitude]')) {
        const lat = el.getAttribute('data-lat') || el.getAttribute('data-latitude');
        const lng = el.getAttribute('data-lng') || el.getAttribute('data-longitude') || el.getAttribute('data-lon');
        if (lat && lng) return [parseFloat(lat), parseFloat(lng)];
    }
    return null;
}
"""

LEAFLET_SELECTED_MARKER_SCRIPT = """
() => {
    let map = null;
    for (const key in window) {
        try {
            const candidate = window[key];
            if (candidate && typeof candidate === 'object' && candidate._layers && candidate._leaflet_id) {
                map = candidate; break;
            }
        } catch (e) {}
    }
    if (!map) return null;
    for (const key in map._layers) {
        const layer = map._layers[key];
        if (!layer || !layer._icon || !layer._latlng) continue;
        const cls = layer._icon.className || '';
        if (cls.includes('selected') || cls.includes('active') || Number(layer._icon.style.zIndex) > 1000) {
            return [layer._latlng.lat, layer._latlng.lng];
        }
    }
    return null;
}
"""

_URL_LAT = re.compile(r"[?&#]lat=(-?\d+(?:\.\d+)?)")
_URL_LNG = re.compile(r"[?&#](?:lng|lon)=(-?\d+(?:\.\d+)?)")

SATRACK_PATTERNS = {
    "timestamp": r"Fecha[^:\n]*:[ \t]*([^\n]+)",
    "latitude": r"Lat(?:itud)?[^\d\n-]*(-?\d+\.?\d*)",
    "longitude": r"Lon(?:gitud)?[^\d\n-]*(-?\d+\.?\d*)",
    "speed": r"Velocidad[^\d\n]*([\d.,]+)",
    "driver": r"Conductor[^:\n]*:[ \t]*([^\n]*)",
    "georeference": r"(?:Direcci[oó]n|Ubicaci[oó]n)[^:\n]*:[ \t]*([^\n]*)",
    "in_zone": r"(?:Zona|[ÁA]rea)[^:\n]*:[ \t]*([^\n]*)",
    "detention_time": r"(?:Detenido|Parada|Detenci[oó]n)[^:\n]*:[ \t]*([^\n]*)",
    "distance_traveled": r"(?:Distancia|Recorrido|Od[oó]metro)[^:\n]*:[ \t]*([\d.,]+)",
    "temperature": r"Temp(?:eratura)?[^:\n]*:[ \t]*(-?[\d.,]+)",
    "heading": r"(?:[ÁA]ngulo|Rumbo|Heading)[^:\n]*:[ \t]*([^\n°]*)",
    "reason": r"(?:Estado|Evento|Motivo|Status)[^:\n]*:[ \t]*([^\n]*)",
}


def coordinates_from_url(url: str) -> Optional[Tuple[float, float]]:
    """Read ``lat=`` and ``lng=``/``lon=`` query values from a map URL."""
    lat = _URL_LAT.search(url or "")
    lng = _URL_LNG.search(url or "")
    if not lat or not lng:
        return None
    return float(lat.group(1)), float(lng.group(1))


class SatrackScraper(BaseScraper):
    """Scraper for the Satrack portal."""

    provider_key = "satrack"
    provider_name = "Satrack"

    username_selector = "#txt_login_username"
    password_selector = "#txt_login_password"
    submit_selector = "#btn_login_login"
    post_login_selectors = (".leaflet-container", ".sidebar-menu", ".user-panel")
    extractor_patterns = SATRACK_PATTERNS

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.selection_strategy: Optional[str] = None
        self._panel_rescued = False

    async def after_submit(self) -> None:
        """Clear the browser password warning and wait for the map shell."""
        await self.overlays.dismiss_credential_prompt()
        await self.waits.wait_for_page_settled()
        await self.waits.wait_for_pending_requests()
        await self.clicks.check_page_health("post_login")

    async def login_rejected(self) -> bool:
        for element in await self.session.query_all(LOGIN_ERROR_SELECTORS):
            if await element.is_visible():
                message = (await element.inner_text()).strip()
                self.logger.warning("login_error_message", persist=True, message=message)
                return True
        return False

    async def has_success_marker(self) -> bool:
        url = self.session.url.lower()
        return "/map" in url or "/dashboard" in url

    async def navigate_to_vehicles(self) -> None:
        """Open the map view if needed and wait for vehicle markers."""
        self.session.switch_to_default()
        await self.clicks.check_page_health("navigate_to_vehicles")

        if not await self.waits.wait_for_visible(MAP_CONTAINER, "map_section_check", timeout=0.5):
            if not await self.clicks.click_when_clickable(MAP_LINKS, op_id="map_link"):
                raise TransientOperationError("Map or vehicles link not found")
            if not await self.waits.wait_for_visible(MAP_CONTAINER, "map_loaded", timeout=10.0):
                raise TransientOperationError("Map section did not load")

        if not await self.waits.wait_for_visible(MARKERS, "map_markers_loaded", timeout=5.0):
            self.logger.warning("map_markers_not_loaded", persist=True)
        await self.overlays.dismiss()

    async def locate_vehicle(self, plate: str) -> None:
        """Select the vehicle, escalating through the portal's lookup surfaces."""
        target = normalize_plate(plate)
        strategies = (
            ("marker", self._find_marker),
            ("search", self._search_and_find),
            ("virtual_list", self._scroll_list_for),
            ("sweep", self._sweep_for),
        )
        for name, strategy in strategies:
            element = await strategy(target)
            if element is None:
                continue
            if await self.clicks.click_when_clickable(
                element=element, max_attempts=2, op_id=f"select_vehicle:{name}"
            ):
                self.selection_strategy = name
                self.logger.info("vehicle_selected", persist=True, plate=plate, strategy=name)
                return
            self.logger.debug("vehicle_click_failed", strategy=name)

        if await self._select_from_dropdown(target):
            self.selection_strategy = "dropdown"
            self.logger.info("vehicle_selected", persist=True, plate=plate, strategy="dropdown")
            return

        plates = await self.session.evaluate(VISIBLE_PLATES_SCRIPT) or []
        raise ConfigurationInvalidError(plate, plates)

    async def _query_script(self, script: str, arg) -> Optional[ElementHandle]:
        handle = await self.session.context.evaluate_handle(script, arg)
        element = handle.as_element()
        if element is None:
            await handle.dispose()
        return element

    async def _find_marker(self, target: str) -> Optional[ElementHandle]:
        return await self._query_script(FIND_MARKER_SCRIPT, target)

    async def _search_and_find(self, target: str) -> Optional[ElementHandle]:
        result = await self.waits.wait_for_element(
            SEARCH_INPUT, "search_input", require_interactable=True, timeout=2.0
        )
        if not result:
            return None
        await result.element.fill(target)
        await result.element.press("Enter")
        await self.waits.wait_for_script(
            LOADING_INDICATORS_ABSENT_SCRIPT, "search_filter_complete", timeout=5.0
        )
        return await self._find_marker(target) or await self.clicks.find_by_exact_text(
            LIST_ITEM_SELECTORS, target
        )

    async def _scroll_list_for(self, target: str) -> Optional[ElementHandle]:
        """Scroll the virtualized side list in bounded steps looking for the plate."""
        for step in range(MAX_SCROLL_STEPS):
            element = await self.clicks.find_by_exact_text(LIST_ITEM_SELECTORS, target)
            if element is not None:
                return element
            state = await self.session.evaluate(SCROLL_LIST_SCRIPT, LIST_CONTAINERS)
            if state != "scrolled":
                self.logger.debug("vehicle_list_scroll_stopped", state=state, steps=step)
                return None
            await self.waits.wait_for_script(
                LOADING_INDICATORS_ABSENT_SCRIPT, "vehicle_list_render", timeout=1.0
            )
        return None

    async def _sweep_for(self, target: str) -> Optional[ElementHandle]:
        return await self.clicks.sweep_for_text(target)

    async def _select_from_dropdown(self, target: str) -> bool:
        if not await self.session.query(VEHICLE_SELECT):
            return False
        if not await self.session.evaluate(SELECT_OPTION_SCRIPT, [VEHICLE_SELECT, target]):
            return False
        await self.waits.wait_for_script(
            LOADING_INDICATORS_ABSENT_SCRIPT, "vehicle_selection_complete", timeout=5.0
        )
        return True

    async def extract_detail(self, plate: str) -> LocationRecord:
        """Read the info panel, refreshing the list once if it never shows."""
        panel = await self.waits.wait_for_element(INFO_PANEL, "info_panel")
        if not panel and not self._panel_rescued:
            self._panel_rescued = True
            self.logger.info("info_panel_rescue_refresh", plate=plate)
            await self.session.page.reload()
            await self.waits.wait_for_page_settled()
            await self.locate_vehicle(plate)
            panel = await self.waits.wait_for_element(INFO_PANEL, "info_panel_retry")
        if not panel:
            raise TransientOperationError("Vehicle information panel did not appear")

        text = await panel.element.inner_text()
        coordinates = await self._read_coordinates(text)
        if coordinates is None:
            raise ExtractionError("Coordinates not found for selected vehicle", raw_text=text)

        heading_value = self.extractor.find("heading", text)
        heading = (
            int(parse_decimal(heading_value))
            if heading_value and any(ch.isdigit() for ch in heading_value)
            else derive_heading(text=text)
        )
        record = self.extract_record(text, plate, heading=heading, coordinates=coordinates)
        reason = join_reason(
            (
                ("Estado", record.reason),
                ("Conductor", record.driver),
                ("Ubicación", record.georeference),
                ("Zona", record.in_zone),
                ("Velocidad", f"{record.speed:g} km/h" if record.speed else None),
                ("Tiempo Detenido", record.detention_time if record.detention_time != "0" else None),
                ("Distancia", f"{record.distance_traveled:g} km" if record.distance_traveled else None),
                ("Temperatura", f"{record.temperature:g} °C" if record.temperature else None),
            )
        )
        return record.model_copy(update={"reason": reason})

    async def _read_coordinates(self, panel_text: str) -> Optional[Tuple[float, float]]:
        """URL query, then data attributes, then the selected Leaflet marker, then panel text."""
        coordinates = coordinates_from_url(self.session.url)
        if coordinates:
            self.logger.debug("coordinates_from_url")
            return coordinates

        for name, script in (
            ("data_attributes", DATA_COORDINATES_SCRIPT),
            ("leaflet_marker", LEAFLET_SELECTED_MARKER_SCRIPT),
        ):
            try:
                value = await self.session.evaluate(script)
            except Exception as e:
                self.logger.debug("coordinate_read_failed", source=name, error=str(e))
                continue
            if value and len(value) == 2 and None not in value:
                self.logger.debug("coordinates_found", source=name)
                return float(value[0]), float(value[1])

        latitude = self.extractor.find("latitude", panel_text)
        longitude = self.extractor.find("longitude", panel_text)
        if latitude and longitude:
            return float(latitude), float(longitude)
        return None
