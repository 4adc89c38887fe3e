"""Simon Movilidad portal scraper.

The portal lists active vehicles and shows the tracked one on a Leaflet map
after "Rastrear". Clicking the marker opens a popup of dt/dd pairs; "Ver
detalle" leads to a details page whose readonly inputs carry the AVL and CAN
telemetry, labelled through aria-label.
"""

import re
from datetime import datetime
from typing import Dict, Optional, Tuple
from urllib.parse import unquote

from playwright.async_api import ElementHandle
from pydantic import ValidationError

from models.location import LocationRecord
from scrapers.base.base_scraper import BaseScraper
from scrapers.base.exceptions import ConfigurationInvalidError, ExtractionError, TransientOperationError
from scrapers.base.extractor import derive_heading, parse_timestamp
from utils.scraping_utils import join_reason, normalize_plate, parse_decimal

TRACK_BUTTON = "//button[.//span[text()='Rastrear']]"
ACTIVE_VEHICLES_HEADING = "//h1[contains(text(),'Vehículos activos')]"
VEHICLE_MARKER = "div.leaflet-marker-icon.leaflet-zoom-animated.leaflet-interactive[tabindex='0']"
VEHICLE_MARKER_FALLBACK = "div.leaflet-marker-icon:has(img[src*='car.png'])"
ANY_MARKER = "div.leaflet-marker-icon"
LIST_ITEM_SELECTORS = ("li", "tr td", "[class*='vehicle'] span", "[class*='plate']")
POPUP_CONTENT = ".leaflet-popup-content"
DETAILS_LINK = "button a.link-button[href*='/details']"
DETAIL_INPUTS = "input[aria-label]"
LOCATION_INPUT = "input[aria-label='Ubicación']"
LOCATION_BUTTON = "button.absolute.m-8.items-center.text-primary"
POPUP_CLOSE = "img[alt='close'][role='button']"
LOGOUT_BUTTON = "//button[contains(text(),'Cerrar sesión')]"

REASON_MAX_LENGTH = 2000

# Detail labels included in the reason summary, with their unaccented spellings
DETAIL_SUMMARY_KEYS = (
    ("Placa",),
    ("Vin",),
    ("Modelo",),
    ("Compañía", "Compania"),
    ("Cliente",),
    ("Marca",),
    ("Línea", "Linea"),
    ("Velocidad",),
    ("Ángulo", "Angulo"),
    ("Satélite", "Satelite"),
    ("Batería Vehículo", "Bateria Vehiculo"),
    ("Batería Dispositivo", "Bateria Dispositivo"),
    ("Cobertura",),
    ("Odómetro AVL", "Odometro AVL"),
    ("RPM",),
    ("Temperatura Motor",),
    ("Nivel Combustible",),
    ("Combustible Consumido",),
    ("Odómetro CAN", "Odometro CAN"),
)

FIND_TITLED_SCRIPT = """
(target) => {
    const norm = s => (s || '').replace(/\\s+/g, ' ').trim().toUpperCase();
    for (const el of document.querySelectorAll('[title], [aria-label]')) {
        if (norm(el.getAttribute('title')) === target || norm(el.getAttribute('aria-label')) === target) {
            return el;
        }
    }
    return null;
}
"""

POPUP_PAIRS_SCRIPT = """
(popup) => {
    const result = {};
    const terms = popup.querySelectorAll('dt');
    const values = popup.querySelectorAll('dd');
    for (let i = 0; i < terms.length && i < values.length; i++) {
        const key = (terms[i].innerText || '').trim().replace(/:$/, '').trim();
        if (key) result[key] = (values[i].innerText || '').trim();
    }
    return result;
}
"""

DETAIL_INPUTS_SCRIPT = """
() => {
    const result = {};
    for (const input of document.querySelectorAll('input[aria-label]')) {
        const key = (input.getAttribute('aria-label') || '').trim();
        if (key && !(key in result)) result[key] = (input.value || '').trim();
    }
    return result;
}
"""

MARKER_TITLES_SCRIPT = """
() => Array.from(document.querySelectorAll('div.leaflet-marker-icon[title], div.leaflet-marker-icon img[alt]'))
    .map(el => (el.getAttribute('title') || el.getAttribute('alt') || '').trim())
    .filter(Boolean)
"""

MARKER_LATLNG_SCRIPT = """
() => {
    const pane = document.querySelector('.leaflet-map-pane');
    const marker = document.querySelector("div.leaflet-marker-icon.leaflet-zoom-animated.leaflet-interactive[tabindex='0']");
    if (!pane || !pane.leafletMap || !marker || typeof L === 'undefined') return null;
    const match = (marker.style.transform || '').match(/translate3d\\(([^,]+),\\s*([^,]+),/);
    if (!match) return null;
    const latLng = pane.leafletMap.layerPointToLatLng(L.point(parseFloat(match[1]), parseFloat(match[2])));
    return [latLng.lat, latLng.lng];
}
"""

_START_POSITION = re.compile(r"startPositionAt=([^&#]+)")
_POPUP_LATLNG = re.compile(
    r"Lat(?:itud)?[^\d\n-]*(-?\d+\.\d+).*?Lon(?:gitud)?[^\d\n-]*(-?\d+\.\d+)", re.IGNORECASE | re.DOTALL
)


def coordinates_from_start_position(url: str) -> Optional[Tuple[float, float]]:
    """Parse ``startPositionAt=[lat,lon]`` (raw or percent-encoded) from a URL."""
    match = _START_POSITION.search(url or "")
    if not match:
        return None
    parts = unquote(match.group(1)).strip("[]() ").split(",")
    if len(parts) != 2:
        return None
    try:
        return float(parts[0]), float(parts[1])
    except ValueError:
        return None


def _first(values: Dict[str, str], *keys: str) -> Optional[str]:
    for key in keys:
        value = values.get(key)
        if value:
            return value
    return None


def build_reason(popup: Dict[str, str], details: Dict[str, str], georeference: Optional[str]) -> Optional[str]:
    """Popup pairs, then the known detail labels, then the location."""
    parts = list(popup.items())
    for keys in DETAIL_SUMMARY_KEYS:
        for key in keys:
            if details.get(key):
                parts.append((key, details[key]))
                break
    parts.append(("Ubicación", georeference))
    return join_reason(parts, max_length=REASON_MAX_LENGTH)


class SimonMovilidadScraper(BaseScraper):
    """Scraper for the Simon Movilidad portal."""

    provider_key = "simon_movilidad"
    provider_name = "Simon Movilidad"

    username_selector = "input[type='email'][name='email']"
    password_selector = "input[type='password'][name='password']"
    submit_selector = "button[type='submit']"
    overlay_close_selectors = (POPUP_CLOSE,)

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.popup_info: Dict[str, str] = {}

    async def has_success_marker(self) -> bool:
        for selector in (TRACK_BUTTON, ACTIVE_VEHICLES_HEADING):
            element = await self.session.query(selector)
            if element is not None and await element.is_visible():
                return True
        return False

    async def navigate_to_vehicles(self) -> None:
        """Click "Rastrear" and wait for the map to show the vehicle marker."""
        self.session.switch_to_default()
        if not await self.waits.wait_for_visible(ANY_MARKER, "map_already_open", timeout=0.5):
            if not await self.clicks.click_when_clickable(TRACK_BUTTON, op_id="track_button"):
                raise TransientOperationError("Track button not found")
            await self.clicks.check_page_health("navigate_to_vehicles")

            async def url_changed() -> bool:
                url = self.session.url
                return "startPosition" in url or "zoom=" in url

            if not await self.waits.wait_for_condition(url_changed, "track_url_changed"):
                self.logger.debug("track_url_unchanged", url=self.session.url)

        if not await self.waits.wait_for_visible(ANY_MARKER, "marker_visible"):
            raise TransientOperationError("Vehicle marker did not appear on the map")

    async def locate_vehicle(self, plate: str) -> None:
        """Click the vehicle's marker and confirm the popup belongs to ``plate``."""
        target = normalize_plate(plate)
        element = await self._find_by_plate(target)
        if element is None:
            element = await self._single_vehicle_marker()
        if element is None:
            plates = await self.session.evaluate(MARKER_TITLES_SCRIPT) or []
            raise ConfigurationInvalidError(plate, plates)

        if not await self.clicks.click_when_clickable(element=element, op_id="vehicle_marker"):
            raise TransientOperationError("Vehicle marker could not be clicked")

        popup = await self.waits.wait_for_element(POPUP_CONTENT, "popup_visible", require_interactable=True)
        if not popup:
            raise TransientOperationError("Vehicle popup did not appear")
        self.popup_info = await popup.element.evaluate(POPUP_PAIRS_SCRIPT) or {}

        shown = normalize_plate(_first(self.popup_info, "Placa", "Vehículo", "Vehiculo"))
        if shown and shown != target:
            raise ConfigurationInvalidError(plate, [shown])
        self.logger.info("vehicle_selected", persist=True, plate=plate)

    async def _find_by_plate(self, target: str) -> Optional[ElementHandle]:
        handle = await self.session.context.evaluate_handle(FIND_TITLED_SCRIPT, target)
        element = handle.as_element()
        if element is None:
            await handle.dispose()
        else:
            return element
        element = await self.clicks.find_by_exact_text(LIST_ITEM_SELECTORS, target)
        return element or await self.clicks.sweep_for_text(target)

    async def _single_vehicle_marker(self) -> Optional[ElementHandle]:
        """Accounts that track one vehicle show a single untitled marker."""
        for selector in (VEHICLE_MARKER, VEHICLE_MARKER_FALLBACK):
            result = await self.waits.wait_for_element(
                selector, "vehicle_icon", require_interactable=True, timeout=3.0
            )
            if result:
                markers = await self.session.query_all(selector)
                if len(markers) == 1:
                    return result.element
                self.logger.warning("several_untitled_markers", count=len(markers))
                return None
        return None

    async def extract_detail(self, plate: str) -> LocationRecord:
        """Combine popup pairs, detail page inputs and the URL position."""
        popup_text = "\n".join(f"{key}: {value}" for key, value in self.popup_info.items())
        coordinates = await self._read_coordinates(popup_text)
        if coordinates is None:
            raise ExtractionError("Coordinates not found for selected vehicle", raw_text=popup_text)

        details = await self._read_details()
        georeference = await self._read_location(details)
        return self._build_record(plate, coordinates, details, georeference, popup_text)

    async def _read_coordinates(self, popup_text: str) -> Optional[Tuple[float, float]]:
        coordinates = coordinates_from_start_position(self.session.url)
        if coordinates:
            return coordinates
        match = _POPUP_LATLNG.search(popup_text)
        if match:
            return float(match.group(1)), float(match.group(2))
        try:
            value = await self.session.evaluate(MARKER_LATLNG_SCRIPT)
        except Exception as e:
            self.logger.debug("marker_coordinates_failed", error=str(e))
            return None
        if value and len(value) == 2:
            return float(value[0]), float(value[1])
        return None

    async def _read_details(self) -> Dict[str, str]:
        link = await self.waits.wait_for_element(
            DETAILS_LINK, "details_link", require_interactable=True, timeout=5.0
        )
        if not link:
            self.logger.warning("details_link_missing", persist=True)
            return {}
        await self.clicks.click_when_clickable(DETAILS_LINK, element=link.element, op_id="details_link")
        if not await self.waits.wait_for_element(DETAIL_INPUTS, "details_loaded", timeout=10.0):
            self.logger.warning("details_page_not_loaded", persist=True)
            return {}
        await self.waits.wait_for_page_settled()
        return await self.session.evaluate(DETAIL_INPUTS_SCRIPT) or {}

    async def _read_location(self, details: Dict[str, str]) -> Optional[str]:
        """Current value of the Ubicación input, asking the portal to resolve it if blank."""
        value = details.get("Ubicación", "")
        if value and "Obtener ubicación" not in value:
            return value
        button = await self.session.query(LOCATION_BUTTON)
        if button is None:
            return None
        await self.clicks.click_when_clickable(element=button, max_attempts=1, op_id="location_button")

        async def resolved() -> bool:
            element = await self.session.query(LOCATION_INPUT)
            current = await element.input_value() if element else ""
            return bool(current) and "Obtener ubicación" not in current

        if not await self.waits.wait_for_condition(resolved, "location_resolved", timeout=5.0):
            return None
        element = await self.session.query(LOCATION_INPUT)
        return await element.input_value() if element else None

    def _build_record(
        self,
        plate: str,
        coordinates: Tuple[float, float],
        details: Dict[str, str],
        georeference: Optional[str],
        raw_text: str,
    ) -> LocationRecord:
        popup = self.popup_info
        captured_at = datetime.now()
        speed = _first(popup, "Velocidad") or _first(details, "Velocidad") or "0"
        odometer = _first(details, "Odómetro AVL", "Odometro AVL", "Odómetro CAN", "Odometro CAN")
        angle = _first(details, "Ángulo", "Angulo")
        temperature = _first(details, "Temperatura Motor")
        timestamp = parse_timestamp(_first(popup, "Fecha evento") or _first(details, "Fecha"), captured_at)

        heading = int(parse_decimal(angle)) if angle else derive_heading(text=raw_text)
        try:
            return LocationRecord(
                plate=plate,
                latitude=coordinates[0],
                longitude=coordinates[1],
                speed=parse_decimal(re.sub(r"(?i)km/h", "", speed)),
                heading=heading % 360,
                timestamp=timestamp or captured_at,
                captured_at=captured_at,
                provider=self.provider_settings.name,
                reason=build_reason(popup, details, georeference),
                driver=_first(popup, "Evento") or _first(details, "Estado"),
                georeference=georeference,
                in_zone=_first(details, "Cobertura") or "No se encontró información",
                detention_time=(
                    "Vehículo detenido" if details.get("Estado") == "Apagado" else "En movimiento"
                ),
                distance_traveled=parse_decimal(odometer.replace("Km", "").replace(",", "")) if odometer else 0.0,
                temperature=parse_decimal(temperature.replace("°C", "")) if temperature else 0.0,
            )
        except ValidationError as e:
            raise ExtractionError(f"Vehicle data failed validation: {e.errors()[0]['msg']}", raw_text=raw_text) from e

    async def before_dispose(self) -> None:
        """Close the vehicle popup and log out."""
        self.session.switch_to_default()
        close = await self.session.query(POPUP_CLOSE)
        if close is not None and await close.is_visible():
            await self.clicks.click_when_clickable(element=close, max_attempts=1, op_id="popup_close")
        else:
            await self.session.evaluate("() => document.body && document.body.click()")

        logout = await self.waits.wait_for_element(
            LOGOUT_BUTTON, "logout_button", require_interactable=True, timeout=3.0
        )
        if not logout:
            self.logger.warning("logout_button_not_found")
            return
        await self.clicks.click_when_clickable(element=logout.element, max_attempts=1, op_id="logout")

        async def back_on_login() -> bool:
            return "/login" in self.session.url

        if await self.waits.wait_for_condition(back_on_login, "logout_redirect", timeout=5.0):
            self.logger.info("logout_completed", persist=True)
