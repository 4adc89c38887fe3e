# ABOUTME: Browser-level tests against a routed mock of the Satrack portal
# ABOUTME: Skipped automatically when Chromium cannot be launched

import pytest

from scrapers.base.adaptive_wait import AdaptiveWait
from scrapers.base.browser_session import BrowserSession
from scrapers.base.exceptions import (
    BrowserInitializationError,
    ConfigurationInvalidError,
    ServerDownError,
)
from scrapers.base.interactions import Interactions
from scrapers.base.overlays import CREDENTIAL_PROMPT_TEXTS
from scrapers.providers.satrack import SatrackScraper

pytestmark = pytest.mark.integration

LOGIN_PAGE = """<!DOCTYPE html>
<html><head><style>
.leaflet-container { position: relative; width: 800px; height: 600px; }
.leaflet-marker-icon { position: absolute; width: 20px; height: 20px; background: red; }
.vehicle-info-panel { width: 300px; }
</style></head>
<body>
<form onsubmit="return false;">
  <input id="txt_login_username" type="text">
  <input id="txt_login_password" type="password">
  <button id="btn_login_login" type="button" onclick="signIn()">Ingresar</button>
  <div id="err" class="alert-danger" style="display: none">Usuario o contraseña incorrectos</div>
</form>
<template id="map-view">
  <div class="leaflet-container">
    <div class="leaflet-marker-icon" title="ABC1234" style="left: 100px; top: 100px" onclick="showPanel('ABC1234')"></div>
    <div class="leaflet-marker-icon" title="ABC123" style="left: 300px; top: 200px" onclick="showPanel('ABC123')"></div>
  </div>
  <div id="panel-slot"></div>
</template>
<script>
function signIn() {
  if (document.getElementById('txt_login_password').value !== 'secreto') {
    document.getElementById('err').style.display = 'block';
    return;
  }
  const view = document.getElementById('map-view').innerHTML;
  history.pushState({}, '', '/map?lat=4.6097&lng=-74.0817');
  document.body.innerHTML = view;
}
function showPanel(plate) {
  window.selectedPlate = plate;
  document.getElementById('panel-slot').innerHTML =
    '<div class="vehicle-info-panel">Placa: ' + plate + '<br>Estado: En ruta<br>' +
    'Conductor: Ana Gómez<br>Velocidad: 62 km/h<br>Rumbo: 90°</div>';
}
</script>
</body></html>
"""

PLATES_TABLE = """<!DOCTYPE html>
<html><body><table>
<tr><td>ABC1234</td><td>Bogotá</td></tr>
<tr><td> abc123 </td><td>Medellín</td></tr>
</table></body></html>
"""

SHADOW_PROMPT = """<!DOCTYPE html>
<html><body>
<a href="https://facebook.test/">Facebook</a>
<button>Outlook</button>
<div id="host"></div>
<script>
const root = document.getElementById('host').attachShadow({mode: 'open'});
root.innerHTML = '<div><p>Cambia la contraseña</p><button>Aceptar</button></div>';
</script></body></html>
"""


async def fulfill_portal(route):
    url = route.request.url
    if "/down" in url:
        await route.fulfill(status=502, content_type="text/html", body="<h1>502 Bad Gateway</h1>")
    else:
        await route.fulfill(status=200, content_type="text/html", body=LOGIN_PAGE)


async def started_scraper(settings):
    scraper = SatrackScraper(settings=settings)
    try:
        await scraper.initialize()
    except BrowserInitializationError as e:
        pytest.skip(f"Chromium not available: {e}")
    await scraper.session.browser_context.route("https://satrack.test/**", fulfill_portal)
    return scraper


async def started_session(settings):
    session = BrowserSession(settings.browser)
    try:
        await session.start()
    except BrowserInitializationError as e:
        pytest.skip(f"Chromium not available: {e}")
    return session


class TestSatrackMockPortal:
    """End-to-end login and lookup against the routed portal."""

    @pytest.mark.asyncio
    async def test_locates_exact_plate(self, sample_settings):
        scraper = await started_scraper(sample_settings)
        try:
            assert await scraper.login("operador", "secreto", "ABC123")

            record = await scraper.get_vehicle_location("ABC123")

            assert await scraper.session.evaluate("() => window.selectedPlate") == "ABC123"
            assert scraper.selection_strategy == "marker"
            assert (record.latitude, record.longitude) == (4.6097, -74.0817)
            assert record.speed == 62.0
            assert record.heading == 90
            assert record.driver == "Ana Gómez"
        finally:
            await scraper.dispose()

    @pytest.mark.asyncio
    async def test_unknown_plate_lists_visible_plates(self, sample_settings):
        scraper = await started_scraper(sample_settings)
        try:
            assert await scraper.login("operador", "secreto")

            with pytest.raises(ConfigurationInvalidError) as exc_info:
                await scraper.get_vehicle_location("XYZ999")

            assert sorted(exc_info.value.available_plates) == ["ABC123", "ABC1234"]
        finally:
            await scraper.dispose()

    @pytest.mark.asyncio
    async def test_wrong_password_is_rejected(self, sample_settings):
        scraper = await started_scraper(sample_settings)
        try:
            assert await scraper.login("operador", "incorrecta") is False
            assert not scraper.is_authenticated
        finally:
            await scraper.dispose()

    @pytest.mark.asyncio
    async def test_bad_gateway_is_server_down(self, sample_settings):
        settings = sample_settings.model_copy(
            update={"satrack": sample_settings.satrack.model_copy(update={"base_url": "https://satrack.test/down"})}
        )
        scraper = await started_scraper(settings)
        try:
            with pytest.raises(ServerDownError):
                await scraper.login("operador", "secreto")
        finally:
            await scraper.dispose()


class TestBrowserPrimitives:
    """DOM-level behaviour that mocks cannot show."""

    @pytest.mark.asyncio
    async def test_exact_text_ignores_longer_plates(self, sample_settings):
        session = await started_session(sample_settings)
        try:
            await session.page.set_content(PLATES_TABLE)
            clicks = Interactions(session, AdaptiveWait(session, settings=sample_settings.waits))

            cell = await clicks.find_by_exact_text(["tr td"], "ABC123")

            assert (await cell.inner_text()).strip() == "abc123"
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_deep_find_reaches_shadow_root(self, sample_settings):
        session = await started_session(sample_settings)
        try:
            await session.page.set_content(SHADOW_PROMPT)

            button = await session.deep_find(["Aceptar"])

            assert button is not None
            assert await button.inner_text() == "Aceptar"
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_prompt_search_skips_labels_containing_ok(self, sample_settings):
        session = await started_session(sample_settings)
        try:
            await session.page.set_content(SHADOW_PROMPT)

            button = await session.deep_find(CREDENTIAL_PROMPT_TEXTS)

            assert await button.inner_text() == "Aceptar"
            assert await session.deep_find(["OK"]) is None
        finally:
            await session.close()
