# ABOUTME: Tests for the vehicle tracking flow: error-to-status mapping, provider
# ABOUTME: grouping and per-vehicle isolation. Scrapers are replaced with mocks

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from flows.track_vehicles import (
    MESSAGES,
    get_vehicle_status,
    group_by_provider,
    locate_vehicle,
    track_vehicle,
    track_vehicles_flow,
)
from models.location import LocationRecord, TrackingResult, TrackingStatus, VehicleAssignment
from scrapers.base.exceptions import (
    ConfigurationInvalidError,
    ExtractionError,
    ServerDownError,
    TransientOperationError,
    UnsupportedProviderError,
)


def assignment(plate="ABC123", provider="satrack"):
    return VehicleAssignment(plate=plate, provider=provider, username="operador", password="secreto")


def make_record(plate="ABC123"):
    return LocationRecord(
        plate=plate, latitude=4.6097, longitude=-74.0817, timestamp=datetime(2024, 5, 1, 10, 0)
    )


@pytest.fixture
def repository():
    return MagicMock()


class TestGroupByProvider:
    def test_groups_by_canonical_key_in_roster_order(self):
        roster = [
            assignment("AAA111", "Satrack"),
            assignment("BBB222", "Detektor"),
            assignment("CCC333", "satrack gps"),
            assignment("DDD444", "Foo"),
        ]

        groups = group_by_provider(roster)

        assert list(groups) == ["satrack", "detektor", "Foo"]
        assert [a.plate for a in groups["satrack"]] == ["AAA111", "CCC333"]


class TestTrackVehicle:
    """Test that every outcome becomes a TrackingResult."""

    @pytest.mark.asyncio
    async def test_success_saves_record(self, repository, sample_settings):
        record = make_record()
        with patch("flows.track_vehicles.locate_vehicle", AsyncMock(return_value=record)):
            result = await track_vehicle.fn(assignment(), settings=sample_settings, repository=repository)

        assert result.success
        assert result.status is TrackingStatus.SUCCESS
        assert result.message == MESSAGES[TrackingStatus.SUCCESS]
        assert (result.latitude, result.longitude) == (4.6097, -74.0817)
        repository.save.assert_called_once_with(record)

    @pytest.mark.asyncio
    async def test_rejected_login(self, repository, sample_settings):
        with patch("flows.track_vehicles.locate_vehicle", AsyncMock(return_value=None)):
            result = await track_vehicle.fn(assignment(), settings=sample_settings, repository=repository)

        assert not result.success
        assert result.status is TrackingStatus.AUTH_ERROR
        repository.save.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,status",
        [
            (ConfigurationInvalidError("ABC123", ["DEF456"]), TrackingStatus.CONFIG_ERROR),
            (ServerDownError("login_page", "502 bad gateway"), TrackingStatus.SERVER_DOWN),
            (TransientOperationError("locate_vehicle failed"), TrackingStatus.INTERNAL_ERROR),
            (ExtractionError("No coordinates", raw_text="Placa: ABC123"), TrackingStatus.INTERNAL_ERROR),
            (UnsupportedProviderError("Unknown provider: foo"), TrackingStatus.INTERNAL_ERROR),
            (RuntimeError("unexpected"), TrackingStatus.INTERNAL_ERROR),
        ],
    )
    async def test_errors_map_to_status(self, repository, sample_settings, error, status):
        with patch("flows.track_vehicles.locate_vehicle", AsyncMock(side_effect=error)):
            result = await track_vehicle.fn(assignment(), settings=sample_settings, repository=repository)

        assert not result.success
        assert result.status is status
        assert result.message == MESSAGES[status]
        repository.save.assert_not_called()


class TestLocateVehicle:
    """Test the login-then-lookup sequence around one scraper."""

    @pytest.fixture
    def fake_scraper(self):
        scraper = MagicMock()
        scraper.initialize = AsyncMock()
        scraper.dispose = AsyncMock()
        scraper.login = AsyncMock(return_value=True)
        scraper.get_vehicle_location = AsyncMock(return_value=make_record())
        return scraper

    @pytest.mark.asyncio
    async def test_logs_in_with_clear_password(self, fake_scraper, sample_settings):
        scraper_class = MagicMock(return_value=fake_scraper)
        with patch("scrapers.providers.get_scraper_class", return_value=scraper_class):
            record = await locate_vehicle(assignment(), sample_settings, user_id="operator-7")

        assert record.plate == "ABC123"
        fake_scraper.login.assert_awaited_once_with("operador", "secreto", "ABC123")
        assert scraper_class.call_args.kwargs["user_id"] == "operator-7"
        assert scraper_class.call_args.kwargs["settings"] is sample_settings
        fake_scraper.dispose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rejected_login_returns_none(self, fake_scraper, sample_settings):
        fake_scraper.login = AsyncMock(return_value=False)
        with patch("scrapers.providers.get_scraper_class", return_value=MagicMock(return_value=fake_scraper)):
            assert await locate_vehicle(assignment(), sample_settings) is None

        fake_scraper.get_vehicle_location.assert_not_awaited()
        fake_scraper.dispose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_errors_propagate_after_dispose(self, fake_scraper, sample_settings):
        fake_scraper.get_vehicle_location = AsyncMock(side_effect=ServerDownError("navigate_to_vehicles"))
        with patch("scrapers.providers.get_scraper_class", return_value=MagicMock(return_value=fake_scraper)):
            with pytest.raises(ServerDownError):
                await locate_vehicle(assignment(), sample_settings)

        fake_scraper.dispose.assert_awaited_once()


class TestTrackVehiclesFlow:
    """Test the roster run."""

    @pytest.mark.asyncio
    async def test_runs_each_enabled_provider(self, sample_settings, tmp_path):
        sample_settings.detektor.enabled = False
        roster = [
            assignment("AAA111", "satrack"),
            assignment("BBB222", "detektor"),
            assignment("CCC333", "satrack"),
        ]

        async def fake_track(item, **kwargs):
            success = item.plate == "AAA111"
            return TrackingResult(
                plate=item.plate,
                provider=item.provider,
                success=success,
                status=TrackingStatus.SUCCESS if success else TrackingStatus.CONFIG_ERROR,
            )

        with patch("flows.track_vehicles.get_run_logger", return_value=MagicMock()), patch(
            "flows.track_vehicles.get_settings", return_value=sample_settings
        ), patch("flows.track_vehicles.track_vehicle", AsyncMock(side_effect=fake_track)) as tracked:
            summary = await track_vehicles_flow.fn(roster, locations_file=str(tmp_path / "out.jsonl"))

        assert summary["total"] == 2
        assert 0 <= summary["execution_time_seconds"] < 60
        assert summary["succeeded"] == 1
        assert summary["failed"] == 1
        assert [r["plate"] for r in summary["results"]] == ["AAA111", "CCC333"]
        assert summary["results"][1]["status"] == TrackingStatus.CONFIG_ERROR.value
        assert tracked.await_args.kwargs["repository"].path == tmp_path / "out.jsonl"


class TestGetVehicleStatus:
    @pytest.mark.asyncio
    async def test_plate_not_in_roster(self, repository):
        assert await get_vehicle_status("XYZ999", [assignment()], repository) is None
        repository.save.assert_not_called()

    @pytest.mark.asyncio
    async def test_plate_located_and_saved(self, repository, sample_settings):
        record = make_record()
        with patch("flows.track_vehicles.locate_vehicle", AsyncMock(return_value=record)) as located:
            assert await get_vehicle_status("abc123", [assignment()], repository, settings=sample_settings) is record

        assert located.await_args.args[0].plate == "ABC123"
        assert located.await_args.kwargs["settings"] is sample_settings
        repository.save.assert_called_once_with(record)
