# ABOUTME: Tests for the typer command line: single lookups, roster runs, roster status and
# ABOUTME: the provider listing. Browser work is patched out

import json
from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from main import app
from models.location import LocationRecord
from scrapers.base.exceptions import ServerDownError

runner = CliRunner()


@pytest.fixture
def cli_settings(sample_settings):
    with patch("main.get_settings", return_value=sample_settings):
        yield sample_settings


def track_args(*extra):
    return [
        "track", "--provider", "satrack", "--plate", "ABC123",
        "--username", "operador", "--password", "secreto", *extra,
    ]


class TestTrackCommand:
    def test_prints_location(self, cli_settings):
        record = LocationRecord(
            plate="ABC123", latitude=4.6097, longitude=-74.0817,
            timestamp=datetime(2024, 5, 1, 10, 0), provider="Satrack",
        )
        with patch("flows.track_vehicles.locate_vehicle", AsyncMock(return_value=record)):
            result = runner.invoke(app, track_args("--no-save"))

        assert result.exit_code == 0
        assert "4.6097" in result.output
        assert not cli_settings.locations_file.exists()

    def test_saves_by_default(self, cli_settings):
        record = LocationRecord(
            plate="ABC123", latitude=4.6097, longitude=-74.0817, timestamp=datetime(2024, 5, 1, 10, 0)
        )
        with patch("flows.track_vehicles.locate_vehicle", AsyncMock(return_value=record)):
            result = runner.invoke(app, track_args())

        assert result.exit_code == 0
        assert cli_settings.locations_file.exists()

    def test_rejected_login(self, cli_settings):
        with patch("flows.track_vehicles.locate_vehicle", AsyncMock(return_value=None)):
            result = runner.invoke(app, track_args())

        assert result.exit_code == 2

    def test_tracking_error(self, cli_settings):
        with patch(
            "flows.track_vehicles.locate_vehicle",
            AsyncMock(side_effect=ServerDownError("login_page", "502 bad gateway")),
        ):
            result = runner.invoke(app, track_args())

        assert result.exit_code == 2
        assert "server_down" in result.output


class TestRunCommand:
    def test_invalid_roster(self, tmp_path, cli_settings):
        roster = tmp_path / "roster.json"
        roster.write_text(json.dumps([{"plate": "ABC123"}]), encoding="utf-8")

        result = runner.invoke(app, ["run", "--roster", str(roster)])

        assert result.exit_code == 1
        assert "Invalid roster file" in result.output

    def test_failed_vehicles_set_exit_code(self, tmp_path, cli_settings):
        roster = tmp_path / "roster.json"
        roster.write_text(
            json.dumps([{"plate": "ABC123", "provider": "satrack", "username": "op", "password": "pw"}]),
            encoding="utf-8",
        )
        summary = {
            "total": 1,
            "succeeded": 0,
            "failed": 1,
            "results": [
                {
                    "plate": "ABC123",
                    "provider": "satrack",
                    "success": False,
                    "status": "Servidor caído",
                    "latitude": None,
                    "longitude": None,
                }
            ],
        }
        with patch("flows.track_vehicles.track_vehicles_flow", AsyncMock(return_value=summary)) as flow:
            result = runner.invoke(app, ["run", "--roster", str(roster), "--user-id", "operator-7"])

        assert result.exit_code == 3
        assert "Located 0/1 vehicles" in result.output
        assert flow.await_args.kwargs["user_id"] == "operator-7"


class TestStatusCommand:
    @pytest.fixture
    def roster(self, tmp_path):
        path = tmp_path / "roster.json"
        path.write_text(
            json.dumps([{"plate": "ABC123", "provider": "detektor", "username": "op", "password": "pw"}]),
            encoding="utf-8",
        )
        return path

    def test_prints_located_plate(self, roster, cli_settings):
        record = LocationRecord(
            plate="ABC123", latitude=4.6097, longitude=-74.0817,
            timestamp=datetime(2024, 5, 1, 10, 0), provider="Detektor",
        )
        with patch(
            "flows.track_vehicles.get_vehicle_status", AsyncMock(return_value=record)
        ) as lookup:
            result = runner.invoke(
                app, ["status", "--plate", "abc123", "--roster", str(roster), "--user-id", "operator-7"]
            )

        assert result.exit_code == 0
        assert "-74.0817" in result.output
        plate, assignments, repository = lookup.await_args.args
        assert plate == "abc123"
        assert assignments[0].provider == "detektor"
        assert repository.path == cli_settings.locations_file
        assert lookup.await_args.kwargs["user_id"] == "operator-7"
        assert lookup.await_args.kwargs["settings"] is cli_settings

    def test_unknown_plate(self, roster, cli_settings):
        with patch("flows.track_vehicles.get_vehicle_status", AsyncMock(return_value=None)):
            result = runner.invoke(app, ["status", "--plate", "XYZ999", "--roster", str(roster)])

        assert result.exit_code == 2
        assert "not in the roster" in result.output

    def test_tracking_error(self, roster, cli_settings):
        with patch(
            "flows.track_vehicles.get_vehicle_status",
            AsyncMock(side_effect=ServerDownError("login_page", "502 bad gateway")),
        ):
            result = runner.invoke(app, ["status", "--plate", "ABC123", "--roster", str(roster)])

        assert result.exit_code == 2
        assert "server_down" in result.output


def test_providers_lists_portals(cli_settings):
    result = runner.invoke(app, ["providers"])

    assert result.exit_code == 0
    assert "detektor" in result.output
    assert "satrack" in result.output
