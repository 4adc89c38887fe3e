"""Vehicle tracking flow.

Groups the roster by provider and, inside each group, tracks one vehicle at
a time with its own browser: login, locate, extract, store. Every failure is
mapped to a TrackingResult so one broken vehicle never stops the run.
"""

import asyncio
import time
from collections import OrderedDict
from typing import Dict, List, Optional
from uuid import uuid4

from prefect import flow, task, get_run_logger

from config import Settings, get_settings
from models.location import LocationRecord, TrackingResult, TrackingStatus, VehicleAssignment
from scrapers.base.exceptions import ErrorKind, TrackingError
from scrapers.providers import LocationScraperFactory, get_scraper_class
from storage.location_repository import JsonLinesLocationRepository, LocationRepository
from utils.logging import ScrapingLogger

STATUS_BY_KIND = {
    ErrorKind.CONFIG_INVALID: TrackingStatus.CONFIG_ERROR,
    ErrorKind.SERVER_DOWN: TrackingStatus.SERVER_DOWN,
}

MESSAGES = {
    TrackingStatus.SUCCESS: "Ubicación registrada exitosamente",
    TrackingStatus.AUTH_ERROR: "No se pudo iniciar sesión con las credenciales proporcionadas",
    TrackingStatus.CONFIG_ERROR: "El vehículo no está disponible con las credenciales actuales",
    TrackingStatus.SERVER_DOWN: "El servidor del proveedor no está disponible",
    TrackingStatus.INTERNAL_ERROR: "Error durante el procesamiento del vehículo",
}


def group_by_provider(
    assignments: List[VehicleAssignment],
) -> "OrderedDict[str, List[VehicleAssignment]]":
    """Group assignments by canonical provider key, keeping roster order.

    Unknown providers keep their raw name so they surface as failed results.
    """
    groups: "OrderedDict[str, List[VehicleAssignment]]" = OrderedDict()
    for assignment in assignments:
        try:
            key = get_scraper_class(assignment.provider).provider_key
        except TrackingError:
            key = assignment.provider
        groups.setdefault(key, []).append(assignment)
    return groups


def status_for_error(error: BaseException) -> TrackingStatus:
    if isinstance(error, TrackingError):
        return STATUS_BY_KIND.get(error.kind, TrackingStatus.INTERNAL_ERROR)
    return TrackingStatus.INTERNAL_ERROR


async def locate_vehicle(
    assignment: VehicleAssignment,
    settings: Optional[Settings] = None,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> Optional[LocationRecord]:
    """Log in and read the location of one vehicle.

    Returns None when the portal rejects the credentials. Tracking errors
    propagate to the caller.
    """
    factory = LocationScraperFactory(settings, user_id=user_id, ip_address=ip_address)
    async with factory.open(assignment.provider) as scraper:
        if not await scraper.login(
            assignment.username, assignment.password.get_secret_value(), assignment.plate
        ):
            return None
        return await scraper.get_vehicle_location(assignment.plate)


@task(name="track_vehicle")
async def track_vehicle(
    assignment: VehicleAssignment,
    settings: Optional[Settings] = None,
    repository: Optional[LocationRepository] = None,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> TrackingResult:
    """Track one vehicle and store its location.

    Args:
        assignment: Plate, provider and portal credentials
        settings: Application settings
        repository: Where the location is stored
        user_id: Operator identity for the audit log
        ip_address: Origin IP for the audit log

    Returns:
        TrackingResult describing the outcome, never raises for scraper errors
    """
    logger = ScrapingLogger("flow.track_vehicle", user_id=user_id, ip_address=ip_address).bind(
        plate=assignment.plate, provider=assignment.provider
    )
    repository = repository or JsonLinesLocationRepository()

    try:
        record = await locate_vehicle(assignment, settings, user_id, ip_address)
    except Exception as e:
        status = status_for_error(e)
        logger.error("vehicle_tracking_failed", status=status.name, error=str(e))
        return TrackingResult(
            plate=assignment.plate,
            provider=assignment.provider,
            success=False,
            status=status,
            message=MESSAGES[status],
        )

    if record is None:
        logger.warning("vehicle_login_rejected", persist=True)
        return TrackingResult(
            plate=assignment.plate,
            provider=assignment.provider,
            success=False,
            status=TrackingStatus.AUTH_ERROR,
            message=MESSAGES[TrackingStatus.AUTH_ERROR],
        )

    repository.save(record)
    logger.info(
        "vehicle_tracked", persist=True, latitude=record.latitude, longitude=record.longitude
    )
    return TrackingResult(
        plate=assignment.plate,
        provider=assignment.provider,
        success=True,
        status=TrackingStatus.SUCCESS,
        message=MESSAGES[TrackingStatus.SUCCESS],
        latitude=record.latitude,
        longitude=record.longitude,
    )


@flow(
    name="track-vehicles",
    description="Read current GPS locations for a roster of vehicles",
)
async def track_vehicles_flow(
    assignments: List[VehicleAssignment],
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    locations_file: Optional[str] = None,
) -> Dict:
    """Track every vehicle in the roster, sequentially within each provider.

    Args:
        assignments: Vehicles to track
        user_id: Operator identity for the audit log
        ip_address: Origin IP for the audit log
        locations_file: Override for the JSON-lines output file

    Returns:
        Dictionary with per-vehicle results and counters
    """
    logger = get_run_logger()
    run_id = uuid4()
    start_time = time.monotonic()
    settings = get_settings()
    repository = JsonLinesLocationRepository(locations_file or settings.locations_file)

    logger.info(f"Starting tracking run {run_id} for {len(assignments)} vehicles")
    results: List[TrackingResult] = []

    for provider, group in group_by_provider(assignments).items():
        provider_settings = settings.providers.get(provider)
        if provider_settings is not None and not provider_settings.enabled:
            logger.info(f"Provider {provider} is disabled, skipping {len(group)} vehicles")
            continue
        logger.info(f"Tracking {len(group)} vehicles with provider {provider}")
        for assignment in group:
            result = await track_vehicle(
                assignment,
                settings=settings,
                repository=repository,
                user_id=user_id,
                ip_address=ip_address,
            )
            results.append(result)

    succeeded = sum(1 for result in results if result.success)
    execution_time = time.monotonic() - start_time
    logger.info(
        f"Tracking run {run_id} finished: {succeeded}/{len(results)} vehicles located "
        f"in {execution_time:.1f}s"
    )
    return {
        "run_id": str(run_id),
        "total": len(results),
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
        "execution_time_seconds": execution_time,
        "results": [result.model_dump(mode="json") for result in results],
    }


async def get_vehicle_status(
    plate: str,
    assignments: List[VehicleAssignment],
    repository: Optional[LocationRepository] = None,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> Optional[LocationRecord]:
    """Locate a single vehicle from the roster and store the fix.

    Returns None if the plate is not in the roster or the login is rejected.
    Tracking errors propagate.
    """
    logger = ScrapingLogger("flow.vehicle_status", user_id=user_id, ip_address=ip_address)
    target = plate.strip().upper()
    assignment = next((a for a in assignments if a.plate.strip().upper() == target), None)
    if assignment is None:
        logger.info("vehicle_not_in_roster", persist=True, plate=plate)
        return None

    record = await locate_vehicle(
        assignment, settings=settings, user_id=user_id, ip_address=ip_address
    )
    if record is None:
        logger.error("vehicle_login_rejected", plate=plate)
        return None
    (repository or JsonLinesLocationRepository()).save(record)
    logger.info("vehicle_status_obtained", persist=True, plate=plate)
    return record


if __name__ == "__main__":
    import json
    import sys

    from pydantic import TypeAdapter

    async def main():
        with open(sys.argv[1], "r", encoding="utf-8") as f:
            roster = TypeAdapter(List[VehicleAssignment]).validate_python(json.load(f))
        result = await track_vehicles_flow(roster)
        print(json.dumps(result, indent=2, ensure_ascii=False))

    asyncio.run(main())
