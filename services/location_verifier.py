import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol

from pydantic import BaseModel

from core.config import GPS_ACCURACY_THRESHOLD_METERS, LOCATION_TIMEOUT_SECONDS
from core.errors import (
    AccuracyInsufficient,
    LocationUnavailable,
    LocationUnavailableReason,
    SpoofDetected,
)
from models.gps import GPSSample

logger = logging.getLogger(__name__)


class LocationPermission(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    DENIED_FOREVER = "denied_forever"


# Raw reading as the platform reports it, before any verification
class PositionReading(BaseModel):
    latitude: float
    longitude: float
    accuracy_meters: float
    timestamp: datetime
    is_mock_source: bool = False


class LocationProvider(Protocol):
    """The device's location-sampling capability."""

    async def service_enabled(self) -> bool:
        ...

    async def check_permission(self) -> LocationPermission:
        ...

    async def request_permission(self) -> LocationPermission:
        ...

    async def current_position(self) -> PositionReading:
        ...


class ReportedPositionProvider:
    """
    Provider for a reading the device already took and sent along with its
    request (the HTTP facade case). Permission and service state were settled
    on the device, so only the reading itself is verified here.
    """

    def __init__(self, reading: PositionReading):
        self._reading = reading

    async def service_enabled(self) -> bool:
        return True

    async def check_permission(self) -> LocationPermission:
        return LocationPermission.GRANTED

    async def request_permission(self) -> LocationPermission:
        return LocationPermission.GRANTED

    async def current_position(self) -> PositionReading:
        return self._reading


class LocationVerifier:
    """Acquires one verified GPS sample. Never persists anything itself."""

    def __init__(
        self,
        accuracy_threshold_meters: float = GPS_ACCURACY_THRESHOLD_METERS,
        timeout_seconds: float = LOCATION_TIMEOUT_SECONDS,
    ):
        self.accuracy_threshold_meters = accuracy_threshold_meters
        self.timeout_seconds = timeout_seconds

    async def _ensure_permission(self, provider: LocationProvider) -> None:
        permission = await provider.check_permission()
        if permission == LocationPermission.DENIED:
            permission = await provider.request_permission()
            if permission == LocationPermission.DENIED:
                raise LocationUnavailable(
                    LocationUnavailableReason.PERMISSION_DENIED,
                    "Location access denied. Enable location access to continue.",
                )

        if permission == LocationPermission.DENIED_FOREVER:
            raise LocationUnavailable(
                LocationUnavailableReason.PERMISSION_DENIED_FOREVER,
                "Location access permanently denied. Allow it in the app settings.",
            )

        if not await provider.service_enabled():
            raise LocationUnavailable(
                LocationUnavailableReason.SERVICE_DISABLED,
                "Location services are disabled. Enable GPS to continue.",
            )

    async def acquire(
        self, provider: LocationProvider, timeout_seconds: Optional[float] = None
    ) -> GPSSample:
        """
        Acquire and verify a single high-accuracy sample.

        Raises LocationUnavailable, SpoofDetected or AccuracyInsufficient.
        Cancelling the caller cancels the pending acquisition and the partial
        reading is dropped.
        """
        await self._ensure_permission(provider)

        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        try:
            reading = await asyncio.wait_for(provider.current_position(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise LocationUnavailable(
                LocationUnavailableReason.TIMEOUT,
                f"No location fix within {timeout:.0f}s.",
            ) from e
        except LocationUnavailable:
            raise
        except (OSError, RuntimeError, ValueError) as e:
            raise LocationUnavailable(
                LocationUnavailableReason.PROVIDER_ERROR,
                f"Fetching location failed: {e}",
            ) from e

        # Spoofed readings are rejected before anything else looks at them
        if reading.is_mock_source:
            logger.warning("[LOCATION] Mock location source rejected")
            raise SpoofDetected()

        if reading.accuracy_meters > self.accuracy_threshold_meters:
            raise AccuracyInsufficient(reading.accuracy_meters, self.accuracy_threshold_meters)

        return GPSSample(
            latitude=reading.latitude,
            longitude=reading.longitude,
            accuracy_meters=reading.accuracy_meters,
            timestamp=reading.timestamp,
            is_mocked=False,
        )
