import logging
from typing import Optional

from attendance_service import geo
from attendance_service.config import settings
from attendance_service.models import DeviceLocation, GeofenceResult, SessionLocation

logger = logging.getLogger(__name__)


class GeofenceValidator:
    def __init__(self, base_tolerance: Optional[float] = None):
        self.base_tolerance = (
            settings.GEOFENCE_TOLERANCE_METERS if base_tolerance is None else base_tolerance
        )

    def check(
        self,
        student_location: DeviceLocation,
        session_location: SessionLocation,
        base_tolerance: Optional[float] = None,
    ) -> GeofenceResult:
        """
        Decide whether the student is close enough to the session location.

        The allowed radius widens to twice the GPS accuracy reported by the
        device, so a noisy fix is not rejected outright. The accuracy comes
        from the OS location API, never from free-form user input.
        """
        tolerance = self.base_tolerance if base_tolerance is None else base_tolerance
        gps_accuracy = student_location.accuracy or 0.0
        effective_tolerance = max(tolerance, 2 * gps_accuracy)

        dist = geo.distance(student_location, session_location)
        is_valid = dist <= effective_tolerance

        logger.info(
            f"Geofence check: distance={dist:.1f}m tolerance={effective_tolerance:.1f}m "
            f"(base {tolerance:.1f}m, accuracy {gps_accuracy:.1f}m) -> {'inside' if is_valid else 'outside'}"
        )
        return GeofenceResult(
            is_valid=is_valid,
            distance=dist,
            tolerance_used=effective_tolerance,
            base_tolerance=tolerance,
            accuracy=student_location.accuracy,
        )
