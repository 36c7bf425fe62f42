"""GPS verification service."""
import math
from typing import Dict, Optional, Tuple

EARTH_RADIUS_METERS = 6371000


class GPSService:
    """Service for geofence and location verification."""

    @staticmethod
    def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
        """Calculate great-circle distance between two GPS points in meters."""
        lat1_rad = math.radians(lat1)
        lat2_rad = math.radians(lat2)
        delta_lat = math.radians(lat2 - lat1)
        delta_lon = math.radians(lon2 - lon1)

        a = (math.sin(delta_lat / 2) ** 2 +
             math.cos(lat1_rad) * math.cos(lat2_rad) *
             math.sin(delta_lon / 2) ** 2)
        c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

        return EARTH_RADIUS_METERS * c

    @staticmethod
    def parse_location(raw) -> Optional[Tuple[float, float]]:
        """Read a ``{lat, lng}`` mapping, returning None unless both are finite numbers."""
        if not isinstance(raw, dict):
            return None
        try:
            lat = float(raw.get('lat'))
            lng = float(raw.get('lng'))
        except (TypeError, ValueError):
            return None
        if not (math.isfinite(lat) and math.isfinite(lng)):
            return None
        if not (-90 <= lat <= 90 and -180 <= lng <= 180):
            return None
        return lat, lng

    @staticmethod
    def verify_location(user_lat: float, user_lng: float, geofence) -> Dict:
        """Verify if user is within the course geofence."""
        distance = GPSService.calculate_distance(
            user_lat, user_lng,
            geofence.lat, geofence.lng
        )

        return {
            'is_inside': distance <= geofence.radius_meters,
            'distance': distance,
            'radius': geofence.radius_meters,
            'center': {
                'latitude': geofence.lat,
                'longitude': geofence.lng
            }
        }
