import math
from datetime import datetime, timezone

def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Return distance in meters."""
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat/2)**2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon/2)**2
    c = 2 * math.asin(math.sqrt(a))
    return c * 6371000  # meters


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_valid_lat_lng(lat: float, lng: float) -> bool:
    return (
        math.isfinite(lat) and math.isfinite(lng) and
        -90.0 <= lat <= 90.0 and
        -180.0 <= lng <= 180.0
    )
