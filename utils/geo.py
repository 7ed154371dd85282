from geopy.distance import geodesic

from collection.models import GeoPoint


def distance_meters(a: GeoPoint, b: GeoPoint) -> float:
    return geodesic((a.latitude, a.longitude), (b.latitude, b.longitude)).meters


def nearby(point: GeoPoint, candidates: dict, radius_meters: float) -> list:
    """
    Keys of candidates (key -> GeoPoint) lying within radius_meters of point, nearest first.
    Candidates without coordinates are skipped.
    """
    if radius_meters <= 0:
        return []
    hits = []
    for key, location in candidates.items():
        if location is None:
            continue
        distance = distance_meters(point, location)
        if distance <= radius_meters:
            hits.append((distance, key))
    return [key for _, key in sorted(hits, key=lambda item: item[0])]


def format_point(point: GeoPoint | None) -> str:
    if point is None:
        return "—"
    return f"{point.latitude:.5f}, {point.longitude:.5f}"
