import math
import re
from datetime import datetime, timezone

from dateutil import parser

from collection.errors import InvalidLocation, ValidationFailed
from collection.models import GeoPoint, LocationFix


def is_valid_phone(phone: str) -> bool:
    """
    A simple phone number validator.
    Checks for a plausible length after cleaning non-digit characters.
    """
    if not phone:
        return False
    # Remove all non-digit characters
    cleaned_phone = re.sub(r'\D', '', phone)
    # Allows for formats like 7012345678 (10 digits) or 77012345678 (11 digits)
    return 10 <= len(cleaned_phone) <= 12


def normalize_phone(phone: str) -> str:
    digits = re.sub(r'\D', '', phone)
    return f"+{digits}" if len(digits) > 10 else digits


def parse_container_refs(raw) -> list[str]:
    """
    Accepts a list of refs or free text ("BIN-1, BIN-2 BIN-3") and returns
    the refs in their original order without blanks and duplicates.
    """
    if raw is None:
        return []
    items = re.split(r'[\s,;]+', raw) if isinstance(raw, str) else [str(item) for item in raw]
    refs = []
    for item in items:
        item = item.strip()
        if item and item not in refs:
            refs.append(item)
    return refs


def _finite_number(value) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def parse_weight(value, container_ref: str | None = None) -> float | None:
    """Weight in kilograms: None stays None, anything else must be a finite non-negative number."""
    if value is None:
        return None
    weight = _finite_number(value)
    if weight is None:
        raise ValidationFailed(f"Weight of {container_ref or 'container'} must be a number",
                               container_ref=container_ref, field='weight')
    if weight < 0:
        raise ValidationFailed(f"Weight of {container_ref or 'container'} must be non-negative",
                               container_ref=container_ref, field='weight')
    return weight


def _device_time(value) -> datetime | None:
    """Client clock is informational only: unparsable values are dropped, not rejected."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    number = _finite_number(value)
    if number is not None:
        # Mobile clients send epoch milliseconds
        try:
            return datetime.fromtimestamp(number / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        parsed = parser.isoparse(str(value))
    except (ValueError, OverflowError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_location_fix(payload: dict) -> LocationFix:
    """
    Validates a raw GPS fix. Coordinates and accuracy must be plausible;
    optional attributes that are missing, NaN or sentinel values are omitted.
    """
    latitude = _finite_number(payload.get('latitude', payload.get('lat')))
    longitude = _finite_number(payload.get('longitude', payload.get('lon')))
    if latitude is None or longitude is None:
        raise InvalidLocation("Location coordinates are required")
    if not -90 <= latitude <= 90:
        raise InvalidLocation(f"Latitude {latitude} is out of range", field='latitude')
    if not -180 <= longitude <= 180:
        raise InvalidLocation(f"Longitude {longitude} is out of range", field='longitude')

    raw_accuracy = payload.get('accuracy')
    accuracy = _finite_number(raw_accuracy)
    if raw_accuracy is not None and accuracy is None:
        raise InvalidLocation("Accuracy must be a number", field='accuracy')
    if accuracy is not None and accuracy < 0:
        raise InvalidLocation("Accuracy must be non-negative", field='accuracy')

    speed = _finite_number(payload.get('speed'))
    if speed is not None and speed < 0:
        speed = None
    heading = _finite_number(payload.get('heading'))
    if heading is not None and not 0 <= heading < 360:
        heading = None
    altitude_accuracy = _finite_number(payload.get('altitudeAccuracy', payload.get('altitude_accuracy')))
    if altitude_accuracy is not None and altitude_accuracy < 0:
        altitude_accuracy = None

    return LocationFix(
        latitude=latitude,
        longitude=longitude,
        accuracy=accuracy if accuracy is not None else 0.0,
        speed=speed,
        altitude=_finite_number(payload.get('altitude')),
        altitude_accuracy=altitude_accuracy,
        heading=heading,
        device_time=_device_time(payload.get('timestamp')),
    )


def parse_point(payload) -> GeoPoint | None:
    """
    Parses an optional start/end location: {latitude, longitude} or a GeoJSON point
    ({coordinates: [lon, lat]}). None stays None; anything malformed is InvalidLocation.
    """
    if payload is None:
        return None
    if isinstance(payload, GeoPoint):
        return payload
    if 'coordinates' in payload:
        coordinates = payload.get('coordinates') or []
        if len(coordinates) != 2:
            raise InvalidLocation("Point must have exactly two coordinates")
        payload = {'longitude': coordinates[0], 'latitude': coordinates[1]}
    fix = parse_location_fix(payload)
    return GeoPoint(fix.latitude, fix.longitude)
