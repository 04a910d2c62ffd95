"""
Геофильтр: расстояние по формуле гаверсинуса и проверка радиуса.

Используется только для поиска (кто видит заявку), не для принятия ставки.
"""
from __future__ import annotations

from math import radians, degrees, sin, cos, asin, atan2, sqrt
from typing import Optional, Tuple

EARTH_RADIUS_KM = 6371.0

Location = Tuple[float, float]


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    lat1, lng1, lat2, lng2 = map(radians, [float(lat1), float(lng1), float(lat2), float(lng2)])
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * atan2(sqrt(a), sqrt(1 - a))


def distance_km(a: Location, b: Location) -> float:
    return haversine_km(a[0], a[1], b[0], b[1])


def within_radius(
    provider_location: Optional[Location],
    request_location: Optional[Location],
    radius_km: float,
) -> bool:
    # нет позиции: исполнитель не виден, это не ошибка
    if provider_location is None or request_location is None:
        return False
    if None in provider_location or None in request_location:
        return False
    return distance_km(provider_location, request_location) <= radius_km


def validate_coordinates(lat, lng) -> bool:
    try:
        lat, lng = float(lat), float(lng)
    except (TypeError, ValueError):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def bounding_box(center: Location, radius_km: float) -> Tuple[float, float, Optional[float], Optional[float]]:
    """
    Прямоугольник (min_lat, max_lat, min_lng, max_lng), гарантированно
    покрывающий круг радиуса radius_km. Для SQL-предфильтра перед within_radius.

    Если круг задевает полюс или меридиан 180, долгота не ограничивается (None, None).
    """
    lat, lng = float(center[0]), float(center[1])
    dlat = degrees(radius_km / EARTH_RADIUS_KM)
    min_lat, max_lat = lat - dlat, lat + dlat
    if min_lat <= -90.0 or max_lat >= 90.0:
        return max(min_lat, -90.0), min(max_lat, 90.0), None, None

    dlng = degrees(asin(min(1.0, sin(radians(dlat)) / cos(radians(lat)))))
    min_lng, max_lng = lng - dlng, lng + dlng
    if min_lng < -180.0 or max_lng > 180.0:
        return min_lat, max_lat, None, None
    return min_lat, max_lat, min_lng, max_lng
