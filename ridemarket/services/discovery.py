"""
Лента исполнителя: какие открытые заявки он видит.

Фильтр влияет только на видимость; право поставить ставку проверяет
services.eligibility при подаче.
"""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..deps import Principal
from ..errors import NotFound
from ..models.marketplace import BidStatus, RequestKind, OPEN_STATUSES
from ..models.provider import DriverProfile, DriverServiceType, ServiceProviderProfile
from .eligibility import is_eligible
from .geo import bounding_box, distance_km, within_radius
from .kinds import parse_kind, request_model, bid_model

_KIND_FOR_DRIVER = {
    DriverServiceType.RIDE: RequestKind.RIDE,
    DriverServiceType.PARCEL: RequestKind.PARCEL,
}


def _open_requests(db: Session, kind: RequestKind, provider_user_id: int, near=None, service_ids=None):
    """
    Открытые заявки, на которые исполнитель ещё не ставил.
    near=(центр, радиус): SQL-предфильтр по прямоугольнику вокруг центра,
    точный радиус проверяет вызывающий код.
    """
    req_cls, bid_cls = request_model(kind), bid_model(kind)
    already_bid = select(bid_cls.request_id).where(
        bid_cls.provider_id == provider_user_id,
        bid_cls.status == BidStatus.PENDING,
    )
    stmt = select(req_cls).where(
        req_cls.status.in_(OPEN_STATUSES),
        req_cls.provider_id.is_(None),
        req_cls.consumer_id != provider_user_id,
        req_cls.id.not_in(already_bid),
    )
    if near is not None:
        center, radius_km = near
        min_lat, max_lat, min_lng, max_lng = bounding_box(center, radius_km)
        stmt = stmt.where(req_cls.pickup_lat.between(min_lat, max_lat))
        if min_lng is not None:
            stmt = stmt.where(req_cls.pickup_lng.between(min_lng, max_lng))
    if service_ids is not None:
        stmt = stmt.where(req_cls.service_id.in_(service_ids))
    return db.execute(stmt.order_by(req_cls.created_at.desc(), req_cls.id.desc())).scalars().all()


def open_requests_for_driver(
    db: Session,
    principal: Principal,
    radius_km: float | None = None,
    limit: int = 200,
) -> list[dict]:
    """
    Открытые заявки такси/посылок в радиусе от текущей позиции водителя,
    ближайшие первыми. Оффлайн или без позиции: пустой список.
    """
    profile = db.execute(
        select(DriverProfile).where(DriverProfile.user_id == principal.user_id)
    ).scalar_one_or_none()
    if not profile:
        raise NotFound("Профиль водителя не найден")
    if not profile.is_online or profile.location is None:
        return []

    radius = settings.DISCOVERY_RADIUS_KM if radius_km is None else radius_km
    kind = _KIND_FOR_DRIVER[DriverServiceType(profile.service_type)]

    out = []
    for req in _open_requests(db, kind, principal.user_id, near=(profile.location, radius)):
        if not is_eligible(profile, req):
            continue
        if not within_radius(profile.location, req.pickup_location, radius):
            continue
        item = req.to_dict()
        item["distance_to_pickup_km"] = round(distance_km(profile.location, req.pickup_location), 3)
        out.append(item)

    out.sort(key=lambda x: x["distance_to_pickup_km"])
    return out[:limit]


def open_requests_for_service_provider(db: Session, principal: Principal, limit: int = 200) -> list[dict]:
    profile = db.execute(
        select(ServiceProviderProfile).where(ServiceProviderProfile.user_id == principal.user_id)
    ).scalar_one_or_none()
    if not profile:
        raise NotFound("Профиль мастера не найден")

    service_ids = profile.service_ids
    if not service_ids:
        return []
    found = _open_requests(db, RequestKind.SERVICE, principal.user_id, service_ids=sorted(service_ids))
    return [req.to_dict() for req in found if is_eligible(profile, req)][:limit]


def open_requests_for(db: Session, kind, principal: Principal) -> list[dict]:
    kind = parse_kind(kind)
    if kind == RequestKind.SERVICE:
        return open_requests_for_service_provider(db, principal)
    return [r for r in open_requests_for_driver(db, principal) if r["kind"] == kind.value]


def service_provider_user_ids(db: Session, service_id: int) -> list[int]:
    """Верифицированные мастера, зарегистрированные на услугу (адресаты push о новой заявке)."""
    profiles = db.execute(
        select(ServiceProviderProfile).where(ServiceProviderProfile.is_verified.is_(True))
    ).scalars().all()
    return [p.user_id for p in profiles if service_id in p.service_ids]


def nearby_drivers(
    db: Session,
    lat: float,
    lng: float,
    radius_km: float,
    service_type: DriverServiceType | str | None = None,
    limit: int = 100,
) -> list[tuple[DriverProfile, float]]:
    """Онлайн и верифицированные водители с позицией в радиусе, ближайшие первыми."""
    stmt = select(DriverProfile).where(
        DriverProfile.is_online.is_(True),
        DriverProfile.is_verified.is_(True),
        DriverProfile.current_lat.is_not(None),
        DriverProfile.current_lng.is_not(None),
    )
    if service_type:
        stmt = stmt.where(DriverProfile.service_type == DriverServiceType(service_type))

    center = (float(lat), float(lng))
    found = []
    for profile in db.execute(stmt).scalars().all():
        if within_radius(profile.location, center, radius_km):
            found.append((profile, distance_km(profile.location, center)))
    found.sort(key=lambda x: x[1])
    return found[:limit]
