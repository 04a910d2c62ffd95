from __future__ import annotations

import datetime as dt
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..deps import Principal
from ..errors import NotFound, PermissionDenied, ValidationError
from ..models.provider import DriverProfile, DriverServiceType, ServiceProviderProfile
from ..models.service import Service
from .geo import validate_coordinates
from .users import get_user

logger = logging.getLogger(__name__)


def _s(payload: dict, key: str, max_len: int = 200) -> str | None:
    return (str(payload.get(key) or "").strip()[:max_len]) or None


# -------- Водитель --------

def get_driver_profile(db: Session, user_id: int) -> DriverProfile:
    p = db.execute(select(DriverProfile).where(DriverProfile.user_id == user_id)).scalar_one_or_none()
    if not p:
        raise NotFound("Профиль водителя не найден")
    return p


def submit_driver_profile(db: Session, principal: Principal, payload: dict) -> DriverProfile:
    """
    Создание/правка анкеты водителя.
    Любая правка: снова на проверку (is_verified=False, is_online=False).
    """
    get_user(db, principal.user_id)
    try:
        service_type = DriverServiceType(str(payload.get("service_type") or DriverServiceType.RIDE.value).lower())
    except ValueError:
        raise ValidationError("Некорректный тип водителя")

    p = db.execute(
        select(DriverProfile).where(DriverProfile.user_id == principal.user_id)
    ).scalar_one_or_none()
    if not p:
        p = DriverProfile(user_id=principal.user_id)
        db.add(p)

    p.service_type = service_type
    p.full_name = _s(payload, "full_name")
    p.license_number = _s(payload, "license_number", 50)
    p.vehicle_make = _s(payload, "vehicle_make", 80)
    p.vehicle_model = _s(payload, "vehicle_model", 80)
    p.vehicle_color = _s(payload, "vehicle_color", 40)
    p.vehicle_plate = _s(payload, "vehicle_plate", 20)

    p.is_verified = False
    p.is_online = False
    db.commit()
    db.refresh(p)
    logger.info("driver profile %s submitted by user %s", p.id, principal.user_id)
    return p


def set_driver_online(db: Session, principal: Principal, value: bool) -> DriverProfile:
    """Включить можно только верифицированному водителю."""
    p = get_driver_profile(db, principal.user_id)
    if value and not p.is_verified:
        raise PermissionDenied("Нельзя выйти на линию: профиль не верифицирован")
    p.is_online = bool(value)
    db.commit()
    db.refresh(p)
    return p


def update_driver_location(db: Session, principal: Principal, lat, lng) -> DriverProfile:
    if not validate_coordinates(lat, lng):
        raise ValidationError("Некорректные координаты")
    p = get_driver_profile(db, principal.user_id)
    p.current_lat = float(lat)
    p.current_lng = float(lng)
    p.location_updated_at = dt.datetime.now(dt.timezone.utc)
    db.commit()
    db.refresh(p)
    return p


# -------- Мастер услуг --------

def get_service_provider(db: Session, user_id: int) -> ServiceProviderProfile:
    p = db.execute(
        select(ServiceProviderProfile).where(ServiceProviderProfile.user_id == user_id)
    ).scalar_one_or_none()
    if not p:
        raise NotFound("Профиль мастера не найден")
    return p


def register_service_provider(db: Session, principal: Principal, payload: dict) -> ServiceProviderProfile:
    """Регистрация/правка мастера и списка его услуг. Правка снимает верификацию."""
    get_user(db, principal.user_id)
    raw_ids = payload.get("service_ids") or []
    try:
        service_ids = {int(x) for x in raw_ids}
    except (TypeError, ValueError):
        raise ValidationError("Некорректный список услуг")
    if not service_ids:
        raise ValidationError("Выберите хотя бы одну услугу")

    services = db.execute(
        select(Service).where(Service.id.in_(service_ids), Service.is_active.is_(True))
    ).scalars().all()
    if len(services) != len(service_ids):
        raise NotFound("Часть услуг не найдена или отключена")

    p = db.execute(
        select(ServiceProviderProfile).where(ServiceProviderProfile.user_id == principal.user_id)
    ).scalar_one_or_none()
    if not p:
        p = ServiceProviderProfile(user_id=principal.user_id)
        db.add(p)

    p.full_name = _s(payload, "full_name")
    p.bio = _s(payload, "bio", 1000)
    p.services = list(services)
    p.is_verified = False
    db.commit()
    db.refresh(p)
    logger.info("service provider %s registered for services %s", principal.user_id, sorted(service_ids))
    return p


# -------- Админ --------

def admin_list_pending(db: Session) -> dict:
    """Анкеты, ожидающие проверки."""
    drivers = db.execute(
        select(DriverProfile).where(DriverProfile.is_verified.is_(False)).order_by(DriverProfile.id)
    ).scalars().all()
    masters = db.execute(
        select(ServiceProviderProfile).where(ServiceProviderProfile.is_verified.is_(False)).order_by(ServiceProviderProfile.id)
    ).scalars().all()
    return {"drivers": drivers, "service_providers": masters}


def admin_set_driver_verified(db: Session, user_id: int, value: bool) -> DriverProfile:
    p = get_driver_profile(db, user_id)
    p.is_verified = bool(value)
    if not value:
        p.is_online = False
    db.commit()
    db.refresh(p)
    logger.info("driver %s verified=%s", user_id, p.is_verified)
    return p


def admin_set_service_provider_verified(db: Session, user_id: int, value: bool) -> ServiceProviderProfile:
    p = get_service_provider(db, user_id)
    p.is_verified = bool(value)
    db.commit()
    db.refresh(p)
    logger.info("service provider %s verified=%s", user_id, p.is_verified)
    return p


def driver_to_dict(p: DriverProfile) -> dict:
    return {
        "user_id": p.user_id,
        "service_type": p.service_type.value if hasattr(p.service_type, "value") else p.service_type,
        "is_verified": p.is_verified,
        "is_online": p.is_online,
        "full_name": p.full_name,
        "license_number": p.license_number,
        "vehicle": {
            "make": p.vehicle_make,
            "model": p.vehicle_model,
            "color": p.vehicle_color,
            "plate": p.vehicle_plate,
        },
        "location": {"lat": p.current_lat, "lng": p.current_lng} if p.location else None,
    }


def service_provider_to_dict(p: ServiceProviderProfile) -> dict:
    return {
        "user_id": p.user_id,
        "is_verified": p.is_verified,
        "is_online": p.is_online,
        "full_name": p.full_name,
        "bio": p.bio,
        "services": [s.to_dict() for s in p.services],
    }
