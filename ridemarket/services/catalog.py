from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..errors import ValidationError
from ..models.city import City
from ..models.service import Service


def upsert_service(db: Session, payload: dict) -> Service:
    name = (payload.get("name") or "").strip()
    if not name:
        raise ValidationError("Укажите название услуги")
    s = db.execute(select(Service).where(Service.name == name)).scalar_one_or_none()
    if not s:
        s = Service(name=name)
        db.add(s)
    s.category = (payload.get("category") or "").strip() or None
    s.is_active = bool(payload.get("is_active", True))
    db.commit()
    db.refresh(s)
    return s


def upsert_city(db: Session, payload: dict) -> City:
    name = (payload.get("name") or "").strip()
    if not name:
        raise ValidationError("Укажите название города")
    country = (payload.get("country") or "").strip() or None
    c = db.execute(select(City).where(City.name == name, City.country == country)).scalar_one_or_none()
    if not c:
        c = City(name=name, country=country)
        db.add(c)
    c.is_active = bool(payload.get("is_active", True))
    db.commit()
    db.refresh(c)
    return c
