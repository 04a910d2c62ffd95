# ridemarket/models/city.py
from __future__ import annotations

import datetime as dt
import enum

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, ForeignKey, Enum, Index, Boolean
)
from sqlalchemy.orm import relationship
from .base import Base
from .marketplace import status_in


class CityUserType(str, enum.Enum):
    HAS_CAR   = "has-car"     # водитель
    NEEDS_CAR = "needs-car"   # пассажир

    @property
    def opposite(self) -> "CityUserType":
        return CityUserType.NEEDS_CAR if self is CityUserType.HAS_CAR else CityUserType.HAS_CAR


class CityRequestStatus(str, enum.Enum):
    SEARCHING = "searching"
    MATCHED   = "matched"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED   = "expired"


class MatchStatus(str, enum.Enum):
    ACTIVE    = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


CITY_ACTIVE_STATUSES = (CityRequestStatus.SEARCHING, CityRequestStatus.MATCHED)


def _dt(x):
    if isinstance(x, (dt.date, dt.datetime)):
        return x.isoformat()
    return x


def _money(x):
    return float(x) if x is not None else None


class City(Base):
    __tablename__ = "cities"

    id = Column(Integer, primary_key=True)
    name = Column(String(120), nullable=False)
    country = Column(String(80), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "country": self.country}


class CityToCityRequest(Base):
    __tablename__ = "city_to_city_requests"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    user_type = Column(Enum(CityUserType), nullable=False)

    from_city_id = Column(Integer, ForeignKey("cities.id"), nullable=False)
    to_city_id   = Column(Integer, ForeignKey("cities.id"), nullable=False)
    travel_date  = Column(DateTime, nullable=False)

    # водитель
    price_per_passenger = Column(Numeric(10, 2), nullable=True)
    number_of_seats     = Column(Integer, nullable=True)
    max_bags            = Column(Integer, nullable=True)
    # сколько активных матчей уже занято (меняется только атомарным UPDATE)
    active_match_count  = Column(Integer, nullable=False, default=0)

    # пассажир
    willing_to_pay = Column(Numeric(10, 2), nullable=True)
    needed_seats   = Column(Integer, nullable=True)
    user_bags      = Column(Integer, nullable=True)

    note = Column(String(500), nullable=True)
    status = Column(Enum(CityRequestStatus), nullable=False, default=CityRequestStatus.SEARCHING)

    created_at = Column(DateTime(timezone=True), default=dt.datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow)

    from_city = relationship("City", foreign_keys=[from_city_id], lazy="joined")
    to_city = relationship("City", foreign_keys=[to_city_id], lazy="joined")

    __table_args__ = (
        Index("ix_c2c_route_date", "from_city_id", "to_city_id", "travel_date"),
        Index("ix_c2c_status_type", "status", "user_type"),
        # одна активная заявка между городами на пользователя
        Index(
            "uq_c2c_one_active", "user_id", unique=True,
            sqlite_where=status_in(CITY_ACTIVE_STATUSES), postgresql_where=status_in(CITY_ACTIVE_STATUSES),
        ),
    )

    @property
    def is_driver(self) -> bool:
        return self.user_type == CityUserType.HAS_CAR

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_type": self.user_type.value if hasattr(self.user_type, "value") else self.user_type,
            "from_city_id": self.from_city_id,
            "to_city_id": self.to_city_id,
            "from_city": self.from_city.to_dict() if self.from_city else None,
            "to_city": self.to_city.to_dict() if self.to_city else None,
            "travel_date": _dt(self.travel_date),
            "price_per_passenger": _money(self.price_per_passenger),
            "number_of_seats": self.number_of_seats,
            "max_bags": self.max_bags,
            "active_match_count": self.active_match_count,
            "willing_to_pay": _money(self.willing_to_pay),
            "needed_seats": self.needed_seats,
            "user_bags": self.user_bags,
            "note": self.note,
            "status": self.status.value if hasattr(self.status, "value") else self.status,
            "created_at": _dt(self.created_at),
        }


class CityToCityMatch(Base):
    __tablename__ = "city_to_city_matches"

    id = Column(Integer, primary_key=True)
    driver_request_id = Column(Integer, ForeignKey("city_to_city_requests.id"), nullable=False, index=True)
    passenger_request_id = Column(Integer, ForeignKey("city_to_city_requests.id"), nullable=False, index=True)
    status = Column(Enum(MatchStatus), nullable=False, default=MatchStatus.ACTIVE)

    created_at = Column(DateTime(timezone=True), default=dt.datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow)

    driver_request = relationship("CityToCityRequest", foreign_keys=[driver_request_id])
    passenger_request = relationship("CityToCityRequest", foreign_keys=[passenger_request_id])

    __table_args__ = (
        Index("ix_c2c_match_driver_status", "driver_request_id", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "driver_request_id": self.driver_request_id,
            "passenger_request_id": self.passenger_request_id,
            "status": self.status.value if hasattr(self.status, "value") else self.status,
            "created_at": _dt(self.created_at),
        }
