"""
Общая база тестов: изолированная SQLite в памяти и фабрики сущностей.

Запуск:
    python -m pytest
    python -m unittest discover tests
"""
from __future__ import annotations

import datetime as dt
import itertools
import os
import unittest

os.environ.setdefault("DATABASE_URL", "sqlite://")

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from ridemarket.db import build_sessionmaker, init_db
from ridemarket.deps import Principal
from ridemarket.models.base import Base
from ridemarket.models.city import City
from ridemarket.models.provider import DriverProfile, DriverServiceType, ServiceProviderProfile
from ridemarket.models.service import Service
from ridemarket.models.user import User

_phones = itertools.count(1)

# Алматы, площадь Республики
PICKUP = (43.2383, 76.9456)


def memory_engine():
    return create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


def file_engine(path: str):
    return create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )


def ride_payload(**overrides) -> dict:
    payload = {
        "pickup_lat": PICKUP[0],
        "pickup_lng": PICKUP[1],
        "pickup_address": "пл. Республики",
        "destination_lat": 43.2567,
        "destination_lng": 76.9286,
        "destination_address": "ул. Абая, 10",
        "price": "10",
    }
    payload.update(overrides)
    return payload


class Factory:
    """Создание пользователей, исполнителей и справочников в заданной сессии."""

    def __init__(self, db):
        self.db = db

    def user(self, verified: bool = False, role: str = "user") -> User:
        u = User(phone=f"+7700{next(_phones):07d}", full_name="Тест", role=role, is_verified=verified)
        self.db.add(u)
        self.db.commit()
        self.db.refresh(u)
        return u

    def principal(self, user: User) -> Principal:
        return Principal(user_id=user.id, role=user.role)

    def driver(
        self,
        service_type: DriverServiceType = DriverServiceType.RIDE,
        location=PICKUP,
        verified: bool = True,
        online: bool = True,
    ) -> tuple[User, DriverProfile]:
        u = self.user()
        p = DriverProfile(
            user_id=u.id,
            service_type=service_type,
            is_verified=verified,
            is_online=online,
            current_lat=location[0] if location else None,
            current_lng=location[1] if location else None,
        )
        self.db.add(p)
        self.db.commit()
        self.db.refresh(p)
        return u, p

    def service(self, name: str = "Сантехник") -> Service:
        s = Service(name=name, category="дом", is_active=True)
        self.db.add(s)
        self.db.commit()
        self.db.refresh(s)
        return s

    def master(self, services, verified: bool = True) -> tuple[User, ServiceProviderProfile]:
        u = self.user()
        p = ServiceProviderProfile(user_id=u.id, is_verified=verified, services=list(services))
        self.db.add(p)
        self.db.commit()
        self.db.refresh(p)
        return u, p

    def city(self, name: str) -> City:
        c = City(name=name, country="KZ", is_active=True)
        self.db.add(c)
        self.db.commit()
        self.db.refresh(c)
        return c


class MarketTestCase(unittest.TestCase):
    def setUp(self):
        self.engine = memory_engine()
        init_db(self.engine)
        self.Session = build_sessionmaker(self.engine)
        self.db = self.Session()
        self.make = Factory(self.db)

    def tearDown(self):
        self.db.close()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def as_principal(self, user: User) -> Principal:
        return self.make.principal(user)


TODAY = dt.date(2030, 1, 10)
TRAVEL_DAY = dt.datetime(2030, 1, 15, 9, 30)
