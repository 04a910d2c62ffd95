# ridemarket/models/provider.py
from __future__ import annotations

import enum

from sqlalchemy import (
    Column, Integer, Boolean, String, Float, DateTime, ForeignKey, Enum, Table, UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .base import Base


class DriverServiceType(str, enum.Enum):
    RIDE   = "ride"     # такси
    PARCEL = "parcel"   # доставка посылок


class DriverProfile(Base):
    __tablename__ = "driver_profiles"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    service_type = Column(Enum(DriverServiceType), nullable=False, default=DriverServiceType.RIDE)

    # модерация/видимость
    is_verified = Column(Boolean, default=False, nullable=False)
    is_online   = Column(Boolean, default=False, nullable=False)

    # последняя известная позиция (None: нет фикса, водитель не виден в поиске)
    current_lat = Column(Float, nullable=True)
    current_lng = Column(Float, nullable=True)
    location_updated_at = Column(DateTime(timezone=True), nullable=True)

    # анкета и авто
    full_name      = Column(String(200), nullable=True)
    license_number = Column(String(50), nullable=True)
    vehicle_make   = Column(String(80), nullable=True)
    vehicle_model  = Column(String(80), nullable=True)
    vehicle_color  = Column(String(40), nullable=True)
    vehicle_plate  = Column(String(20), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", name="uniq_driver_profile_per_user"),
    )

    @property
    def location(self) -> tuple[float, float] | None:
        if self.current_lat is None or self.current_lng is None:
            return None
        return (self.current_lat, self.current_lng)


provider_services = Table(
    "provider_services",
    Base.metadata,
    Column("provider_id", Integer, ForeignKey("service_provider_profiles.id", ondelete="CASCADE"), primary_key=True),
    Column("service_id", Integer, ForeignKey("services.id", ondelete="CASCADE"), primary_key=True),
)


class ServiceProviderProfile(Base):
    __tablename__ = "service_provider_profiles"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    is_verified = Column(Boolean, default=False, nullable=False)
    is_online   = Column(Boolean, default=True, nullable=False)

    full_name  = Column(String(200), nullable=True)
    bio        = Column(String(1000), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    services = relationship("Service", secondary=provider_services, lazy="selectin")

    __table_args__ = (
        UniqueConstraint("user_id", name="uniq_service_provider_per_user"),
    )

    @property
    def service_ids(self) -> set[int]:
        return {s.id for s in self.services}
