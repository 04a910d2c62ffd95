# ridemarket/models/parcel.py
from __future__ import annotations

import enum

from sqlalchemy import Column, String, Float, Enum

from .base import Base
from .marketplace import RequestMixin, BidMixin, RequestKind


class ParcelVehicleType(str, enum.Enum):
    MOTORBIKE = "motorbike"   # пока доступен только мотоцикл


class ParcelRequest(RequestMixin, Base):
    __tablename__ = "parcel_requests"
    kind = RequestKind.PARCEL

    vehicle_type = Column(Enum(ParcelVehicleType), nullable=False, default=ParcelVehicleType.MOTORBIKE)

    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    pickup_address = Column(String(300), nullable=False)

    delivery_lat = Column(Float, nullable=False)
    delivery_lng = Column(Float, nullable=False)
    delivery_address = Column(String(300), nullable=False)

    distance_km = Column(Float, nullable=True)
    details = Column(String(1000), nullable=True)

    @property
    def pickup_location(self) -> tuple[float, float]:
        return (self.pickup_lat, self.pickup_lng)

    def to_dict(self) -> dict:
        out = self.lifecycle_dict()
        out.update({
            "vehicle_type": self.vehicle_type.value if hasattr(self.vehicle_type, "value") else self.vehicle_type,
            "pickup": {"lat": self.pickup_lat, "lng": self.pickup_lng, "address": self.pickup_address},
            "delivery": {"lat": self.delivery_lat, "lng": self.delivery_lng, "address": self.delivery_address},
            "distance_km": self.distance_km,
            "details": self.details,
        })
        return out


class ParcelBid(BidMixin, Base):
    __tablename__ = "parcel_bids"
    __request_table__ = "parcel_requests"
