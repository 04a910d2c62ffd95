# ridemarket/models/ride.py
from sqlalchemy import Column, String, Float, Boolean

from .base import Base
from .marketplace import RequestMixin, BidMixin, RequestKind


class RideRequest(RequestMixin, Base):
    __tablename__ = "ride_requests"
    kind = RequestKind.RIDE

    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    pickup_address = Column(String(300), nullable=False)

    destination_lat = Column(Float, nullable=False)
    destination_lng = Column(Float, nullable=False)
    destination_address = Column(String(300), nullable=False)

    distance_km = Column(Float, nullable=True)
    is_round_trip = Column(Boolean, nullable=False, default=False)

    @property
    def pickup_location(self) -> tuple[float, float]:
        return (self.pickup_lat, self.pickup_lng)

    def to_dict(self) -> dict:
        out = self.lifecycle_dict()
        out.update({
            "pickup": {"lat": self.pickup_lat, "lng": self.pickup_lng, "address": self.pickup_address},
            "destination": {"lat": self.destination_lat, "lng": self.destination_lng, "address": self.destination_address},
            "distance_km": self.distance_km,
            "is_round_trip": bool(self.is_round_trip),
        })
        return out


class RideBid(BidMixin, Base):
    __tablename__ = "ride_bids"
    __request_table__ = "ride_requests"
