# ridemarket/models/service.py
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey
from sqlalchemy.sql import func

from .base import Base
from .marketplace import RequestMixin, BidMixin, RequestKind


class Service(Base):
    """Каталог домашних услуг (сантехник, электрик, уборка...)."""
    __tablename__ = "services"

    id = Column(Integer, primary_key=True)
    name = Column(String(120), nullable=False, unique=True)
    category = Column(String(80), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "category": self.category, "is_active": bool(self.is_active)}


class ServiceRequest(RequestMixin, Base):
    __tablename__ = "service_requests"
    kind = RequestKind.SERVICE

    service_id = Column(Integer, ForeignKey("services.id"), nullable=False, index=True)
    job_description = Column(String(2000), nullable=False)
    location = Column(String(300), nullable=False)

    def to_dict(self) -> dict:
        out = self.lifecycle_dict()
        out.update({
            "service_id": self.service_id,
            "job_description": self.job_description,
            "location": self.location,
        })
        return out


class ServiceBid(BidMixin, Base):
    __tablename__ = "service_bids"
    __request_table__ = "service_requests"
