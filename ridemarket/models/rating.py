# ridemarket/models/rating.py
# Взаимная оценка сторон завершённой заявки (клиент <-> исполнитель).
from __future__ import annotations

import datetime as dt

from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Enum, Index, UniqueConstraint, CheckConstraint
)

from .base import Base
from .marketplace import RequestKind


class Rating(Base):
    __tablename__ = "ratings"

    id = Column(Integer, primary_key=True)
    kind = Column(Enum(RequestKind), nullable=False)
    request_id = Column(Integer, nullable=False)   # id в таблице заявок своего вида

    rater_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    ratee_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    # 'consumer' / 'provider'
    rater_role = Column(String(20), nullable=False)

    rating = Column(Integer, nullable=False)
    review = Column(String(1000), nullable=True)

    created_at = Column(DateTime(timezone=True), default=dt.datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow)

    __table_args__ = (
        # одна оценка от участника на заявку, повторная перезаписывает
        UniqueConstraint("kind", "request_id", "rater_id", name="uq_ratings_request_rater"),
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_ratings_range"),
        Index("ix_ratings_request", "kind", "request_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value if hasattr(self.kind, "value") else self.kind,
            "request_id": self.request_id,
            "rater_id": self.rater_id,
            "ratee_id": self.ratee_id,
            "rater_role": self.rater_role,
            "rating": self.rating,
            "review": self.review,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
