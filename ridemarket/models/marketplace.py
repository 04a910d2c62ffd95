# ridemarket/models/marketplace.py
# Общие статусы и колонки для заявок (такси, посылки, услуги) и ставок по ним.
from __future__ import annotations

import datetime as dt
import enum

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, ForeignKey, Enum, Index, UniqueConstraint, text
)
from sqlalchemy.orm import declared_attr


class RequestStatus(str, enum.Enum):
    PENDING      = "pending"
    SEARCHING    = "searching"
    BID_RECEIVED = "bid_received"
    ACCEPTED     = "accepted"
    IN_PROGRESS  = "in_progress"
    COMPLETED    = "completed"
    CANCELLED    = "cancelled"
    EXPIRED      = "expired"


class BidStatus(str, enum.Enum):
    PENDING   = "pending"
    ACCEPTED  = "accepted"
    REJECTED  = "rejected"
    WITHDRAWN = "withdrawn"


class RequestKind(str, enum.Enum):
    RIDE    = "ride"
    PARCEL  = "parcel"
    SERVICE = "service"


# ещё можно ставить
OPEN_STATUSES = (RequestStatus.PENDING, RequestStatus.SEARCHING, RequestStatus.BID_RECEIVED)
# можно принять ставку
ACCEPTABLE_STATUSES = (RequestStatus.SEARCHING, RequestStatus.BID_RECEIVED)
# исполнитель назначен
ASSIGNED_STATUSES = (RequestStatus.ACCEPTED, RequestStatus.IN_PROGRESS, RequestStatus.COMPLETED)
TERMINAL_STATUSES = (RequestStatus.COMPLETED, RequestStatus.CANCELLED, RequestStatus.EXPIRED)
ACTIVE_STATUSES = OPEN_STATUSES + (RequestStatus.ACCEPTED, RequestStatus.IN_PROGRESS)


def status_in(statuses):
    """WHERE для частичного индекса: Enum хранится в БД по имени члена."""
    names = ", ".join(f"'{s.name}'" for s in statuses)
    return text(f"status IN ({names})")


def _enum_value(x):
    return x.value if hasattr(x, "value") else x


def _money(x):
    return float(x) if x is not None else None


def _dt(x):
    if isinstance(x, (dt.date, dt.datetime)):
        return x.isoformat()
    return x


class RequestMixin:
    """
    Колонки жизненного цикла, одинаковые для всех видов заявок.
    provider_id заполняется только транзакцией принятия ставки.
    """
    kind = None  # RequestKind, задаётся в модели

    id = Column(Integer, primary_key=True)

    @declared_attr
    def consumer_id(cls):
        return Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    @declared_attr
    def provider_id(cls):
        return Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    price       = Column(Numeric(10, 2), nullable=False)   # оценка/бюджет клиента
    final_price = Column(Numeric(10, 2), nullable=True)    # цена принятой ставки

    status = Column(Enum(RequestStatus), nullable=False, default=RequestStatus.SEARCHING)
    cancel_reason = Column(String(300), nullable=True)

    created_at = Column(DateTime(timezone=True), default=dt.datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow)

    @declared_attr
    def __table_args__(cls):
        # не более одной активной заявки клиента на вид заявки
        active = status_in(ACTIVE_STATUSES)
        return (
            Index(f"ix_{cls.__tablename__}_status", "status"),
            Index(
                f"uq_{cls.__tablename__}_one_active", "consumer_id",
                unique=True, sqlite_where=active, postgresql_where=active,
            ),
        )

    def lifecycle_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "consumer_id": self.consumer_id,
            "provider_id": self.provider_id,
            "status": _enum_value(self.status),
            "price": _money(self.price),
            "final_price": _money(self.final_price),
            "cancel_reason": self.cancel_reason,
            "created_at": _dt(self.created_at),
            "updated_at": _dt(self.updated_at),
        }

    def to_dict(self) -> dict:
        return self.lifecycle_dict()


class BidMixin:
    """Ставка исполнителя. Не более одной живой ставки на пару (заявка, исполнитель)."""
    __request_table__ = None  # имя таблицы заявок

    id = Column(Integer, primary_key=True)

    @declared_attr
    def request_id(cls):
        return Column(
            Integer,
            ForeignKey(f"{cls.__request_table__}.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )

    @declared_attr
    def provider_id(cls):
        return Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    bid_price = Column(Numeric(10, 2), nullable=False)
    message   = Column(String(500), nullable=True)
    status    = Column(Enum(BidStatus), nullable=False, default=BidStatus.PENDING)

    created_at = Column(DateTime(timezone=True), default=dt.datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow)

    @declared_attr
    def __table_args__(cls):
        return (
            UniqueConstraint("request_id", "provider_id", name=f"uq_{cls.__tablename__}_request_provider"),
            Index(f"ix_{cls.__tablename__}_request_status", "request_id", "status"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "provider_id": self.provider_id,
            "bid_price": _money(self.bid_price),
            "message": self.message,
            "status": _enum_value(self.status),
            "created_at": _dt(self.created_at),
            "updated_at": _dt(self.updated_at),
        }
