"""
Принятие ставки заказчиком.

Всё или ничего: ставка -> accepted, остальные pending-ставки -> rejected,
заявке назначается исполнитель и итоговая цена. Из нескольких параллельных
принятий по одной заявке проходит ровно одно, остальные получают
RequestAlreadyAssigned / BidNoLongerAvailable.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from ..deps import Principal
from ..errors import (
    PermissionDenied, RequestAlreadyAssigned, RequestNotAvailable, BidNoLongerAvailable,
)
from ..models.marketplace import BidStatus, RequestKind, RequestStatus, ACCEPTABLE_STATUSES
from .bids import get_bid
from .kinds import parse_kind, request_model, bid_model
from .requests import get_request

logger = logging.getLogger(__name__)


@dataclass
class AcceptanceResult:
    kind: RequestKind
    request: object
    bid: object
    rejected_count: int

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "request": self.request.to_dict(),
            "bid": self.bid.to_dict(),
            "rejected_count": self.rejected_count,
        }


def _precheck(req, bid, principal: Principal) -> None:
    if req.consumer_id != principal.user_id:
        raise PermissionDenied("Принять ставку может только владелец заявки")
    # ставка проверяется раньше заявки: повторное принятие проигравшей ставки -> bid_no_longer_available
    if bid.status != BidStatus.PENDING:
        raise BidNoLongerAvailable()
    if req.provider_id is not None:
        raise RequestAlreadyAssigned()
    if RequestStatus(req.status) not in ACCEPTABLE_STATUSES:
        raise RequestNotAvailable()


def accept_bid(db: Session, kind, bid_id: int, principal: Principal) -> AcceptanceResult:
    kind = parse_kind(kind)
    req_cls, bid_cls = request_model(kind), bid_model(kind)

    bid = get_bid(db, kind, bid_id)
    req = get_request(db, kind, bid.request_id)
    _precheck(req, bid, principal)

    try:
        # статус перечитываем под блокировкой строки заявки
        req = get_request(db, kind, bid.request_id, for_update=True)
        if req.provider_id is not None:
            raise RequestAlreadyAssigned()

        res = db.execute(
            req_cls.__table__.update()
            .where(
                req_cls.id == req.id,
                req_cls.provider_id.is_(None),
                req_cls.status.in_(ACCEPTABLE_STATUSES),
            )
            .values(
                provider_id=bid.provider_id,
                final_price=bid.bid_price,
                status=RequestStatus.ACCEPTED,
            )
        )
        if res.rowcount != 1:
            raise RequestAlreadyAssigned()

        res = db.execute(
            bid_cls.__table__.update()
            .where(
                bid_cls.id == bid.id,
                bid_cls.request_id == req.id,
                bid_cls.status == BidStatus.PENDING,
            )
            .values(status=BidStatus.ACCEPTED)
        )
        if res.rowcount != 1:
            raise BidNoLongerAvailable()

        res = db.execute(
            bid_cls.__table__.update()
            .where(
                bid_cls.request_id == req.id,
                bid_cls.id != bid.id,
                bid_cls.status == BidStatus.PENDING,
            )
            .values(status=BidStatus.REJECTED)
        )
        rejected = res.rowcount or 0

        db.commit()
    except (RequestAlreadyAssigned, BidNoLongerAvailable) as e:
        db.rollback()
        logger.info("%s bid %s lost acceptance race on request %s: %s", kind.value, bid_id, bid.request_id, e.code)
        raise
    except Exception:
        db.rollback()
        raise

    # остальные ставки менялись UPDATE-ом мимо ORM
    db.expire_all()
    db.refresh(req)
    db.refresh(bid)
    logger.info(
        "%s request %s accepted bid %s: provider=%s final_price=%s, rejected %s",
        kind.value, req.id, bid.id, req.provider_id, req.final_price, rejected,
    )
    return AcceptanceResult(kind=kind, request=req, bid=bid, rejected_count=rejected)
