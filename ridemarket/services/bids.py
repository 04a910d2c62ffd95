"""
Журнал ставок: подача (upsert по паре заявка+исполнитель), просмотр, отзыв.
"""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..deps import Principal
from ..errors import (
    ValidationError, InvalidBidPrice, NotFound, NotEligible, PermissionDenied,
    RequestUnavailable, BidNoLongerAvailable,
)
from ..models.marketplace import BidStatus, RequestStatus, OPEN_STATUSES
from .eligibility import load_provider, ensure_eligible
from .kinds import parse_kind, request_model, bid_model
from .requests import get_request, parse_price, is_legal_edge

logger = logging.getLogger(__name__)


def _ensure_request_open(req) -> None:
    if req.provider_id is not None:
        raise RequestUnavailable("Заявка уже назначена другому исполнителю")
    if RequestStatus(req.status) not in OPEN_STATUSES:
        raise RequestUnavailable("Заявка больше не принимает ставки")


def _upsert_bid(db: Session, bid_cls, req, provider_user_id: int, price, message):
    existing = db.execute(
        select(bid_cls).where(
            bid_cls.request_id == req.id,
            bid_cls.provider_id == provider_user_id,
        )
    ).scalar_one_or_none()

    if existing:
        # повторная ставка: обновляем на месте и снова в pending
        existing.bid_price = price
        existing.message = message
        existing.status = BidStatus.PENDING
        db.flush()
        return existing, False

    bid = bid_cls(
        request_id=req.id,
        provider_id=provider_user_id,
        bid_price=price,
        message=message,
        status=BidStatus.PENDING,
    )
    db.add(bid)
    db.flush()
    return bid, True


def submit_bid(
    db: Session,
    kind,
    request_id: int,
    principal: Principal,
    price,
    message: str | None = None,
):
    """
    Исполнитель делает (или обновляет) ставку по открытой заявке.
    Возвращает (bid, request, created).
    """
    kind = parse_kind(kind)
    try:
        price = parse_price(price, field="bid_price")
    except ValidationError:
        raise InvalidBidPrice()
    message = (str(message).strip()[:500] or None) if message else None

    req_cls, bid_cls = request_model(kind), bid_model(kind)

    req = get_request(db, kind, request_id)
    if req.consumer_id == principal.user_id:
        raise NotEligible("Нельзя делать ставку на свою заявку")
    provider = load_provider(db, kind, principal.user_id)
    ensure_eligible(provider, req)
    _ensure_request_open(req)

    for attempt in range(2):
        try:
            # перечитываем статус внутри транзакции
            req = get_request(db, kind, request_id, for_update=True)
            _ensure_request_open(req)

            current = RequestStatus(req.status)
            new_status = current
            if current in (RequestStatus.PENDING, RequestStatus.SEARCHING) and is_legal_edge(
                current, RequestStatus.BID_RECEIVED
            ):
                new_status = RequestStatus.BID_RECEIVED
            # первая запись транзакции: заявка всё ещё открыта и не назначена,
            # иначе параллельное принятие уже прошло и ставка не вставляется
            res = db.execute(
                req_cls.__table__.update()
                .where(req_cls.id == req.id, req_cls.status == current, req_cls.provider_id.is_(None))
                .values(status=new_status)
            )
            if not res.rowcount:
                logger.info("%s request %s changed before bid by %s was stored",
                            kind.value, request_id, principal.user_id)
                raise RequestUnavailable("Заявка уже назначена или закрыта, обновите данные")

            bid, created = _upsert_bid(db, bid_cls, req, principal.user_id, price, message)
            db.commit()
            break
        except IntegrityError:
            # параллельная вставка той же пары (request_id, provider_id): повторяем как update
            db.rollback()
            if attempt:
                raise
            logger.info("duplicate bid insert for %s request %s by %s, retrying as update",
                        kind.value, request_id, principal.user_id)
        except Exception:
            db.rollback()
            raise

    db.refresh(bid)
    db.refresh(req)
    logger.info(
        "%s bid %s %s on request %s by provider %s (price=%s)",
        kind.value, bid.id, "created" if created else "updated", req.id, principal.user_id, bid.bid_price,
    )
    return bid, req, created


def get_bid(db: Session, kind, bid_id: int):
    bid = db.get(bid_model(kind), bid_id, populate_existing=True)
    if not bid:
        raise NotFound("Ставка не найдена")
    return bid


def list_bids_for(
    db: Session,
    kind,
    request_id: int,
    principal: Principal,
    status: BidStatus | str | None = None,
) -> list:
    """Ставки по заявке в порядке подачи. Видит владелец заявки."""
    bid_cls = bid_model(kind)
    req = get_request(db, kind, request_id)
    if req.consumer_id != principal.user_id and not principal.is_admin:
        raise PermissionDenied("Ставки видит только владелец заявки")

    stmt = select(bid_cls).where(bid_cls.request_id == req.id)
    if status:
        try:
            stmt = stmt.where(bid_cls.status == BidStatus(status))
        except ValueError:
            raise ValidationError("Неизвестный статус ставки")
    return db.execute(stmt.order_by(bid_cls.id.asc())).scalars().all()


def list_provider_bids(
    db: Session,
    kind,
    principal: Principal,
    status: BidStatus | str | None = BidStatus.PENDING,
    limit: int = 50,
) -> list:
    bid_cls = bid_model(kind)
    stmt = select(bid_cls).where(bid_cls.provider_id == principal.user_id)
    if status:
        stmt = stmt.where(bid_cls.status == BidStatus(status))
    return db.execute(stmt.order_by(bid_cls.id.desc()).limit(limit)).scalars().all()


def withdraw_bid(db: Session, kind, bid_id: int, principal: Principal):
    """Исполнитель отзывает свою ставку. Повторный отзыв: не ошибка."""
    bid_cls = bid_model(kind)
    bid = get_bid(db, kind, bid_id)
    if bid.provider_id != principal.user_id:
        raise PermissionDenied("Можно отзывать только свои ставки")
    if bid.status == BidStatus.WITHDRAWN:
        return bid
    if bid.status != BidStatus.PENDING:
        raise BidNoLongerAvailable()

    try:
        res = db.execute(
            bid_cls.__table__.update()
            .where(bid_cls.id == bid.id, bid_cls.status == BidStatus.PENDING)
            .values(status=BidStatus.WITHDRAWN)
        )
        if res.rowcount != 1:
            raise BidNoLongerAvailable()
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(bid)
    logger.info("bid %s withdrawn by provider %s", bid.id, principal.user_id)
    return bid
