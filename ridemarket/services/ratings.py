"""
Оценки после выполненной заявки: клиент оценивает исполнителя и наоборот.

Средняя оценка исполнителя показывается клиенту рядом с его ставкой.
"""
from __future__ import annotations

import logging

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..deps import Principal
from ..errors import ValidationError, PermissionDenied, RequestNotAvailable
from ..models.marketplace import RequestStatus
from ..models.rating import Rating
from .kinds import parse_kind
from .requests import get_request

logger = logging.getLogger(__name__)


def _counterpart(req, user_id: int) -> tuple[int | None, str]:
    """(кого оценивает user_id, его роль в заявке)."""
    if req.consumer_id == user_id:
        return req.provider_id, "consumer"
    if req.provider_id is not None and req.provider_id == user_id:
        return req.consumer_id, "provider"
    raise PermissionDenied("Оценивать могут только участники заявки")


def _parse_rating(raw) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("Оценка должна быть числом от 1 до 5")
    if str(raw).strip() not in (str(value), f"{value}.0") or not 1 <= value <= 5:
        raise ValidationError("Оценка должна быть числом от 1 до 5")
    return value


def _find(db: Session, kind, request_id: int, rater_id: int):
    return db.execute(
        select(Rating).where(
            Rating.kind == kind,
            Rating.request_id == request_id,
            Rating.rater_id == rater_id,
        )
    ).scalar_one_or_none()


def rate(
    db: Session,
    kind,
    request_id: int,
    principal: Principal,
    rating,
    review: str | None = None,
    ratee_id: int | None = None,
):
    """
    Участник завершённой заявки ставит оценку другой стороне.
    Повторная оценка перезаписывает прежнюю. Возвращает (rating, created).
    """
    kind = parse_kind(kind)
    value = _parse_rating(rating)
    review = (str(review).strip()[:1000] or None) if review else None

    req = get_request(db, kind, request_id)
    expected, role = _counterpart(req, principal.user_id)
    if RequestStatus(req.status) != RequestStatus.COMPLETED or expected is None:
        raise RequestNotAvailable("Оценить можно только завершённую заявку")
    if ratee_id is not None and int(ratee_id) != expected:
        raise ValidationError("Неверный получатель оценки для этой заявки")
    if expected == principal.user_id:
        raise ValidationError("Нельзя оценить самого себя")

    for attempt in range(2):
        existing = _find(db, kind, req.id, principal.user_id)
        if existing:
            existing.rating = value
            existing.review = review
            db.commit()
            db.refresh(existing)
            return existing, False

        item = Rating(
            kind=kind,
            request_id=req.id,
            rater_id=principal.user_id,
            ratee_id=expected,
            rater_role=role,
            rating=value,
            review=review,
        )
        db.add(item)
        try:
            db.commit()
        except IntegrityError:
            # параллельная первая оценка того же участника: перезаписываем её
            db.rollback()
            if attempt:
                raise
            continue
        db.refresh(item)
        logger.info("%s request %s rated %s by user %s", kind.value, req.id, value, principal.user_id)
        return item, True


def has_rated(db: Session, kind, request_id: int, principal: Principal) -> bool:
    kind = parse_kind(kind)
    req = get_request(db, kind, request_id)
    expected, _ = _counterpart(req, principal.user_id)
    if expected is None:
        return False
    return _find(db, kind, req.id, principal.user_id) is not None


def rating_summaries(db: Session, user_ids) -> dict[int, dict]:
    """Средняя оценка (до десятых) и число оценок по каждому пользователю."""
    ids = sorted({int(u) for u in user_ids if u is not None})
    out = {uid: {"average_rating": 0.0, "total_ratings": 0} for uid in ids}
    if not ids:
        return out
    rows = db.execute(
        select(Rating.ratee_id, func.avg(Rating.rating), func.count(Rating.id))
        .where(Rating.ratee_id.in_(ids))
        .group_by(Rating.ratee_id)
    ).all()
    for ratee_id, avg, count in rows:
        out[ratee_id] = {"average_rating": round(float(avg), 1), "total_ratings": int(count)}
    return out


def rating_summary(db: Session, user_id: int) -> dict:
    return rating_summaries(db, [user_id])[int(user_id)]


def bids_with_ratings(db: Session, bids) -> list[dict]:
    """Ставки для клиента вместе с рейтингом исполнителя."""
    summaries = rating_summaries(db, [b.provider_id for b in bids])
    out = []
    for b in bids:
        item = b.to_dict()
        item["provider_rating"] = summaries[b.provider_id]
        out.append(item)
    return out
