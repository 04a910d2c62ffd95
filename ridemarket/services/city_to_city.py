"""
Попутчики между городами: водитель (has-car) и пассажиры (needs-car).

Поиск подбирает встречные заявки по маршруту и дню поездки, пассажиру
дополнительно предлагаются водители на соседние дни. Матч инициирует
водитель; число активных матчей водителя не превышает number_of_seats,
счётчик active_match_count меняется только атомарным UPDATE.
"""
from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field

from sqlalchemy import select, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from ..deps import Principal
from ..errors import (
    ValidationError, NotFound, PermissionDenied, ActiveRequestExists, RequestNotAvailable,
    DriverCapacityFull, SameUserType, RouteMismatch, AlreadyMatched, InvalidTransitionError,
)
from ..models.city import (
    City, CityToCityRequest, CityToCityMatch, CityUserType, CityRequestStatus, MatchStatus,
    CITY_ACTIVE_STATUSES,
)
from ..models.user import User
from .requests import parse_price

logger = logging.getLogger(__name__)

C2C = CityToCityRequest
M = CityToCityMatch


# ---------- утилиты ----------

def _today(today: dt.date | None) -> dt.date:
    return today or dt.date.today()


def _day_bounds(day: dt.date) -> tuple[dt.datetime, dt.datetime]:
    start = dt.datetime.combine(day, dt.time.min)
    return start, start + dt.timedelta(days=1)


def _parse_travel_date(raw) -> dt.datetime:
    if isinstance(raw, dt.datetime):
        value = raw
    elif isinstance(raw, dt.date):
        value = dt.datetime.combine(raw, dt.time.min)
    else:
        try:
            value = dt.datetime.fromisoformat(str(raw).strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError("Некорректная дата поездки")
    return value.replace(tzinfo=None)


def _positive_int(raw, key: str, required: bool = True) -> int | None:
    if raw in (None, ""):
        if required:
            raise ValidationError(f"Поле {key} обязательно")
        return None
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"Некорректное значение {key}")
    if value < 0 or (required and value < 1):
        raise ValidationError(f"Некорректное значение {key}")
    return value


def get_city_request(db: Session, request_id: int, for_update: bool = False) -> CityToCityRequest:
    stmt = select(C2C).where(C2C.id == request_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update(of=C2C)
    req = db.execute(stmt).unique().scalar_one_or_none()
    if not req:
        raise NotFound("Заявка не найдена")
    return req


def _get_match(db: Session, match_id: int) -> CityToCityMatch:
    match = db.get(M, match_id, populate_existing=True)
    if not match:
        raise NotFound("Совпадение не найдено")
    return match


# ---------- создание ----------

def _ensure_no_active_city(db: Session, principal: Principal, today: dt.date) -> None:
    existing = get_active_city_request(db, principal, today=today)
    if existing:
        raise ActiveRequestExists(
            "У вас уже есть активная заявка между городами. Отмените её, чтобы создать новую.",
            existing_request_id=existing.id,
        )


def create_city_request(
    db: Session,
    principal: Principal,
    payload: dict,
    today: dt.date | None = None,
) -> CityToCityRequest:
    today = _today(today)

    user = db.get(User, principal.user_id)
    if not user:
        raise NotFound("Пользователь не найден")
    if not user.is_verified:
        raise PermissionDenied("Для поездок между городами нужна верификация личности")

    try:
        user_type = CityUserType(str(payload.get("user_type") or "").strip())
    except ValueError:
        raise ValidationError("Некорректный тип пользователя")

    try:
        from_city_id = int(payload.get("from_city_id"))
        to_city_id = int(payload.get("to_city_id"))
    except (TypeError, ValueError):
        raise ValidationError("Укажите города отправления и назначения")
    if from_city_id == to_city_id:
        raise ValidationError("Города отправления и назначения совпадают")
    for city_id in (from_city_id, to_city_id):
        city = db.get(City, city_id)
        if not city or not city.is_active:
            raise NotFound("Город не найден")

    if payload.get("travel_date") in (None, ""):
        raise ValidationError("Поле travel_date обязательно")
    travel_date = _parse_travel_date(payload.get("travel_date"))
    if travel_date.date() < today:
        raise ValidationError("Дата поездки не может быть в прошлом")

    note = (str(payload.get("note") or "").strip()[:500]) or None

    req = C2C(
        user_id=principal.user_id,
        user_type=user_type,
        from_city_id=from_city_id,
        to_city_id=to_city_id,
        travel_date=travel_date,
        note=note,
        status=CityRequestStatus.SEARCHING,
        active_match_count=0,
    )
    if user_type == CityUserType.HAS_CAR:
        req.price_per_passenger = parse_price(payload.get("price_per_passenger"), field="price_per_passenger")
        req.number_of_seats = _positive_int(payload.get("number_of_seats"), "number_of_seats")
        req.max_bags = _positive_int(payload.get("max_bags"), "max_bags", required=False)
    else:
        req.willing_to_pay = parse_price(payload.get("willing_to_pay"), field="willing_to_pay")
        req.needed_seats = _positive_int(payload.get("needed_seats") or 1, "needed_seats")
        req.user_bags = _positive_int(payload.get("user_bags"), "user_bags", required=False)

    _ensure_no_active_city(db, principal, today)

    db.add(req)
    try:
        db.commit()
    except IntegrityError:
        # параллельное создание: уникальный индекс пропустил только одну заявку
        db.rollback()
        _ensure_no_active_city(db, principal, today)
        raise
    db.refresh(req)
    logger.info(
        "city request %s created by user %s (%s, %s -> %s on %s)",
        req.id, req.user_id, user_type.value, from_city_id, to_city_id, travel_date.date(),
    )
    return req


# ---------- истечение ----------

def expire_if_past(db: Session, req: CityToCityRequest, today: dt.date | None = None) -> bool:
    """Ленивое истечение: дата поездки прошла -> expired. True, если заявка истекла."""
    if CityRequestStatus(req.status) not in CITY_ACTIVE_STATUSES:
        return False
    if req.travel_date.date() >= _today(today):
        return False

    res = db.execute(
        C2C.__table__.update()
        .where(C2C.id == req.id, C2C.status.in_(CITY_ACTIVE_STATUSES))
        .values(status=CityRequestStatus.EXPIRED)
    )
    db.commit()
    db.refresh(req)
    if res.rowcount:
        logger.info("city request %s expired (travel date %s)", req.id, req.travel_date.date())
    return True


def get_active_city_request(db: Session, principal: Principal, today: dt.date | None = None):
    candidates = db.execute(
        select(C2C)
        .where(C2C.user_id == principal.user_id, C2C.status.in_(CITY_ACTIVE_STATUSES))
        .order_by(C2C.created_at.desc(), C2C.id.desc())
    ).unique().scalars().all()
    for req in candidates:
        if not expire_if_past(db, req, today=today):
            return req
    return None


# ---------- поиск ----------

@dataclass
class SearchResult:
    request: CityToCityRequest | None
    matches: list = field(default_factory=list)
    # (заявка водителя, разница в днях)
    suggestions: list = field(default_factory=list)
    expired: bool = False

    def to_dict(self) -> dict:
        return {
            "request": self.request.to_dict() if self.request else None,
            "matches": [r.to_dict() for r in self.matches],
            "suggestions": [
                {**r.to_dict(), "date_difference": diff} for r, diff in self.suggestions
            ],
            "expired": self.expired,
        }


def _candidates_query(req: CityToCityRequest):
    return select(C2C).where(
        C2C.id != req.id,
        C2C.user_id != req.user_id,
        C2C.from_city_id == req.from_city_id,
        C2C.to_city_id == req.to_city_id,
        C2C.user_type == CityUserType(req.user_type).opposite,
        C2C.status == CityRequestStatus.SEARCHING,
    )


def search(
    db: Session,
    request_id: int,
    principal: Principal,
    today: dt.date | None = None,
) -> SearchResult:
    """
    Встречные заявки на тот же маршрут и тот же день (время не учитывается).
    Цена при поиске не фильтруется. Пассажиру дополнительно возвращаются
    водители на день раньше/позже с date_difference.
    """
    req = get_city_request(db, request_id)
    if req.user_id != principal.user_id and not principal.is_admin:
        raise PermissionDenied("Искать можно только по своей заявке")

    if expire_if_past(db, req, today=today):
        return SearchResult(request=req, expired=True)
    if CityRequestStatus(req.status) != CityRequestStatus.SEARCHING:
        return SearchResult(request=req)

    day = req.travel_date.date()
    start, end = _day_bounds(day)

    stmt = _candidates_query(req).where(C2C.travel_date >= start, C2C.travel_date < end)
    if req.user_type == CityUserType.HAS_CAR:
        already = select(M.passenger_request_id).where(
            M.driver_request_id == req.id, M.status == MatchStatus.ACTIVE,
        )
        stmt = stmt.where(C2C.id.not_in(already))
    matches = db.execute(stmt.order_by(C2C.created_at.desc(), C2C.id.desc())).unique().scalars().all()

    suggestions = []
    if req.user_type == CityUserType.NEEDS_CAR:
        before_start, _ = _day_bounds(day - dt.timedelta(days=1))
        after_start, after_end = _day_bounds(day + dt.timedelta(days=1))
        rows = db.execute(
            _candidates_query(req)
            .where(or_(
                (C2C.travel_date >= before_start) & (C2C.travel_date < start),
                (C2C.travel_date >= after_start) & (C2C.travel_date < after_end),
            ))
            .order_by(C2C.travel_date.asc(), C2C.id.asc())
        ).unique().scalars().all()
        suggestions = [(r, abs((r.travel_date.date() - day).days)) for r in rows]

    logger.debug("city search for request %s: %s matches, %s suggestions", req.id, len(matches), len(suggestions))
    return SearchResult(request=req, matches=list(matches), suggestions=suggestions)


# ---------- матчи ----------

def create_match(
    db: Session,
    driver_request_id: int,
    passenger_request_id: int,
    principal: Principal,
    today: dt.date | None = None,
) -> CityToCityMatch:
    driver = get_city_request(db, driver_request_id)
    passenger = get_city_request(db, passenger_request_id)

    if driver.user_id != principal.user_id:
        raise PermissionDenied("Сопоставление создаёт водитель со своей заявки")
    if driver.user_type == passenger.user_type:
        raise SameUserType()
    if driver.user_type != CityUserType.HAS_CAR:
        raise PermissionDenied("Сопоставление создаёт только водитель")
    if (driver.from_city_id, driver.to_city_id) != (passenger.from_city_id, passenger.to_city_id):
        raise RouteMismatch()

    if expire_if_past(db, driver, today=today):
        raise RequestNotAvailable("Заявка водителя истекла")
    if expire_if_past(db, passenger, today=today) or passenger.status != CityRequestStatus.SEARCHING:
        raise AlreadyMatched()
    if driver.status == CityRequestStatus.MATCHED:
        raise DriverCapacityFull()
    if driver.status != CityRequestStatus.SEARCHING:
        raise RequestNotAvailable("Заявка водителя неактивна")
    if driver.active_match_count >= (driver.number_of_seats or 0):
        raise DriverCapacityFull()

    try:
        # занимаем место: проверка и инкремент одним UPDATE
        res = db.execute(
            C2C.__table__.update()
            .where(
                C2C.id == driver.id,
                C2C.status == CityRequestStatus.SEARCHING,
                C2C.active_match_count < C2C.number_of_seats,
            )
            .values(active_match_count=C2C.active_match_count + 1)
        )
        if res.rowcount != 1:
            raise DriverCapacityFull()

        res = db.execute(
            C2C.__table__.update()
            .where(C2C.id == passenger.id, C2C.status == CityRequestStatus.SEARCHING)
            .values(status=CityRequestStatus.MATCHED)
        )
        if res.rowcount != 1:
            raise AlreadyMatched()

        match = M(
            driver_request_id=driver.id,
            passenger_request_id=passenger.id,
            status=MatchStatus.ACTIVE,
        )
        db.add(match)

        # мест больше нет -> водитель тоже matched
        db.execute(
            C2C.__table__.update()
            .where(
                C2C.id == driver.id,
                C2C.status == CityRequestStatus.SEARCHING,
                C2C.active_match_count >= C2C.number_of_seats,
            )
            .values(status=CityRequestStatus.MATCHED)
        )
        db.commit()
    except (DriverCapacityFull, AlreadyMatched) as e:
        db.rollback()
        logger.info(
            "city match %s/%s rejected: %s", driver_request_id, passenger_request_id, e.code,
        )
        raise
    except Exception:
        db.rollback()
        raise

    db.refresh(match)
    db.refresh(driver)
    db.refresh(passenger)
    logger.info(
        "city match %s: driver request %s (%s/%s seats) <-> passenger request %s",
        match.id, driver.id, driver.active_match_count, driver.number_of_seats, passenger.id,
    )
    return match


def _release_seat(db: Session, driver_request_id: int) -> None:
    db.execute(
        C2C.__table__.update()
        .where(C2C.id == driver_request_id, C2C.active_match_count > 0)
        .values(active_match_count=C2C.active_match_count - 1)
    )


def _has_active_matches(db: Session, request_id: int) -> bool:
    return db.execute(
        select(M.id).where(
            or_(M.driver_request_id == request_id, M.passenger_request_id == request_id),
            M.status == MatchStatus.ACTIVE,
        ).limit(1)
    ).first() is not None


def complete_match(db: Session, match_id: int, principal: Principal) -> CityToCityMatch:
    """
    Любая сторона завершает активный матч. Заявка, у которой не осталось
    активных матчей, становится completed.
    """
    match = _get_match(db, match_id)
    driver = get_city_request(db, match.driver_request_id)
    passenger = get_city_request(db, match.passenger_request_id)
    if principal.user_id not in (driver.user_id, passenger.user_id):
        raise PermissionDenied("Завершить может только участник поездки")
    if match.status != MatchStatus.ACTIVE:
        raise ValidationError("Поездка уже завершена или отменена")

    try:
        res = db.execute(
            M.__table__.update()
            .where(M.id == match.id, M.status == MatchStatus.ACTIVE)
            .values(status=MatchStatus.COMPLETED)
        )
        if res.rowcount != 1:
            raise ValidationError("Поездка уже завершена или отменена")
        _release_seat(db, driver.id)

        for req in (driver, passenger):
            if not _has_active_matches(db, req.id):
                db.execute(
                    C2C.__table__.update()
                    .where(C2C.id == req.id, C2C.status.in_(CITY_ACTIVE_STATUSES))
                    .values(status=CityRequestStatus.COMPLETED)
                )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(match)
    logger.info("city match %s completed by user %s", match.id, principal.user_id)
    return match


def cancel_city_request(db: Session, request_id: int, principal: Principal) -> CityToCityRequest:
    """
    Отмена своей заявки. Повторная отмена: не ошибка.
    Активные матчи отменяются: пассажиры водителя снова ищут, место
    у водителя освобождается.
    """
    req = get_city_request(db, request_id)
    if req.user_id != principal.user_id and not principal.is_admin:
        raise PermissionDenied("Отменять можно только свои заявки")

    status = CityRequestStatus(req.status)
    if status == CityRequestStatus.CANCELLED:
        return req
    if status not in CITY_ACTIVE_STATUSES:
        logger.error("illegal transition for city request %s: %s -> cancelled", req.id, status.value)
        raise InvalidTransitionError(f"Недопустимый переход из {status.value} в cancelled")

    try:
        res = db.execute(
            C2C.__table__.update()
            .where(C2C.id == req.id, C2C.status.in_(CITY_ACTIVE_STATUSES))
            .values(status=CityRequestStatus.CANCELLED)
        )
        if res.rowcount != 1:
            # параллельная отмена/истечение
            db.rollback()
            return get_city_request(db, request_id)

        side = M.driver_request_id if req.is_driver else M.passenger_request_id
        active = db.execute(
            select(M).where(side == req.id, M.status == MatchStatus.ACTIVE)
        ).scalars().all()

        for match in active:
            db.execute(
                M.__table__.update()
                .where(M.id == match.id, M.status == MatchStatus.ACTIVE)
                .values(status=MatchStatus.CANCELLED)
            )
            if req.is_driver:
                db.execute(
                    C2C.__table__.update()
                    .where(C2C.id == match.passenger_request_id, C2C.status == CityRequestStatus.MATCHED)
                    .values(status=CityRequestStatus.SEARCHING)
                )
            else:
                _release_seat(db, match.driver_request_id)
                db.execute(
                    C2C.__table__.update()
                    .where(C2C.id == match.driver_request_id, C2C.status == CityRequestStatus.MATCHED)
                    .values(status=CityRequestStatus.SEARCHING)
                )

        if req.is_driver:
            db.execute(C2C.__table__.update().where(C2C.id == req.id).values(active_match_count=0))
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.expire_all()
    db.refresh(req)
    logger.info("city request %s cancelled by user %s, %s matches released", req.id, principal.user_id, len(active))
    return req


def counterpart_user_ids(db: Session, match: CityToCityMatch) -> tuple[int, int]:
    """(водитель, пассажир): user_id обеих сторон матча."""
    driver = get_city_request(db, match.driver_request_id)
    passenger = get_city_request(db, match.passenger_request_id)
    return driver.user_id, passenger.user_id


def list_matches(db: Session, principal: Principal, active_only: bool = False) -> list[dict]:
    """Матчи пользователя вместе со встречной заявкой."""
    drv = aliased(C2C)
    psg = aliased(C2C)
    stmt = (
        select(M, drv, psg)
        .join(drv, M.driver_request_id == drv.id)
        .join(psg, M.passenger_request_id == psg.id)
        .where(or_(drv.user_id == principal.user_id, psg.user_id == principal.user_id))
    )
    if active_only:
        stmt = stmt.where(M.status == MatchStatus.ACTIVE)

    out = []
    for match, d, p in db.execute(stmt.order_by(M.id.desc())).unique().all():
        role = "driver" if d.user_id == principal.user_id else "passenger"
        item = match.to_dict()
        item["role"] = role
        item["counterpart"] = (p if role == "driver" else d).to_dict()
        out.append(item)
    return out
