"""
Хранилище заявок (такси, посылки, услуги) и их машина состояний.

Единственный легальный способ поменять статус заявки: ``transition``.
Статус ``accepted`` (и назначение исполнителя) ставит только транзакция
принятия ставки в ``services.acceptance``.
"""
from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..deps import Principal
from ..errors import (
    ValidationError, NotFound, PermissionDenied, ActiveRequestExists,
    InvalidTransitionError, RequestUnavailable,
)
from ..models.marketplace import (
    RequestKind, RequestStatus, ACTIVE_STATUSES, TERMINAL_STATUSES,
)
from ..models.parcel import ParcelRequest, ParcelVehicleType
from ..models.ride import RideRequest
from ..models.service import Service, ServiceRequest
from .geo import validate_coordinates
from .kinds import parse_kind, request_model

logger = logging.getLogger(__name__)


# Разрешённые переходы. ACCEPTED сюда попадает только из транзакции принятия ставки.
_ALLOWED = {
    RequestStatus.PENDING:      {RequestStatus.SEARCHING, RequestStatus.BID_RECEIVED},
    RequestStatus.SEARCHING:    {RequestStatus.BID_RECEIVED, RequestStatus.ACCEPTED},
    RequestStatus.BID_RECEIVED: {RequestStatus.ACCEPTED},
    RequestStatus.ACCEPTED:     {RequestStatus.IN_PROGRESS},
    RequestStatus.IN_PROGRESS:  {RequestStatus.COMPLETED},
}
for _src in _ALLOWED:
    if _src not in TERMINAL_STATUSES:
        _ALLOWED[_src] |= {RequestStatus.CANCELLED, RequestStatus.EXPIRED}


def is_legal_edge(current: RequestStatus, new: RequestStatus) -> bool:
    return new in _ALLOWED.get(current, set())


# ---------- утилиты ----------

def _text(payload: dict, key: str, required: bool = True, max_len: int = 300) -> str | None:
    value = (payload.get(key) or "")
    value = str(value).strip()
    if not value:
        if required:
            raise ValidationError(f"Поле {key} обязательно")
        return None
    if len(value) > max_len:
        raise ValidationError(f"Поле {key} слишком длинное")
    return value


def parse_price(raw, field: str = "price") -> Decimal:
    if raw in (None, ""):
        raise ValidationError(f"Поле {field} обязательно")
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Некорректное значение {field}")
    if not value.is_finite() or value <= 0:
        raise ValidationError(f"{field} должно быть больше 0")
    return value.quantize(Decimal("0.01"))


def _coords(payload: dict, lat_key: str, lng_key: str) -> tuple[float, float]:
    lat, lng = payload.get(lat_key), payload.get(lng_key)
    if lat in (None, "") or lng in (None, ""):
        raise ValidationError(f"Укажите координаты {lat_key}/{lng_key}")
    if not validate_coordinates(lat, lng):
        raise ValidationError(f"Некорректные координаты {lat_key}/{lng_key}")
    return float(lat), float(lng)


def _optional_distance(payload: dict) -> float | None:
    raw = payload.get("distance_km", payload.get("distance"))
    if raw in (None, ""):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ValidationError("Некорректное расстояние")
    if value < 0:
        raise ValidationError("Расстояние не может быть отрицательным")
    return value


def _ensure_no_active(db: Session, model, consumer_id: int) -> None:
    existing = db.execute(
        select(model.id).where(
            model.consumer_id == consumer_id,
            model.status.in_(ACTIVE_STATUSES),
        ).limit(1)
    ).scalar_one_or_none()
    if existing:
        raise ActiveRequestExists(
            "У вас уже есть активная заявка. Отмените её или дождитесь завершения.",
            existing_request_id=existing,
        )


def _save_new(db: Session, request):
    db.add(request)
    try:
        db.commit()
    except IntegrityError:
        # параллельное создание: уникальный индекс активных заявок пропустил только одну
        db.rollback()
        _ensure_no_active(db, type(request), request.consumer_id)
        raise
    db.refresh(request)
    logger.info("%s request %s created by user %s", request.kind.value, request.id, request.consumer_id)
    return request


# ---------- создание ----------

def create_ride_request(db: Session, principal: Principal, payload: dict) -> RideRequest:
    pickup_lat, pickup_lng = _coords(payload, "pickup_lat", "pickup_lng")
    dest_lat, dest_lng = _coords(payload, "destination_lat", "destination_lng")
    pickup_address = _text(payload, "pickup_address")
    destination_address = _text(payload, "destination_address")
    price = parse_price(payload.get("price"))
    distance = _optional_distance(payload)

    _ensure_no_active(db, RideRequest, principal.user_id)

    return _save_new(db, RideRequest(
        consumer_id=principal.user_id,
        pickup_lat=pickup_lat,
        pickup_lng=pickup_lng,
        pickup_address=pickup_address,
        destination_lat=dest_lat,
        destination_lng=dest_lng,
        destination_address=destination_address,
        distance_km=distance,
        is_round_trip=bool(payload.get("is_round_trip")),
        price=price,
        status=RequestStatus.SEARCHING,
    ))


def create_parcel_request(db: Session, principal: Principal, payload: dict) -> ParcelRequest:
    vehicle_raw = (payload.get("vehicle_type") or ParcelVehicleType.MOTORBIKE.value).lower()
    if vehicle_raw != ParcelVehicleType.MOTORBIKE.value:
        raise ValidationError("Доступна только доставка мотоциклом")

    pickup_lat, pickup_lng = _coords(payload, "pickup_lat", "pickup_lng")
    delivery_lat, delivery_lng = _coords(payload, "delivery_lat", "delivery_lng")
    pickup_address = _text(payload, "pickup_address")
    delivery_address = _text(payload, "delivery_address")
    price = parse_price(payload.get("price"))
    distance = _optional_distance(payload)

    _ensure_no_active(db, ParcelRequest, principal.user_id)

    return _save_new(db, ParcelRequest(
        consumer_id=principal.user_id,
        vehicle_type=ParcelVehicleType.MOTORBIKE,
        pickup_lat=pickup_lat,
        pickup_lng=pickup_lng,
        pickup_address=pickup_address,
        delivery_lat=delivery_lat,
        delivery_lng=delivery_lng,
        delivery_address=delivery_address,
        distance_km=distance,
        details=_text(payload, "details", required=False, max_len=1000),
        price=price,
        status=RequestStatus.SEARCHING,
    ))


def create_service_request(db: Session, principal: Principal, payload: dict) -> ServiceRequest:
    service_id = payload.get("service_id")
    try:
        service_id = int(service_id)
    except (TypeError, ValueError):
        raise ValidationError("Укажите услугу (service_id)")

    job_description = _text(payload, "job_description", max_len=2000)
    location = _text(payload, "location")
    price = parse_price(payload.get("budget", payload.get("price")), field="budget")

    service = db.get(Service, service_id)
    if not service or not service.is_active:
        raise NotFound("Услуга не найдена или отключена")

    _ensure_no_active(db, ServiceRequest, principal.user_id)

    return _save_new(db, ServiceRequest(
        consumer_id=principal.user_id,
        service_id=service.id,
        job_description=job_description,
        location=location,
        price=price,
        status=RequestStatus.SEARCHING,
    ))


# ---------- чтение ----------

def get_request(db: Session, kind, request_id: int, for_update: bool = False):
    model = request_model(kind)
    # значения всегда из базы, а не из identity map
    stmt = select(model).where(model.id == request_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    req = db.execute(stmt).scalar_one_or_none()
    if not req:
        raise NotFound("Заявка не найдена")
    return req


def get_visible_request(db: Session, kind, request_id: int, principal: Principal):
    req = get_request(db, kind, request_id)
    if principal.user_id not in (req.consumer_id, req.provider_id) and not principal.is_admin:
        raise PermissionDenied()
    return req


def list_my_requests(db: Session, kind, principal: Principal, active: bool = True, limit: int = 50) -> list:
    model = request_model(kind)
    statuses = ACTIVE_STATUSES if active else TERMINAL_STATUSES
    return db.execute(
        select(model)
        .where(model.consumer_id == principal.user_id, model.status.in_(statuses))
        .order_by(model.id.desc())
        .limit(limit)
    ).scalars().all()


def list_assigned_requests(db: Session, kind, principal: Principal, active: bool = True, limit: int = 50) -> list:
    model = request_model(kind)
    statuses = (RequestStatus.ACCEPTED, RequestStatus.IN_PROGRESS) if active else TERMINAL_STATUSES
    return db.execute(
        select(model)
        .where(model.provider_id == principal.user_id, model.status.in_(statuses))
        .order_by(model.id.desc())
        .limit(limit)
    ).scalars().all()


# ---------- переходы ----------

def _check_actor(req, new_status: RequestStatus, actor: Principal | None) -> None:
    # actor=None: системный вызов (ставка, ленивое истечение)
    if actor is None:
        if new_status in (RequestStatus.IN_PROGRESS, RequestStatus.COMPLETED, RequestStatus.CANCELLED):
            raise PermissionDenied("Этот переход выполняет участник заявки")
        return

    if new_status == RequestStatus.IN_PROGRESS:
        if req.provider_id != actor.user_id:
            raise PermissionDenied("Начать может только назначенный исполнитель")
    elif new_status == RequestStatus.COMPLETED:
        allowed = {req.provider_id}
        if req.kind == RequestKind.SERVICE:
            # услугу может закрыть и заказчик
            allowed.add(req.consumer_id)
        if actor.user_id not in allowed:
            raise PermissionDenied("Завершить может только участник заявки")
    elif new_status == RequestStatus.CANCELLED:
        if actor.user_id != req.consumer_id and not actor.is_admin:
            raise PermissionDenied("Отменять можно только свои заявки")
    elif new_status == RequestStatus.EXPIRED:
        if not actor.is_admin:
            raise PermissionDenied("Истечение заявки выставляет система")
    elif new_status in (RequestStatus.SEARCHING, RequestStatus.BID_RECEIVED):
        raise PermissionDenied("Статус выставляется системой")


def _invalid(req, new_status: RequestStatus) -> InvalidTransitionError:
    current = RequestStatus(req.status)
    logger.error(
        "illegal transition for %s request %s: %s -> %s",
        req.kind.value, req.id, current.value, new_status.value,
    )
    return InvalidTransitionError(
        f"Недопустимый переход из {current.value} в {new_status.value}"
    )


def transition(
    db: Session,
    kind,
    request_id: int,
    new_status,
    actor: Principal | None,
    reason: str | None = None,
):
    """
    Переводит заявку в new_status по графу _ALLOWED.
    Статус перечитывается под блокировкой строки и меняется условным UPDATE,
    поэтому параллельный переход не может быть перезаписан.
    """
    kind = parse_kind(kind)
    try:
        new_status = RequestStatus(new_status)
    except ValueError:
        raise ValidationError("Недопустимый статус")

    model = request_model(kind)
    try:
        req = get_request(db, kind, request_id, for_update=True)
        _check_actor(req, new_status, actor)
        current = RequestStatus(req.status)

        # повторная отмена: не ошибка
        if new_status == RequestStatus.CANCELLED and current == RequestStatus.CANCELLED:
            db.rollback()
            return req

        if new_status == RequestStatus.ACCEPTED or not is_legal_edge(current, new_status):
            raise _invalid(req, new_status)

        values = {"status": new_status}
        if new_status == RequestStatus.CANCELLED and reason:
            values["cancel_reason"] = reason[:300]

        res = db.execute(
            model.__table__.update()
            .where(model.id == req.id, model.status == current)
            .values(**values)
        )
        if res.rowcount != 1:
            raise RequestUnavailable("Статус заявки изменился, обновите данные")
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(req)
    logger.info(
        "%s request %s: %s -> %s (actor=%s)",
        kind.value, req.id, current.value, new_status.value, actor.user_id if actor else "system",
    )
    return req


def cancel_request(db: Session, kind, request_id: int, actor: Principal, reason: str | None = None):
    # ставки по отменённой заявке остаются как есть (pending)
    return transition(db, kind, request_id, RequestStatus.CANCELLED, actor, reason=reason)


def start_request(db: Session, kind, request_id: int, actor: Principal):
    return transition(db, kind, request_id, RequestStatus.IN_PROGRESS, actor)


def complete_request(db: Session, kind, request_id: int, actor: Principal):
    return transition(db, kind, request_id, RequestStatus.COMPLETED, actor)
