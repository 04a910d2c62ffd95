# ridemarket/routers/city_to_city.py
from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db import get_db
from ..deps import Principal, get_current_principal
from ..errors import ValidationError
from ..models.city import City
from ..realtime import hub
from ..services import notify
from ..services.city_to_city import (
    create_city_request, get_active_city_request, search, create_match,
    complete_match, cancel_city_request, list_matches, counterpart_user_ids,
)

router = APIRouter(prefix="/api/city-to-city", tags=["city-to-city"])


def _int(payload: dict, key: str) -> int:
    try:
        return int(payload.get(key))
    except (TypeError, ValueError):
        raise ValidationError(f"Поле {key} обязательно")


@router.get("/cities")
def api_cities(db: Session = Depends(get_db)):
    cities = db.execute(select(City).where(City.is_active.is_(True)).order_by(City.name)).scalars().all()
    return {"ok": True, "items": [c.to_dict() for c in cities]}


@router.post("/requests")
def api_create(
    payload: dict,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    req = create_city_request(db, principal, payload)
    return {"ok": True, "request": req.to_dict()}


@router.get("/active")
def api_active(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    req = get_active_city_request(db, principal)
    return {"ok": True, "request": req.to_dict() if req else None}


@router.get("/requests/{request_id}/search")
def api_search(
    request_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return {"ok": True, **search(db, request_id, principal).to_dict()}


# Водитель добавляет пассажира в поездку
@router.post("/matches")
def api_match(
    payload: dict,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    match = create_match(
        db, _int(payload, "driver_request_id"), _int(payload, "passenger_request_id"), principal
    )
    _, passenger_user_id = counterpart_user_ids(db, match)
    background_tasks.add_task(hub.publish, "city_match_created", match.to_dict())
    background_tasks.add_task(notify.notify_city_match, passenger_user_id, match.id, match.driver_request_id)
    return {"ok": True, "match": match.to_dict()}


@router.get("/matches")
def api_matches(
    active: bool = Query(False),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return {"ok": True, "items": list_matches(db, principal, active_only=active)}


@router.post("/matches/{match_id}/end")
def api_end_match(
    match_id: int,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    match = complete_match(db, match_id, principal)
    background_tasks.add_task(hub.publish, "city_match_updated", match.to_dict())
    return {"ok": True, "match": match.to_dict()}


@router.post("/requests/{request_id}/cancel")
def api_cancel(
    request_id: int,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    req = cancel_city_request(db, request_id, principal)
    background_tasks.add_task(hub.publish, "city_request_updated", {"request_id": req.id, "status": req.status.value})
    return {"ok": True, "request": req.to_dict()}
