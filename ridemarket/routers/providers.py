# ridemarket/routers/providers.py
from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..deps import Principal, get_current_principal
from ..errors import ValidationError
from ..models.service import Service
from ..realtime import hub
from ..services.discovery import nearby_drivers
from ..services.providers import (
    get_driver_profile, submit_driver_profile, set_driver_online, update_driver_location,
    get_service_provider, register_service_provider, driver_to_dict, service_provider_to_dict,
)
from ..services.ratings import rating_summary
from ..services.users import get_user, set_push_token

router = APIRouter(prefix="/api", tags=["providers"])


@router.get("/me")
def api_me(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    u = get_user(db, principal.user_id)
    return {
        "ok": True,
        "user": {
            "id": u.id,
            "name": u.display_name,
            "phone": u.phone,
            "role": u.role,
            "is_verified": u.is_verified,
        },
    }


@router.get("/users/{user_id}/rating")
def api_user_rating(
    user_id: int,
    _: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    get_user(db, user_id)
    return {"ok": True, "user_id": user_id, **rating_summary(db, user_id)}


@router.post("/me/push-token")
def api_push_token(
    payload: dict,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    u = set_push_token(db, principal.user_id, payload.get("token"))
    return {"ok": True, "has_token": bool(u.push_token)}


@router.get("/catalog/services")
def api_service_catalog(db: Session = Depends(get_db)):
    rows = db.execute(select(Service).where(Service.is_active.is_(True)).order_by(Service.name)).scalars().all()
    return {"ok": True, "items": [s.to_dict() for s in rows]}


# ---------- Водитель ----------
@router.get("/driver/me")
def api_driver_me(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return {"ok": True, "profile": driver_to_dict(get_driver_profile(db, principal.user_id))}


@router.post("/driver/profile")
def api_driver_profile(
    payload: dict,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    p = submit_driver_profile(db, principal, payload)
    background_tasks.add_task(hub.publish, "driver_profile_updated", {"user_id": p.user_id})
    return {"ok": True, "profile": driver_to_dict(p)}


@router.post("/driver/online")
def api_driver_online(
    payload: dict,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    """
    Водитель выходит на линию/уходит с линии (выйти можно только после верификации).
    """
    p = set_driver_online(db, principal, bool(payload.get("online")))
    background_tasks.add_task(hub.publish, "driver_online_changed", {"user_id": p.user_id, "online": p.is_online})
    return {"ok": True, "online": p.is_online}


@router.post("/driver/location")
def api_driver_location(
    payload: dict,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    p = update_driver_location(db, principal, payload.get("lat"), payload.get("lng"))
    return {"ok": True, "location": {"lat": p.current_lat, "lng": p.current_lng}}


@router.get("/drivers/nearby")
def api_nearby_drivers(
    lat: float,
    lng: float,
    service_type: str | None = Query(None),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    try:
        found = nearby_drivers(db, lat, lng, settings.NEARBY_MAP_RADIUS_KM, service_type)
    except ValueError:
        raise ValidationError("Некорректный тип водителя")
    return {
        "ok": True,
        "items": [
            {"user_id": p.user_id, "lat": p.current_lat, "lng": p.current_lng, "distance_km": round(d, 3)}
            for p, d in found
        ],
    }


# ---------- Мастер услуг ----------
@router.get("/service-provider/me")
def api_service_provider_me(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return {"ok": True, "profile": service_provider_to_dict(get_service_provider(db, principal.user_id))}


@router.post("/service-provider/register")
def api_service_provider_register(
    payload: dict,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    p = register_service_provider(db, principal, payload)
    return {"ok": True, "profile": service_provider_to_dict(p)}


# ---------- Real-time stream (SSE) ----------
@router.get("/stream")
def api_stream():
    async def gen():
        # первый «комментарий» держит канал открытым даже за прокси
        yield ": ok\n\n"
        async for msg in hub.subscribe():
            yield msg
    return StreamingResponse(gen(), media_type="text/event-stream")
