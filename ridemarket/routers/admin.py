# ridemarket/routers/admin.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..db import get_db
from ..deps import Principal, require_admin
from ..models.marketplace import RequestStatus
from ..services.catalog import upsert_service, upsert_city
from ..services.providers import (
    admin_list_pending,
    admin_set_driver_verified,
    admin_set_service_provider_verified,
    driver_to_dict,
    service_provider_to_dict,
)
from ..services.requests import transition
from ..services.users import ensure_user, admin_set_verified
from ..utils.security import create_user_token

router = APIRouter(prefix="/api/admin", tags=["admin"])


# ---------- Пользователи ----------
@router.post("/users")
def api_admin_create_user(
    payload: dict,
    _: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    u = ensure_user(db, payload.get("phone"), payload.get("full_name"), payload.get("role") or "user")
    return {"ok": True, "user_id": u.id, "token": create_user_token(u.id, u.role)}


@router.post("/users/{user_id}/verify")
def api_admin_verify_user(user_id: int, _: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    u = admin_set_verified(db, user_id, True)
    return {"ok": True, "user_id": u.id, "is_verified": u.is_verified}


@router.post("/users/{user_id}/unverify")
def api_admin_unverify_user(user_id: int, _: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    u = admin_set_verified(db, user_id, False)
    return {"ok": True, "user_id": u.id, "is_verified": u.is_verified}


# ---------- Исполнители ----------
@router.get("/providers/pending")
def api_admin_pending(_: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    data = admin_list_pending(db)
    return {
        "ok": True,
        "drivers": [driver_to_dict(p) for p in data["drivers"]],
        "service_providers": [service_provider_to_dict(p) for p in data["service_providers"]],
    }


@router.post("/drivers/{user_id}/verify")
def api_admin_verify_driver(user_id: int, _: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    p = admin_set_driver_verified(db, user_id, True)
    return {"ok": True, "user_id": user_id, "is_verified": p.is_verified}


@router.post("/drivers/{user_id}/unverify")
def api_admin_unverify_driver(user_id: int, _: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    p = admin_set_driver_verified(db, user_id, False)
    return {"ok": True, "user_id": user_id, "is_verified": p.is_verified, "is_online": p.is_online}


@router.post("/service-providers/{user_id}/verify")
def api_admin_verify_master(user_id: int, _: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    p = admin_set_service_provider_verified(db, user_id, True)
    return {"ok": True, "user_id": user_id, "is_verified": p.is_verified}


@router.post("/service-providers/{user_id}/unverify")
def api_admin_unverify_master(user_id: int, _: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    p = admin_set_service_provider_verified(db, user_id, False)
    return {"ok": True, "user_id": user_id, "is_verified": p.is_verified}


# ---------- Справочники ----------
@router.post("/services")
def api_admin_service(payload: dict, _: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    return {"ok": True, "service": upsert_service(db, payload).to_dict()}


@router.post("/cities")
def api_admin_city(payload: dict, _: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    return {"ok": True, "city": upsert_city(db, payload).to_dict()}


# ---------- Заявки ----------
@router.post("/requests/{kind}/{request_id}/expire")
def api_admin_expire(
    kind: str,
    request_id: int,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    req = transition(db, kind, request_id, RequestStatus.EXPIRED, principal)
    return {"ok": True, "request": req.to_dict()}
