# ridemarket/routers/marketplace.py
"""
Заявки со ставками: такси (/api/rides), посылки (/api/parcels), услуги (/api/services).
Все три вида используют один и тот же жизненный цикл, поэтому роутер собирается фабрикой.
"""
from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..deps import Principal, get_current_principal
from ..models.marketplace import RequestKind
from ..models.provider import DriverServiceType
from ..realtime import hub
from ..services import notify
from ..services.acceptance import accept_bid
from ..services.bids import submit_bid, list_bids_for, list_provider_bids, withdraw_bid
from ..services.discovery import open_requests_for, nearby_drivers, service_provider_user_ids
from ..services.ratings import rate, has_rated, bids_with_ratings
from ..services.requests import (
    create_ride_request, create_parcel_request, create_service_request,
    get_visible_request, list_my_requests, list_assigned_requests,
    cancel_request, start_request, complete_request,
)

_CREATE = {
    RequestKind.RIDE: create_ride_request,
    RequestKind.PARCEL: create_parcel_request,
    RequestKind.SERVICE: create_service_request,
}

_PREFIX = {
    RequestKind.RIDE: "/api/rides",
    RequestKind.PARCEL: "/api/parcels",
    RequestKind.SERVICE: "/api/services",
}


def _push_recipients(db: Session, req) -> tuple[list[int], str | None]:
    """Кому разослать push о новой заявке и какой адрес показать."""
    if req.kind == RequestKind.SERVICE:
        return service_provider_user_ids(db, req.service_id), req.location
    service_type = DriverServiceType.RIDE if req.kind == RequestKind.RIDE else DriverServiceType.PARCEL
    drivers = nearby_drivers(db, req.pickup_lat, req.pickup_lng, settings.DISCOVERY_RADIUS_KM, service_type)
    return [p.user_id for p, _ in drivers if p.user_id != req.consumer_id], req.pickup_address


def build_router(kind: RequestKind) -> APIRouter:
    router = APIRouter(prefix=_PREFIX[kind], tags=[kind.value])
    create = _CREATE[kind]

    # ---------- клиент ----------
    @router.post("")
    def api_create(
        payload: dict,
        background_tasks: BackgroundTasks,
        principal: Principal = Depends(get_current_principal),
        db: Session = Depends(get_db),
    ):
        req = create(db, principal, payload)
        recipients, address = _push_recipients(db, req)
        background_tasks.add_task(hub.publish, "request_created", {"kind": kind.value, "request_id": req.id})
        background_tasks.add_task(notify.notify_new_request, recipients, kind.value, req.id, address)
        return {"ok": True, "request": req.to_dict()}

    @router.get("")
    def api_list_mine(
        history: bool = Query(False),
        principal: Principal = Depends(get_current_principal),
        db: Session = Depends(get_db),
    ):
        items = list_my_requests(db, kind, principal, active=not history)
        return {"ok": True, "items": [r.to_dict() for r in items]}

    # ---------- исполнитель ----------
    @router.get("/feed")
    def api_provider_feed(
        principal: Principal = Depends(get_current_principal),
        db: Session = Depends(get_db),
    ):
        return {"ok": True, "items": open_requests_for(db, kind, principal)}

    @router.get("/bids/mine")
    def api_my_bids(
        status: str | None = Query("pending"),
        principal: Principal = Depends(get_current_principal),
        db: Session = Depends(get_db),
    ):
        items = list_provider_bids(db, kind, principal, status=status or None)
        return {"ok": True, "items": [b.to_dict() for b in items]}

    @router.get("/assigned")
    def api_assigned(
        history: bool = Query(False),
        principal: Principal = Depends(get_current_principal),
        db: Session = Depends(get_db),
    ):
        items = list_assigned_requests(db, kind, principal, active=not history)
        return {"ok": True, "items": [r.to_dict() for r in items]}

    @router.post("/bids/{bid_id}/withdraw")
    def api_withdraw_bid(
        bid_id: int,
        background_tasks: BackgroundTasks,
        principal: Principal = Depends(get_current_principal),
        db: Session = Depends(get_db),
    ):
        bid = withdraw_bid(db, kind, bid_id, principal)
        background_tasks.add_task(
            hub.publish, "bid_withdrawn", {"kind": kind.value, "request_id": bid.request_id, "bid_id": bid.id}
        )
        return {"ok": True, "bid": bid.to_dict()}

    # Клиент принимает ставку: исполнитель назначается, остальные ставки отклоняются
    @router.post("/bids/{bid_id}/accept")
    def api_accept_bid(
        bid_id: int,
        background_tasks: BackgroundTasks,
        principal: Principal = Depends(get_current_principal),
        db: Session = Depends(get_db),
    ):
        result = accept_bid(db, kind, bid_id, principal)
        req = result.request
        background_tasks.add_task(
            hub.publish, "bid_accepted",
            {"kind": kind.value, "request_id": req.id, "bid_id": result.bid.id, "provider_id": req.provider_id},
        )
        background_tasks.add_task(
            notify.notify_bid_accepted, req.provider_id, kind.value, req.id, req.final_price
        )
        return {"ok": True, **result.to_dict()}

    # ---------- одна заявка ----------
    @router.get("/{request_id}")
    def api_get(
        request_id: int,
        principal: Principal = Depends(get_current_principal),
        db: Session = Depends(get_db),
    ):
        req = get_visible_request(db, kind, request_id, principal)
        return {"ok": True, "request": req.to_dict()}

    @router.get("/{request_id}/bids")
    def api_list_bids(
        request_id: int,
        status: str | None = Query(None),
        principal: Principal = Depends(get_current_principal),
        db: Session = Depends(get_db),
    ):
        items = list_bids_for(db, kind, request_id, principal, status=status)
        return {"ok": True, "items": bids_with_ratings(db, items)}

    @router.post("/{request_id}/bids")
    def api_submit_bid(
        request_id: int,
        payload: dict,
        background_tasks: BackgroundTasks,
        principal: Principal = Depends(get_current_principal),
        db: Session = Depends(get_db),
    ):
        bid, req, created = submit_bid(
            db, kind, request_id, principal, payload.get("bid_price", payload.get("price")), payload.get("message")
        )
        background_tasks.add_task(
            hub.publish, "bid_submitted", {"kind": kind.value, "request_id": req.id, "bid_id": bid.id}
        )
        background_tasks.add_task(notify.notify_bid_received, req.consumer_id, kind.value, req.id, bid.bid_price)
        return {"ok": True, "created": created, "bid": bid.to_dict(), "request_status": req.status.value}

    @router.post("/{request_id}/cancel")
    def api_cancel(
        request_id: int,
        background_tasks: BackgroundTasks,
        payload: dict | None = None,
        principal: Principal = Depends(get_current_principal),
        db: Session = Depends(get_db),
    ):
        reason = (payload or {}).get("reason")
        req = cancel_request(db, kind, request_id, principal, reason=reason)
        background_tasks.add_task(
            hub.publish, "request_updated", {"kind": kind.value, "request_id": req.id, "status": req.status.value}
        )
        return {"ok": True, "request": req.to_dict()}

    @router.post("/{request_id}/start")
    def api_start(
        request_id: int,
        background_tasks: BackgroundTasks,
        principal: Principal = Depends(get_current_principal),
        db: Session = Depends(get_db),
    ):
        req = start_request(db, kind, request_id, principal)
        background_tasks.add_task(
            hub.publish, "request_updated", {"kind": kind.value, "request_id": req.id, "status": req.status.value}
        )
        return {"ok": True, "request": req.to_dict()}

    @router.post("/{request_id}/complete")
    def api_complete(
        request_id: int,
        background_tasks: BackgroundTasks,
        principal: Principal = Depends(get_current_principal),
        db: Session = Depends(get_db),
    ):
        req = complete_request(db, kind, request_id, principal)
        background_tasks.add_task(
            hub.publish, "request_updated", {"kind": kind.value, "request_id": req.id, "status": req.status.value}
        )
        return {"ok": True, "request": req.to_dict()}

    # ---------- оценки ----------
    @router.post("/{request_id}/rate")
    def api_rate(
        request_id: int,
        payload: dict,
        principal: Principal = Depends(get_current_principal),
        db: Session = Depends(get_db),
    ):
        item, created = rate(
            db, kind, request_id, principal,
            payload.get("rating"), payload.get("review"), payload.get("ratee_id"),
        )
        return {"ok": True, "created": created, "rating": item.to_dict()}

    @router.get("/{request_id}/rate/check")
    def api_rate_check(
        request_id: int,
        principal: Principal = Depends(get_current_principal),
        db: Session = Depends(get_db),
    ):
        return {"ok": True, "has_rated": has_rated(db, kind, request_id, principal)}

    return router


rides_router = build_router(RequestKind.RIDE)
parcels_router = build_router(RequestKind.PARCEL)
services_router = build_router(RequestKind.SERVICE)
