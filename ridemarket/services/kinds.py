from __future__ import annotations

from ..errors import ValidationError
from ..models.marketplace import RequestKind
from ..models.ride import RideRequest, RideBid
from ..models.parcel import ParcelRequest, ParcelBid
from ..models.service import ServiceRequest, ServiceBid

# вид заявки -> (модель заявки, модель ставки)
KINDS = {
    RequestKind.RIDE: (RideRequest, RideBid),
    RequestKind.PARCEL: (ParcelRequest, ParcelBid),
    RequestKind.SERVICE: (ServiceRequest, ServiceBid),
}


def parse_kind(raw) -> RequestKind:
    if isinstance(raw, RequestKind):
        return raw
    try:
        return RequestKind(str(raw).lower().strip())
    except ValueError:
        raise ValidationError(f"Неизвестный вид заявки: {raw}")


def request_model(kind):
    return KINDS[parse_kind(kind)][0]


def bid_model(kind):
    return KINDS[parse_kind(kind)][1]
