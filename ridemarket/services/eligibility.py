from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..errors import NotEligible
from ..models.marketplace import RequestKind
from ..models.provider import DriverProfile, DriverServiceType, ServiceProviderProfile

_DRIVER_SERVICE_FOR_KIND = {
    RequestKind.RIDE: DriverServiceType.RIDE,
    RequestKind.PARCEL: DriverServiceType.PARCEL,
}


def load_provider(db: Session, kind: RequestKind, user_id: int):
    """Профиль исполнителя нужного вида или None."""
    if kind == RequestKind.SERVICE:
        return db.execute(
            select(ServiceProviderProfile).where(ServiceProviderProfile.user_id == user_id)
        ).scalar_one_or_none()
    return db.execute(
        select(DriverProfile).where(DriverProfile.user_id == user_id)
    ).scalar_one_or_none()


def eligibility_problem(provider, request) -> str | None:
    """
    Причина, по которой исполнитель не может работать с заявкой, или None.
      - водитель: верифицирован, онлайн, тип сервиса совпадает с видом заявки
      - мастер услуг: верифицирован и зарегистрирован на нужную услугу
    """
    if provider is None:
        return "Профиль исполнителя не найден"

    kind = request.kind
    if kind == RequestKind.SERVICE:
        if not isinstance(provider, ServiceProviderProfile):
            return "Заявка доступна только мастерам услуг"
        if not provider.is_verified:
            return "Исполнитель должен быть верифицирован"
        if request.service_id not in provider.service_ids:
            return "Вы не оказываете эту услугу"
        return None

    if not isinstance(provider, DriverProfile):
        return "Заявка доступна только водителям"
    if provider.service_type != _DRIVER_SERVICE_FOR_KIND[kind]:
        return "Тип водителя не подходит для этой заявки"
    if not provider.is_verified:
        return "Водитель не верифицирован"
    if not provider.is_online:
        return "Водитель должен быть онлайн"
    return None


def is_eligible(provider, request) -> bool:
    return eligibility_problem(provider, request) is None


def ensure_eligible(provider, request) -> None:
    problem = eligibility_problem(provider, request)
    if problem:
        raise NotEligible(problem)
