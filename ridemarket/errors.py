"""
Ошибки бизнес-правил маркетплейса.

Каждый класс несёт стабильный ``code`` и HTTP-статус, чтобы клиент мог
отличить «проиграл гонку» (409, обнови список ставок) от «неверный ввод»
(400) и «нет доступа» (401/403). Базовые исключения Python (ValueError,
LookupError, PermissionError) подмешаны там, где роутеры ловят их как раньше.
"""
from __future__ import annotations


class MarketError(Exception):
    code = "market_error"
    status_code = 400
    # пользователь может повторить действие на свежих данных (система: нет)
    retryable_by_user = False

    def __init__(self, message: str | None = None, **extra):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.extra = extra

    default_message = "Ошибка запроса"

    def to_dict(self) -> dict:
        out = {"code": self.code, "message": self.message, "retryable": self.retryable_by_user}
        if self.extra:
            out.update(self.extra)
        return out


# ---- ввод ----

class ValidationError(MarketError, ValueError):
    code = "validation_error"
    status_code = 400
    default_message = "Некорректные данные"


class InvalidBidPrice(ValidationError):
    code = "invalid_bid_price"
    default_message = "Цена ставки должна быть больше 0"


class ActiveRequestExists(MarketError, ValueError):
    code = "active_request_exists"
    status_code = 409
    default_message = "У вас уже есть активная заявка"


class NotFound(MarketError, LookupError):
    code = "not_found"
    status_code = 404
    default_message = "Не найдено"


# ---- права ----

class PermissionDenied(MarketError, PermissionError):
    code = "forbidden"
    status_code = 403
    default_message = "Нет доступа"


class NotEligible(MarketError, PermissionError):
    code = "not_eligible"
    status_code = 403
    default_message = "Исполнитель не допущен к этой заявке"


# ---- гонки и устаревшие данные ----

class RequestUnavailable(MarketError):
    code = "request_unavailable"
    status_code = 409
    retryable_by_user = True
    default_message = "Заявка больше не принимает ставки"


class RequestNotAvailable(RequestUnavailable):
    code = "request_not_available"
    default_message = "Заявка больше недоступна"


class RequestAlreadyAssigned(RequestUnavailable):
    code = "request_already_assigned"
    default_message = "Заявка уже назначена другому исполнителю"


class BidNoLongerAvailable(MarketError):
    code = "bid_no_longer_available"
    status_code = 409
    retryable_by_user = True
    default_message = "Ставка больше недоступна"


# ---- city-to-city ----

class DriverCapacityFull(MarketError):
    code = "driver_capacity_full"
    status_code = 409
    default_message = "У водителя уже достаточно пассажиров"


class SameUserType(MarketError):
    code = "same_user_type"
    status_code = 400
    default_message = "Нельзя сопоставить заявки одного типа"


class RouteMismatch(MarketError):
    code = "route_mismatch"
    status_code = 400
    default_message = "Маршруты не совпадают"


class AlreadyMatched(MarketError):
    code = "already_matched"
    status_code = 409
    retryable_by_user = True
    default_message = "Заявка пассажира уже сопоставлена"


# ---- целостность ----

class InvalidTransitionError(MarketError):
    code = "invalid_transition"
    status_code = 409
    default_message = "Недопустимый переход статуса"
