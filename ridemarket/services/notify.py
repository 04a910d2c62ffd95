"""
Push-уведомления через внешний шлюз.

Вызываются только после commit (BackgroundTasks), ошибки доставки
логируются и никогда не пробрасываются.
"""
from __future__ import annotations

import logging

import httpx

from ..config import settings

logger = logging.getLogger(__name__)


async def _deliver(message: dict) -> None:
    if not settings.PUSH_GATEWAY_URL:
        logger.warning("push skipped (no gateway): %s", message.get("title"))
        return
    headers = {}
    if settings.PUSH_GATEWAY_TOKEN:
        headers["Authorization"] = f"Bearer {settings.PUSH_GATEWAY_TOKEN}"
    async with httpx.AsyncClient(timeout=settings.PUSH_TIMEOUT_SEC) as c:
        r = await c.post(settings.PUSH_GATEWAY_URL, json=message, headers=headers)
        r.raise_for_status()


async def send_push(user_id: int, title: str, body: str, data: dict | None = None) -> bool:
    if not user_id:
        return False
    try:
        await _deliver({"user_id": user_id, "title": title, "body": body, "data": data or {}})
        return True
    except Exception as e:
        logger.warning("push to user %s failed: %s", user_id, e)
        return False


async def notify_bid_accepted(provider_user_id: int, kind: str, request_id: int, final_price) -> None:
    await send_push(
        provider_user_id,
        "Ставка принята",
        f"Клиент принял вашу ставку: {final_price}",
        {"type": "bid_accepted", "kind": kind, "request_id": request_id},
    )


async def notify_bid_received(consumer_id: int, kind: str, request_id: int, bid_price) -> None:
    await send_push(
        consumer_id,
        "Новая ставка",
        f"Исполнитель предложил цену {bid_price}",
        {"type": "bid_received", "kind": kind, "request_id": request_id},
    )


async def notify_new_request(user_ids: list[int], kind: str, request_id: int, address: str | None) -> None:
    for uid in user_ids:
        await send_push(
            uid,
            "Новая заявка рядом",
            address or "Откройте ленту заявок",
            {"type": "new_request", "kind": kind, "request_id": request_id},
        )


async def notify_city_match(passenger_user_id: int, match_id: int, driver_request_id: int) -> None:
    await send_push(
        passenger_user_id,
        "Найден попутчик",
        "Водитель добавил вас в поездку",
        {"type": "city_match", "match_id": match_id, "driver_request_id": driver_request_id},
    )
