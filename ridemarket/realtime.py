# ridemarket/realtime.py
import asyncio
import json
import logging
from typing import AsyncIterator

logger = logging.getLogger(__name__)


class _Hub:
    def __init__(self) -> None:
        # по очереди на каждого подписчика
        self._queues: "set[asyncio.Queue[str]]" = set()

    @property
    def subscribers(self) -> int:
        return len(self._queues)

    async def publish(self, event: str, payload: dict) -> None:
        """
        Разослать событие всем подписчикам SSE.
        """
        data = json.dumps(payload, ensure_ascii=False, default=str)
        # формат SSE: event: <name>\ndata: <json>\n\n
        msg = f"event: {event}\ndata: {data}\n\n"
        for q in list(self._queues):
            q.put_nowait(msg)
        logger.debug("sse %s -> %s subscribers", event, len(self._queues))

    async def subscribe(self) -> AsyncIterator[str]:
        """
        Асинхронный генератор сообщений SSE.
        """
        q: "asyncio.Queue[str]" = asyncio.Queue()
        self._queues.add(q)
        try:
            while True:
                msg = await q.get()
                yield msg
        finally:
            self._queues.discard(q)


hub = _Hub()
