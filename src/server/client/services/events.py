"""
出站通知分发：状态、RPC 健康、更新检查结果与代理 RPC 结果。

每个订阅者（通常是一个 WebSocket 连接）持有一个有界队列；发布永不阻塞，
队列满时丢弃该订阅者最旧的一条事件。
"""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger
from pydantic import BaseModel

from ..schemas import ClientEvent


class EventHub:
    def __init__(self, maxsize: int = 256) -> None:
        self._maxsize = maxsize
        self._subscribers: set[asyncio.Queue[ClientEvent]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue[ClientEvent]:
        queue: asyncio.Queue[ClientEvent] = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ClientEvent]) -> None:
        self._subscribers.discard(queue)

    def publish(self, channel: str, data: Any) -> ClientEvent:
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json", by_alias=True)
        event = ClientEvent(channel=channel, data=data)
        logger.debug(f"推送事件 {channel}: {data}")
        for queue in list(self._subscribers):
            if queue.full():
                dropped = queue.get_nowait()
                logger.warning(f"订阅者消费过慢，丢弃事件 {dropped.channel}")
            queue.put_nowait(event)
        return event
