"""
Event Bus - Внутрипроцессные уведомления
========================================

[EVENTS] Рантайм узла публикует:
- EVENT_TOKEN: токен сгенерирован или получен
- EVENT_STATE: смена состояния координатора
- EVENT_ERROR: асинхронная ошибка координатора (on_error)
- EVENT_ACTIVITY_LOG: строки журнала от ActivityLogHandler
"""

import asyncio
import logging
from typing import Callable, Dict, Any, List

logger = logging.getLogger(__name__)

# Event names published by the node runtime
EVENT_ACTIVITY_LOG = "activity_log"
EVENT_TOKEN = "token"
EVENT_STATE = "state"
EVENT_ERROR = "coordinator_error"


class EventBus:
    """In-process event bus for coordinator and log notifications."""

    def __init__(self):
        self._subscribers: Dict[str, List[Callable[[Dict[str, Any]], Any]]] = {}

    def subscribe(self, event_name: str, callback: Callable[[Dict[str, Any]], Any]) -> None:
        self._subscribers.setdefault(event_name, []).append(callback)

    def unsubscribe(self, event_name: str, callback: Callable[[Dict[str, Any]], Any]) -> None:
        if event_name in self._subscribers:
            self._subscribers[event_name] = [cb for cb in self._subscribers[event_name] if cb != callback]

    def subscriber_count(self, event_name: str) -> int:
        return len(self._subscribers.get(event_name, []))

    async def broadcast(self, event_name: str, payload: Dict[str, Any]) -> None:
        for cb in list(self._subscribers.get(event_name, [])):
            try:
                result = cb(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                # one failing listener must not break the others
                logger.debug(f"[EVENTS] Listener for {event_name} failed: {e}")

    def emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        """
        Publish from synchronous code.

        Plain callbacks run immediately; coroutine callbacks are scheduled
        on the running loop and dropped when there is none.
        """
        for cb in list(self._subscribers.get(event_name, [])):
            try:
                result = cb(payload)
            except Exception as e:
                logger.debug(f"[EVENTS] Listener for {event_name} failed: {e}")
                continue
            if asyncio.iscoroutine(result):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    result.close()
                    continue
                loop.create_task(result)


# Global singleton
event_bus = EventBus()
