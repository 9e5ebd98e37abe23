"""
Protocol Router - Мультиплексор входящих сообщений
==================================================

[ROUTING] Один peer канал несёт сообщения нескольких протоколов.
Каждый обработчик получает dict и возвращает True, если сообщение
принадлежит его протоколу. Router пробует обработчики по порядку
регистрации; первый вернувший True завершает маршрутизацию.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Dict[str, Any]], bool]


class ProtocolRouter:
    """
    Маршрутизатор протоколов.

    [USAGE]
        router = ProtocolRouter()
        router.register(coordinator.handle_message)
        channel.on_message = router.route
    """

    def __init__(self, on_unhandled: Optional[Callable[[Dict[str, Any]], Any]] = None):
        self.handlers: List[MessageHandler] = []
        self.on_unhandled = on_unhandled
        self.routed = 0
        self.unhandled = 0

    def register(self, handler: MessageHandler) -> None:
        """Зарегистрировать обработчик."""
        self.handlers.append(handler)

    def unregister(self, handler: MessageHandler) -> None:
        self.handlers = [h for h in self.handlers if h != handler]

    def route(self, message: Dict[str, Any]) -> bool:
        """
        Маршрутизировать сообщение.

        Returns:
            True если какой-либо обработчик принял сообщение
        """
        for handler in self.handlers:
            if handler(message):
                self.routed += 1
                return True

        self.unhandled += 1
        msg_type = message.get("type") if isinstance(message, dict) else None
        logger.debug(f"[ROUTER] No handler for message type {msg_type!r}")
        if self.on_unhandled is not None:
            self.on_unhandled(message)
        return False
