"""
Core Network Module
===================
Содержит основные компоненты сетевого слоя:
- Transport: кадрирование и Ed25519 подписи
- Peer: каналы между узлами (loopback и TCP)
- Protocol: маршрутизация входящих сообщений
- Events: шина событий узла
- Logger: настройка логирования и activity log
"""

from .transport import (
    Message,
    MessageType,
    Crypto,
    SimpleTransport,
    TransportError,
    FrameTooLargeError,
)
from .peer import (
    PeerChannel,
    LoopbackChannel,
    TcpPeerChannel,
    PeerServer,
    connect_peer,
)
from .protocol import ProtocolRouter
from .events import EventBus, event_bus

__all__ = [
    "Message",
    "MessageType",
    "Crypto",
    "SimpleTransport",
    "TransportError",
    "FrameTooLargeError",
    "PeerChannel",
    "LoopbackChannel",
    "TcpPeerChannel",
    "PeerServer",
    "connect_peer",
    "ProtocolRouter",
    "EventBus",
    "event_bus",
]
