"""
Split Inference Node - Рантайм одной половины модели
====================================================

[NODE] Связывает вместе:
- Crypto: идентичность узла (node_id для разрешения конфликта ролей)
- Coordinator: протокол распределённого инференса
- ProtocolRouter: мультиплексор входящих сообщений канала
- PeerChannel: TCP канал к пиру (PeerServer или connect_peer)

[EVENTS] Хуки координатора публикуются в event_bus:
- EVENT_TOKEN: {"session_id", "token": {id, text}}
- EVENT_STATE: {"state", "previous", "role"}
- EVENT_ERROR: {"message"}

[USAGE]
    node = SplitInferenceNode(engine=MockInferenceEngine())
    await node.listen("127.0.0.1", 9470)   # вторая половина
    ...
    node = SplitInferenceNode()
    await node.connect("127.0.0.1", 9470)  # первая половина
    node.coordinator.configure_first_half()
    tokens = await node.generate([1, 2, 3], activations)
"""

import asyncio
import logging
from collections import deque
from contextlib import suppress
from typing import Optional, Dict, Any, List, Deque, Iterable, Sequence, Set

from config import config, ModelConfig, CoordinatorConfig, NetworkConfig
from core.events import event_bus, EVENT_TOKEN, EVENT_STATE, EVENT_ERROR
from core.peer import PeerChannel, PeerServer, TcpPeerChannel, connect_peer
from core.protocol import ProtocolRouter
from core.transport import Crypto

from .coordinator import Coordinator, CoordinatorState, ActivationData
from .engine import InferenceEngine
from .protocol import Role, Token

logger = logging.getLogger(__name__)


class InferenceError(Exception):
    """Ошибка генерации на стороне первой половины."""
    pass


class SplitInferenceNode:
    """
    Узел распределённого инференса с одним пиром.
    """

    def __init__(
        self,
        crypto: Optional[Crypto] = None,
        engine: Optional[InferenceEngine] = None,
        model_config: Optional[ModelConfig] = None,
        settings: Optional[CoordinatorConfig] = None,
        network: Optional[NetworkConfig] = None,
    ):
        self.crypto = crypto or Crypto()
        self.network = network or config.network

        self.coordinator = Coordinator(
            engine=engine,
            model_config=model_config or ModelConfig(),
            settings=settings or config.coordinator,
            node_id=self.crypto.node_id,
            on_token=self._on_token,
            on_state_change=self._on_state_change,
            on_error=self._on_error,
        )

        self.router = ProtocolRouter()
        self.router.register(self.coordinator.handle_message)

        self.channel: Optional[PeerChannel] = None
        self.server: Optional[PeerServer] = None

        self._peer_ready = asyncio.Event()
        self._token_waiters: Dict[str, Deque[asyncio.Future]] = {}
        self._cleanup_task: Optional[asyncio.Task] = None
        self._close_tasks: Set[asyncio.Task] = set()

    @property
    def node_id(self) -> str:
        return self.crypto.node_id

    @property
    def is_connected(self) -> bool:
        return self.channel is not None and self.channel.is_connected

    # ------------------------------------------------------------------
    # Coordinator hooks
    # ------------------------------------------------------------------

    def _on_token(self, session_id: str, token: Token) -> None:
        event_bus.emit(EVENT_TOKEN, {"session_id": session_id, "token": token.to_dict()})

        waiters = self._token_waiters.get(session_id)
        while waiters:
            future = waiters.popleft()
            if not future.done():
                future.set_result(token)
                break

    def _on_state_change(self, new_state: CoordinatorState, old_state: CoordinatorState) -> None:
        if new_state != old_state:
            logger.debug(f"[NODE] {old_state.value} -> {new_state.value}")
        event_bus.emit(EVENT_STATE, {
            "state": new_state.value,
            "previous": old_state.value,
            "role": self.coordinator.role.value,
        })

    def _on_error(self, message: str) -> None:
        event_bus.emit(EVENT_ERROR, {"message": message})

    def _fail_waiters(self, exc: Exception) -> None:
        for waiters in self._token_waiters.values():
            while waiters:
                future = waiters.popleft()
                if not future.done():
                    future.set_exception(exc)

    # ------------------------------------------------------------------
    # Peer channel
    # ------------------------------------------------------------------

    def _detach(self, channel: PeerChannel) -> Any:
        """Отвязать канал от узла и закрыть его (результат close())."""
        channel.on_message = None
        channel.on_disconnect = None
        if self.coordinator.peer is channel:
            self.coordinator.peer = None
        return getattr(channel, "close", lambda: None)()

    def attach(self, channel: PeerChannel) -> None:
        """
        Подключить канал к координатору.

        Предыдущий канал отвязывается и закрывается: сообщения со
        старого соединения больше не попадают в координатор.
        """
        previous = self.channel
        if previous is not None and previous is not channel:
            logger.warning(f"[NODE] Replacing channel to {str(previous.remote_node_id)[:8]}...")
            result = self._detach(previous)
            if asyncio.iscoroutine(result):
                task = asyncio.create_task(result)
                self._close_tasks.add(task)
                task.add_done_callback(self._close_tasks.discard)

        self.channel = channel
        channel.on_message = self.router.route
        channel.on_disconnect = self._on_disconnect
        self.coordinator.peer = channel
        self._peer_ready.set()

        logger.info(f"[NODE] Peer {str(channel.remote_node_id)[:8]}... attached")

    def _on_disconnect(self) -> None:
        self._peer_ready.clear()
        self.coordinator.handle_peer_disconnected()
        self._fail_waiters(InferenceError("peer disconnected"))

    async def listen(self, host: Optional[str] = None, port: Optional[int] = None) -> int:
        """
        Принимать входящее соединение пира.

        Returns:
            Фактический порт (для port=0)
        """
        self.server = PeerServer(
            self.crypto,
            on_channel=self.attach,
            timeout=self.network.connection_timeout,
            send_queue_size=self.network.send_queue_size,
            max_frame_size=self.network.max_frame_size,
            sign_messages=self.network.sign_messages,
        )
        await self.server.start(
            host if host is not None else self.network.host,
            port if port is not None else self.network.port,
        )
        return self.server.port

    async def connect(self, host: str, port: int) -> TcpPeerChannel:
        """Подключиться к пиру."""
        channel = await connect_peer(
            host, port, self.crypto,
            timeout=self.network.connection_timeout,
            send_queue_size=self.network.send_queue_size,
            max_frame_size=self.network.max_frame_size,
            sign_messages=self.network.sign_messages,
        )
        self.attach(channel)
        channel.start()
        return channel

    async def wait_peer(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._peer_ready.wait(), timeout=timeout)

    async def wait_state(
        self,
        states: Iterable[CoordinatorState],
        timeout: Optional[float] = None,
        interval: float = 0.01,
    ) -> CoordinatorState:
        """Дождаться одного из состояний координатора."""
        wanted = set(states)

        async def _poll() -> CoordinatorState:
            while self.coordinator.state not in wanted:
                await asyncio.sleep(interval)
            return self.coordinator.state

        return await asyncio.wait_for(_poll(), timeout=timeout)

    # ------------------------------------------------------------------
    # Generation (first half)
    # ------------------------------------------------------------------

    async def generate(
        self,
        prompt_tokens: Sequence[Any],
        activations: Iterable[ActivationData],
        layer: Optional[int] = None,
        timeout: Optional[float] = 30.0,
    ) -> List[Token]:
        """
        Сгенерировать по одному токену на каждую активацию.

        Открывает сессию, отправляет активации по одной и ждёт ответный
        infer_token перед следующей. Сессия закрывается в любом случае.

        Raises:
            InferenceError: узел не FIRST_HALF, отправка не удалась или пир отключился
            asyncio.TimeoutError: токен не пришёл за timeout
        """
        coordinator = self.coordinator
        if coordinator.role != Role.FIRST_HALF:
            raise InferenceError(f"generate() requires first_half role, got {coordinator.role.value}")

        layer = layer if layer is not None else coordinator.split_layer
        session = coordinator.start_session(prompt_tokens)
        waiters = self._token_waiters.setdefault(session.id, deque())
        loop = asyncio.get_running_loop()
        tokens: List[Token] = []

        try:
            for activation in activations:
                future = loop.create_future()
                waiters.append(future)

                result = coordinator.send_activation(session.id, layer, activation)
                if not result.success:
                    raise InferenceError(f"activation send failed: {result.error}")

                tokens.append(await asyncio.wait_for(future, timeout=timeout))
        finally:
            self._token_waiters.pop(session.id, None)
            coordinator.end_session(session.id)

        logger.info(f"[NODE] Session {session.id[:8]} generated {len(tokens)} tokens")
        return tokens

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.coordinator.cleanup_sessions()

    def start_maintenance(self, interval: float = 60.0) -> None:
        """Периодическая очистка реестра сессий."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(interval))

    async def stop(self) -> None:
        if self._cleanup_task:
            self._cleanup_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None

        channel = self.channel
        if channel is not None:
            # the node initiated the close: no ERROR transition
            result = self._detach(channel)
            if asyncio.iscoroutine(result):
                await result

        if self._close_tasks:
            await asyncio.gather(*self._close_tasks, return_exceptions=True)

        if self.server:
            await self.server.stop()
            self.server = None

        self._fail_waiters(InferenceError("node stopped"))
        self._peer_ready.clear()
        logger.info("[NODE] Stopped")

    def get_stats(self) -> Dict[str, Any]:
        stats = self.coordinator.get_stats()
        stats["connected"] = self.is_connected
        stats["router"] = {"routed": self.router.routed, "unhandled": self.router.unhandled}
        if self.coordinator.engine is not None:
            stats["engine"] = self.coordinator.engine.get_stats()
        return stats
