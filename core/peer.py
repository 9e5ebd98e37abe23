"""
Peer Channel - Двунаправленный канал между половинами модели
===========================================================

[PEER] Координатор видит канал только через два метода:
- send(message) -> bool: неблокирующая отправка dict сообщения
- on_message(message): callback для входящих сообщений

[IMPLEMENTATIONS]
- LoopbackChannel: in-memory пара для тестов и одного процесса
- TcpPeerChannel: asyncio TCP + SimpleTransport кадры + Ed25519 подписи

[HANDSHAKE] TCP соединение начинается с обмена HELLO / HELLO_ACK:
1. Инициатор отправляет подписанный HELLO
2. Сервер проверяет подпись и отвечает подписанным HELLO_ACK
3. Обе стороны запоминают remote_node_id = sender_id пира
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from collections import deque
from contextlib import suppress
from typing import Optional, Dict, Any, Callable, Deque, Set, Tuple

from core.transport import (
    Crypto,
    Message,
    MessageType,
    SimpleTransport,
    TransportError,
    MAX_FRAME_SIZE,
)

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Dict[str, Any]], Any]


class PeerChannel(ABC):
    """
    Базовый класс peer канала.

    [CONTRACT] send() никогда не блокирует вызывающего и не бросает
    исключений при сетевых ошибках: результат - bool.
    """

    def __init__(self):
        self.on_message: Optional[MessageCallback] = None
        self.on_disconnect: Optional[Callable[[], Any]] = None
        self.remote_node_id: Optional[str] = None

    @abstractmethod
    def send(self, message: Dict[str, Any]) -> bool:
        """Поставить сообщение в отправку."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass


# ============================================================================
# Loopback
# ============================================================================

class LoopbackChannel(PeerChannel):
    """
    In-memory half of a linked channel pair.

    Messages are copied into an outbox on send() and delivered to the
    other half only on flush()/pump(), so handlers never re-enter the
    sender in the middle of an operation.
    """

    def __init__(self, node_id: Optional[str] = None):
        super().__init__()
        self.node_id = node_id
        self.peer: Optional["LoopbackChannel"] = None
        self.outbox: Deque[Dict[str, Any]] = deque()
        self.fail_sends = False
        self.sent_count = 0
        self.delivered_count = 0
        self._closed = False

    @classmethod
    def pair(
        cls,
        first_id: Optional[str] = None,
        second_id: Optional[str] = None,
    ) -> Tuple["LoopbackChannel", "LoopbackChannel"]:
        a = cls(first_id)
        b = cls(second_id)
        a.peer = b
        b.peer = a
        a.remote_node_id = second_id
        b.remote_node_id = first_id
        return a, b

    @property
    def is_connected(self) -> bool:
        return not self._closed and self.peer is not None

    def send(self, message: Dict[str, Any]) -> bool:
        if not self.is_connected or self.fail_sends:
            return False
        self.outbox.append(copy.deepcopy(message))
        self.sent_count += 1
        return True

    def _deliver(self, message: Dict[str, Any]) -> None:
        self.delivered_count += 1
        if self.on_message is not None:
            self.on_message(message)

    def flush(self) -> int:
        """Доставить все сообщения из outbox пиру."""
        delivered = 0
        while self.outbox and self.peer is not None:
            message = self.outbox.popleft()
            self.peer._deliver(message)
            delivered += 1
        return delivered

    @staticmethod
    def pump(a: "LoopbackChannel", b: "LoopbackChannel", max_rounds: int = 1000) -> int:
        """Доставлять сообщения в обе стороны, пока очереди не опустеют."""
        total = 0
        for _ in range(max_rounds):
            delivered = a.flush() + b.flush()
            if delivered == 0:
                return total
            total += delivered
        raise RuntimeError(f"Loopback did not settle after {max_rounds} rounds")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.outbox.clear()
        peer = self.peer
        if peer is not None and not peer._closed:
            peer._closed = True
            peer.outbox.clear()
            if peer.on_disconnect is not None:
                peer.on_disconnect()


# ============================================================================
# TCP
# ============================================================================

async def _exchange_hello(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    crypto: Crypto,
    outbound: bool,
    timeout: float,
    max_frame_size: int,
) -> str:
    """
    Выполнить handshake и вернуть node_id пира.

    Raises:
        TransportError: неверный тип конверта или подпись
    """

    async def _send(msg_type: MessageType) -> None:
        hello = crypto.sign_message(Message(
            type=msg_type,
            payload={"node_id": crypto.node_id},
            sender_id=crypto.node_id,
        ))
        await SimpleTransport.write_message(writer, hello, max_frame_size)

    async def _receive(expected: MessageType) -> str:
        msg = await asyncio.wait_for(
            SimpleTransport.read_message(reader, max_frame_size),
            timeout=timeout,
        )
        if msg.type != expected:
            raise TransportError(f"Expected {expected.name}, got {msg.type.name}")
        if not Crypto.verify_signature(msg):
            raise TransportError(f"Invalid {expected.name} signature")
        return msg.sender_id

    if outbound:
        await _send(MessageType.HELLO)
        return await _receive(MessageType.HELLO_ACK)

    remote_id = await _receive(MessageType.HELLO)
    await _send(MessageType.HELLO_ACK)
    return remote_id


class TcpPeerChannel(PeerChannel):
    """
    Peer канал поверх asyncio TCP потока.

    [QUEUE] send() кладёт конверт в ограниченную очередь; отдельная
    задача пишет кадры в сокет. Переполнение = send() -> False.

    [SECURITY] Если sign_messages включён, DATA конверты подписываются,
    а входящие без валидной подписи от remote_node_id отбрасываются.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        crypto: Crypto,
        remote_node_id: str,
        send_queue_size: int = 256,
        max_frame_size: int = MAX_FRAME_SIZE,
        sign_messages: bool = True,
    ):
        super().__init__()
        self.reader = reader
        self.writer = writer
        self.crypto = crypto
        self.remote_node_id = remote_node_id
        self.max_frame_size = max_frame_size
        self.sign_messages = sign_messages

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=send_queue_size)
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False
        self._started = False
        self._closed_event = asyncio.Event()

        # Stats
        self.bytes_sent = 0
        self.bytes_received = 0
        self.messages_sent = 0
        self.messages_received = 0
        self.messages_rejected = 0

    @property
    def is_connected(self) -> bool:
        return not self._closed and not self.writer.is_closing()

    def start(self) -> None:
        """Запустить задачи чтения и записи (идемпотентно)."""
        if self._started:
            return
        self._started = True
        for coro in (self._read_loop(), self._write_loop()):
            task = asyncio.create_task(coro)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _wrap(self, msg_type: MessageType, payload: Dict[str, Any]) -> Message:
        message = Message(type=msg_type, payload=payload, sender_id=self.crypto.node_id)
        if self.sign_messages:
            self.crypto.sign_message(message)
        return message

    def send(self, message: Dict[str, Any]) -> bool:
        if not self.is_connected:
            return False
        try:
            self._queue.put_nowait(self._wrap(MessageType.DATA, message))
        except asyncio.QueueFull:
            logger.warning(f"[PEER] Send queue full for {self.remote_node_id[:8]}..., dropping message")
            return False
        return True

    async def _write_loop(self) -> None:
        try:
            while True:
                message = await self._queue.get()
                if message is None:
                    break
                self.bytes_sent += await SimpleTransport.write_message(
                    self.writer, message, self.max_frame_size,
                )
                self.messages_sent += 1
        except (ConnectionError, OSError) as e:
            logger.warning(f"[PEER] Write to {self.remote_node_id[:8]}... failed: {e}")
        except TransportError as e:
            logger.warning(f"[PEER] Outbound frame rejected: {e}")
        finally:
            await self._handle_disconnect()

    def _accept(self, message: Message) -> bool:
        if not self.sign_messages:
            return True
        return message.sender_id == self.remote_node_id and Crypto.verify_signature(message)

    async def _read_loop(self) -> None:
        try:
            while not self._closed:
                message = await SimpleTransport.read_message(self.reader, self.max_frame_size)
                self.messages_received += 1

                if not self._accept(message):
                    self.messages_rejected += 1
                    logger.warning(f"[PEER] Rejected unsigned/forged {message.type.name} message")
                    continue

                if message.type == MessageType.PING:
                    with suppress(asyncio.QueueFull):
                        self._queue.put_nowait(self._wrap(MessageType.PONG, message.payload))
                    continue

                if message.type != MessageType.DATA or self.on_message is None:
                    continue

                try:
                    result = self.on_message(message.payload)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as e:
                    logger.warning(f"[PEER] Message handler failed: {e}")

        except asyncio.IncompleteReadError:
            logger.debug(f"[PEER] Connection closed by peer {self.remote_node_id[:8]}...")
        except (ConnectionError, OSError) as e:
            logger.warning(f"[PEER] Read error from {self.remote_node_id[:8]}...: {e}")
        except TransportError as e:
            logger.warning(f"[PEER] Protocol error from {self.remote_node_id[:8]}...: {e}")
        finally:
            await self._handle_disconnect()

    async def _handle_disconnect(self) -> None:
        if self._closed:
            return
        self._closed = True

        with suppress(asyncio.QueueFull):
            self._queue.put_nowait(None)

        self.writer.close()
        with suppress(Exception):
            await self.writer.wait_closed()

        self._closed_event.set()
        logger.info(f"[PEER] Disconnected from {self.remote_node_id[:8]}...")

        if self.on_disconnect is not None:
            result = self.on_disconnect()
            if asyncio.iscoroutine(result):
                await result

    async def close(self) -> None:
        """Закрыть канал и дождаться остановки задач."""
        await self._handle_disconnect()
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is current:
                continue
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def wait_closed(self) -> None:
        await self._closed_event.wait()


async def connect_peer(
    host: str,
    port: int,
    crypto: Crypto,
    timeout: float = 10.0,
    send_queue_size: int = 256,
    max_frame_size: int = MAX_FRAME_SIZE,
    sign_messages: bool = True,
) -> TcpPeerChannel:
    """
    Подключиться к пиру и выполнить handshake.

    Returns:
        TcpPeerChannel; start() вызывается после установки on_message

    Raises:
        OSError / asyncio.TimeoutError: подключение не удалось
        TransportError: handshake не прошёл
    """
    reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)

    try:
        remote_id = await _exchange_hello(reader, writer, crypto, True, timeout, max_frame_size)
    except Exception:
        writer.close()
        with suppress(Exception):
            await writer.wait_closed()
        raise

    channel = TcpPeerChannel(
        reader, writer, crypto, remote_id,
        send_queue_size=send_queue_size,
        max_frame_size=max_frame_size,
        sign_messages=sign_messages,
    )
    logger.info(f"[PEER] Connected to {remote_id[:8]}... at {host}:{port}")
    return channel


class PeerServer:
    """
    TCP сервер, принимающий peer соединения.

    [USAGE]
        server = PeerServer(crypto, on_channel=attach)
        await server.start("127.0.0.1", 9470)
        ...
        await server.stop()
    """

    def __init__(
        self,
        crypto: Crypto,
        on_channel: Callable[[TcpPeerChannel], Any],
        timeout: float = 10.0,
        send_queue_size: int = 256,
        max_frame_size: int = MAX_FRAME_SIZE,
        sign_messages: bool = True,
    ):
        self.crypto = crypto
        self.on_channel = on_channel
        self.timeout = timeout
        self.send_queue_size = send_queue_size
        self.max_frame_size = max_frame_size
        self.sign_messages = sign_messages
        self._server: Optional[asyncio.AbstractServer] = None
        self.channels: Set[TcpPeerChannel] = set()

    @property
    def port(self) -> int:
        if self._server and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return 0

    async def start(self, host: str, port: int) -> None:
        self._server = await asyncio.start_server(self._handle_connection, host, port, reuse_address=True)
        logger.info(f"[PEER] Listening on {host}:{self.port}")

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        peername = writer.get_extra_info("peername")
        try:
            remote_id = await _exchange_hello(
                reader, writer, self.crypto, False, self.timeout, self.max_frame_size,
            )
        except (TransportError, OSError, asyncio.TimeoutError, asyncio.IncompleteReadError) as e:
            logger.warning(f"[PEER] Handshake with {peername} failed: {e}")
            writer.close()
            with suppress(Exception):
                await writer.wait_closed()
            return

        channel = TcpPeerChannel(
            reader, writer, self.crypto, remote_id,
            send_queue_size=self.send_queue_size,
            max_frame_size=self.max_frame_size,
            sign_messages=self.sign_messages,
        )
        self.channels.add(channel)
        logger.info(f"[PEER] Accepted {remote_id[:8]}... from {peername}")

        try:
            result = self.on_channel(channel)
            if asyncio.iscoroutine(result):
                await result

            channel.start()
            await channel.wait_closed()
        finally:
            self.channels.discard(channel)

    async def stop(self) -> None:
        for channel in list(self.channels):
            await channel.close()
        self.channels.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
