"""
Transport Layer - Подписанные сообщения между половинами модели
==============================================================

[SECURITY] Этот модуль обеспечивает:
1. Идентичность узла через Ed25519 (PyNaCl)
2. Подпись каждого сообщения и проверку отправителя
3. Кадрирование: 4 байта длины (big-endian) + JSON

[WIRE] Протокол координатора передаётся внутри DATA конверта:
    Message(type=DATA, payload={"type": "infer_act", ...})
"""

import asyncio
import base64
import json
import os
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional, Dict, Any

from nacl.signing import SigningKey, VerifyKey
from nacl.encoding import Base64Encoder
from nacl.exceptions import CryptoError

# Максимальный размер кадра по умолчанию (256 MB)
MAX_FRAME_SIZE = 256 * 1024 * 1024
FRAME_HEADER_SIZE = 4


class TransportError(Exception):
    """Transport level error."""
    pass


class FrameTooLargeError(TransportError):
    """Frame exceeds the configured size limit."""
    pass


class MessageType(Enum):
    """Типы конвертов peer канала."""

    HELLO = auto()       # Начало handshake
    HELLO_ACK = auto()   # Ответ на HELLO
    PING = auto()        # Проверка связи
    PONG = auto()        # Ответ на PING
    DATA = auto()        # Сообщение протокола координатора


@dataclass
class Message:
    """
    Конверт сообщения peer канала.

    [SECURITY] Каждое сообщение содержит:
    - type: тип конверта
    - payload: полезная нагрузка
    - sender_id: ID отправителя (публичный ключ в Base64)
    - timestamp: время создания
    - signature: подпись всех остальных полей
    - nonce: случайное значение для уникальности
    """

    type: MessageType
    payload: Dict[str, Any]
    sender_id: str
    timestamp: float = field(default_factory=time.time)
    signature: Optional[str] = None
    nonce: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.name,
            "payload": self.payload,
            "sender_id": self.sender_id,
            "timestamp": self.timestamp,
            "signature": self.signature,
            "nonce": self.nonce,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        try:
            return cls(
                type=MessageType[data["type"]],
                payload=data["payload"],
                sender_id=data["sender_id"],
                timestamp=data["timestamp"],
                signature=data.get("signature"),
                nonce=data.get("nonce"),
            )
        except (KeyError, TypeError) as e:
            raise TransportError(f"Malformed envelope: {e}") from e

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, json_str: str) -> "Message":
        try:
            data = json.loads(json_str)
        except ValueError as e:
            raise TransportError(f"Invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise TransportError("Envelope must be a JSON object")
        return cls.from_dict(data)

    def get_signing_data(self) -> bytes:
        """
        Данные для подписи.

        [SECURITY] Подписываются все поля кроме самой подписи.
        """
        data = {
            "type": self.type.name,
            "payload": self.payload,
            "sender_id": self.sender_id,
            "timestamp": self.timestamp,
            "nonce": self.nonce,
        }
        return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


class Crypto:
    """
    Идентичность узла на базе PyNaCl.

    [SECURITY] Ed25519 SigningKey/VerifyKey. ID узла = VerifyKey в Base64,
    поэтому любой пир может проверить подпись без центра сертификации.
    Тот же node_id используется для детерминированного разрешения
    конфликта ролей.
    """

    def __init__(self, signing_key: Optional[SigningKey] = None):
        self.signing_key: SigningKey = signing_key or SigningKey.generate()
        self.verify_key: VerifyKey = self.signing_key.verify_key
        self.node_id: str = self.verify_key.encode(encoder=Base64Encoder).decode("ascii")

    @classmethod
    def from_seed(cls, seed: bytes) -> "Crypto":
        if len(seed) != 32:
            raise ValueError("Seed must be exactly 32 bytes")
        return cls(SigningKey(seed))

    def export_identity(self) -> bytes:
        """Экспорт приватного ключа для сохранения."""
        return bytes(self.signing_key)

    @classmethod
    def import_identity(cls, key_bytes: bytes) -> "Crypto":
        return cls(SigningKey(key_bytes))

    @classmethod
    def load_or_create(cls, path: str) -> "Crypto":
        """Загрузить идентичность из файла или создать новую."""
        if os.path.exists(path):
            with open(path, "rb") as f:
                return cls.import_identity(f.read())

        crypto = cls()
        with open(path, "wb") as f:
            f.write(crypto.export_identity())
        return crypto

    def sign_message(self, message: Message) -> Message:
        if message.nonce is None:
            message.nonce = base64.b64encode(os.urandom(16)).decode("ascii")

        signed = self.signing_key.sign(message.get_signing_data())
        message.signature = base64.b64encode(signed.signature).decode("ascii")
        return message

    @staticmethod
    def verify_signature(message: Message) -> bool:
        """
        Проверить подпись сообщения.

        Возвращает True только если подпись валидна и соответствует sender_id.
        """
        if message.signature is None:
            return False

        try:
            verify_key = VerifyKey(message.sender_id.encode("ascii"), encoder=Base64Encoder)
            signature = base64.b64decode(message.signature)
            verify_key.verify(message.get_signing_data(), signature)
            return True
        except (CryptoError, ValueError, TypeError):
            return False


class SimpleTransport:
    """
    Кадрирование сообщений.

    Формат: 4 байта длины (big-endian) + JSON конверт
    """

    @staticmethod
    def pack(message: Message, max_size: int = MAX_FRAME_SIZE) -> bytes:
        payload = message.to_json().encode("utf-8")
        if len(payload) > max_size:
            raise FrameTooLargeError(f"Frame too large: {len(payload)} > {max_size}")
        return len(payload).to_bytes(FRAME_HEADER_SIZE, "big") + payload

    @staticmethod
    def unpack_length(header: bytes) -> int:
        if len(header) < FRAME_HEADER_SIZE:
            raise TransportError("Header too short")
        return int.from_bytes(header[:FRAME_HEADER_SIZE], "big")

    @staticmethod
    def unpack(data: bytes) -> Message:
        try:
            return Message.from_json(data.decode("utf-8"))
        except UnicodeDecodeError as e:
            raise TransportError(f"Invalid UTF-8 frame: {e}") from e

    @staticmethod
    async def read_message(
        reader: asyncio.StreamReader,
        max_size: int = MAX_FRAME_SIZE,
    ) -> Message:
        """
        Прочитать один кадр из потока.

        Raises:
            asyncio.IncompleteReadError: соединение закрыто
            FrameTooLargeError: заявленная длина больше лимита
        """
        header = await reader.readexactly(FRAME_HEADER_SIZE)
        length = SimpleTransport.unpack_length(header)
        if length > max_size:
            raise FrameTooLargeError(f"Frame too large: {length} > {max_size}")
        payload = await reader.readexactly(length)
        return SimpleTransport.unpack(payload)

    @staticmethod
    async def write_message(
        writer: asyncio.StreamWriter,
        message: Message,
        max_size: int = MAX_FRAME_SIZE,
    ) -> int:
        data = SimpleTransport.pack(message, max_size)
        writer.write(data)
        await writer.drain()
        return len(data)
