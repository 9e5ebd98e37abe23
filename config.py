"""
Split Inference Configuration
=============================
Централизованная конфигурация узла распределённого инференса.

[PIPELINE] Модель делится на две половины по split_layer:
- first_half: слои [0, split_layer]
- second_half: слои [split_layer + 1, total_layers - 1]
"""

from dataclasses import dataclass, field
from typing import Optional

import os


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# Environment overrides (.env: SPLIT_*)
TOTAL_LAYERS: int = _env_int("SPLIT_TOTAL_LAYERS", 32)  # type: ignore
HIDDEN_DIM: int = _env_int("SPLIT_HIDDEN_DIM", 4096)  # type: ignore
SPLIT_LAYER: Optional[int] = _env_int("SPLIT_LAYER", None)
HOST: str = os.getenv("SPLIT_HOST", "127.0.0.1").strip() or "127.0.0.1"
PORT: int = _env_int("SPLIT_PORT", 9470)  # type: ignore
LOG_LEVEL: str = os.getenv("SPLIT_LOG_LEVEL", "INFO").upper()


@dataclass
class ModelConfig:
    """Параметры модели, общие для обеих половин."""

    # Всего transformer слоёв
    total_layers: int = TOTAL_LAYERS

    # Размер скрытого состояния (ширина активаций)
    hidden_dim: int = HIDDEN_DIM

    # Последний слой первой половины; None = total_layers // 2
    split_layer: Optional[int] = SPLIT_LAYER

    def __post_init__(self):
        if self.split_layer is None:
            self.split_layer = self.total_layers // 2

        if self.total_layers < 2:
            raise ValueError(f"total_layers must be >= 2, got {self.total_layers}")
        if self.hidden_dim <= 0:
            raise ValueError(f"hidden_dim must be positive, got {self.hidden_dim}")
        if not 0 <= self.split_layer <= self.total_layers - 2:
            raise ValueError(
                f"split_layer must be in [0, {self.total_layers - 2}], "
                f"got {self.split_layer}"
            )

    def to_dict(self):
        return {
            "total_layers": self.total_layers,
            "hidden_dim": self.hidden_dim,
            "split_layer": self.split_layer,
        }


@dataclass
class CoordinatorConfig:
    """Настройки координатора и реестра сессий."""

    # dtype активаций по умолчанию
    activation_dtype: str = "float16"

    # Подряд идущие ошибки разбора активаций до перехода в ERROR
    max_parse_failures: int = 3

    # Время жизни завершённой сессии (секунды)
    completed_session_ttl: float = 300.0

    # Время жизни неактивной сессии (секунды)
    idle_session_ttl: float = 3600.0

    # Максимум сессий в реестре
    max_sessions: int = 1024

    # Длина последовательности для оценки размера активаций в info()
    info_seq_len: int = 2048


@dataclass
class NetworkConfig:
    """Настройки peer канала."""

    host: str = HOST
    port: int = PORT

    # Таймаут подключения и handshake (секунды)
    connection_timeout: float = 10.0

    # Размер исходящей очереди; send() возвращает False при переполнении
    send_queue_size: int = 256

    # Максимальный размер кадра (байты)
    max_frame_size: int = 256 * 1024 * 1024

    # Подписывать исходящие сообщения Ed25519
    sign_messages: bool = True


@dataclass
class CryptoConfig:
    """Настройки идентичности узла."""

    # Путь к файлу с ключевой парой
    identity_file: str = "identity.key"


@dataclass
class LoggingConfig:
    """Настройки логирования."""

    level: str = LOG_LEVEL
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    # Размер буфера activity log
    activity_buffer: int = 1000


@dataclass
class Config:
    """Главный конфигурационный класс."""

    model: ModelConfig = field(default_factory=ModelConfig)
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    crypto: CryptoConfig = field(default_factory=CryptoConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# Глобальный экземпляр конфигурации
config = Config()
