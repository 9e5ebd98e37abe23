"""
Inference Engine - Вычисление токена из активации
=================================================

[ENGINE] Координатор не знает, как исполняется модель. Хост передаёт
ему объект с методом step(activation) -> Token, который прогоняет
активацию через хвостовые слои и сэмплирует следующий токен.

[IMPLEMENTATIONS]
- MockInferenceEngine: детерминированная заглушка на numpy (тесты, демо)
- CallableInferenceEngine: обёртка над обычной функцией
"""

import time
import logging
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List, Callable

import numpy as np

from .codec import CodecError, checksum
from .protocol import Token
from .session import Activation

logger = logging.getLogger(__name__)


class InferenceEngine(ABC):
    """
    Абстрактный движок инференса второй половины модели.
    """

    def __init__(self):
        self.total_steps = 0
        self.total_time_ms = 0.0

    @abstractmethod
    def _step(self, activation: Activation) -> Token:
        pass

    def step(self, activation: Activation) -> Token:
        """
        Прогнать активацию и вернуть следующий токен.

        Исключения реализации пробрасываются вызывающему.
        """
        start_time = time.time()
        token = self._step(activation)
        self.total_steps += 1
        self.total_time_ms += (time.time() - start_time) * 1000
        return token

    def get_stats(self) -> Dict[str, Any]:
        avg_latency = 0.0
        if self.total_steps > 0:
            avg_latency = self.total_time_ms / self.total_steps
        return {
            "engine": type(self).__name__,
            "total_steps": self.total_steps,
            "avg_latency_ms": avg_latency,
        }


class MockInferenceEngine(InferenceEngine):
    """
    Mock движок для тестирования без модели.

    [MOCK] Токен = argmax(|h|) последнего скрытого вектора по модулю
    vocab_size; для dtype без numpy эквивалента используется checksum.
    Одинаковая активация всегда даёт одинаковый токен.
    """

    def __init__(
        self,
        vocab_size: int = 32000,
        vocabulary: Optional[List[str]] = None,
    ):
        super().__init__()
        self.vocab_size = vocab_size
        self.vocabulary = vocabulary

    def _token_id(self, activation: Activation) -> int:
        try:
            hidden = activation.tensor.to_numpy()
        except CodecError:
            return int(checksum(activation.tensor.data), 16) % self.vocab_size

        if hidden.size == 0:
            return 0
        last = hidden.reshape(-1, hidden.shape[-1])[-1] if hidden.ndim > 0 else hidden.reshape(1)
        return int(np.argmax(np.abs(last.astype(np.float32)))) % self.vocab_size

    def _step(self, activation: Activation) -> Token:
        token_id = self._token_id(activation)
        if self.vocabulary:
            text = self.vocabulary[token_id % len(self.vocabulary)]
        else:
            text = f"[{token_id}]"
        return Token(id=token_id, text=text)


class CallableInferenceEngine(InferenceEngine):
    """Обёртка над функцией activation -> Token | {id, text}."""

    def __init__(self, fn: Callable[[Activation], Any]):
        super().__init__()
        self.fn = fn

    def _step(self, activation: Activation) -> Token:
        return Token.from_value(self.fn(activation))
