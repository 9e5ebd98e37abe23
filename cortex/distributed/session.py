"""
Inference Sessions - Реестр сессий координатора
===============================================

[SESSION] Одна сессия = один обмен prompt -> поток токенов между
половинами модели. Сессия хранит:
- prompt_tokens и generated_tokens (только append)
- pending_activations: FIFO очередь активаций
- собственное состояние (state), независимое от других сессий

[REGISTRY] SessionRegistry ограничивает рост:
- close(): явное удаление
- cleanup_expired(): TTL для завершённых и неактивных сессий
- max_sessions: вытеснение при переполнении
"""

import time
import uuid
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List, Deque, Iterator

from .codec import TensorPayload
from .protocol import Role, Token

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Состояние отдельной сессии."""
    STARTED = "started"                        # Открыта локально
    STARTED_REMOTE = "started_remote"          # Открыта пиром
    RECEIVING = "receiving"                    # Активация пришла раньше infer_start
    WAITING_ACTIVATION = "waiting_activation"  # Вторая половина ждёт активацию
    INFERRING = "inferring"                    # Обрабатывается активация
    COMPLETED = "completed"


def generate_session_id() -> str:
    """Уникальный ID сессии (uuid4, 128 бит случайности)."""
    return uuid.uuid4().hex


@dataclass
class Activation:
    """Активация в очереди сессии."""
    layer: int
    tensor: TensorPayload
    received_at: float = field(default_factory=time.time)


@dataclass
class SessionStats:
    activation_transfers: int = 0
    total_bytes: int = 0


@dataclass
class Session:
    id: str
    state: SessionState = SessionState.STARTED
    prompt_tokens: List[Any] = field(default_factory=list)
    generated_tokens: List[Token] = field(default_factory=list)
    pending_activations: Deque[Activation] = field(default_factory=deque)
    created_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None
    last_activity: float = field(default_factory=time.time)
    remote_role: Optional[Role] = None
    stats: SessionStats = field(default_factory=SessionStats)

    @property
    def is_completed(self) -> bool:
        return self.state == SessionState.COMPLETED

    @property
    def idle_seconds(self) -> float:
        return time.time() - self.last_activity

    def touch(self) -> None:
        self.last_activity = time.time()

    def enqueue_activation(self, activation: Activation) -> None:
        self.pending_activations.append(activation)
        self.touch()

    def pop_activation(self) -> Optional[Activation]:
        """Взять самую старую активацию (FIFO)."""
        if not self.pending_activations:
            return None
        self.touch()
        return self.pending_activations.popleft()

    def requeue_activation(self, activation: Activation) -> None:
        """Вернуть активацию в голову очереди."""
        self.pending_activations.appendleft(activation)

    def add_token(self, token: Token) -> None:
        self.generated_tokens.append(token)
        self.touch()

    def complete(self) -> None:
        self.state = SessionState.COMPLETED
        self.ended_at = time.time()
        self.touch()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "prompt_tokens": len(self.prompt_tokens),
            "generated_tokens": len(self.generated_tokens),
            "pending_activations": len(self.pending_activations),
            "created_at": self.created_at,
            "ended_at": self.ended_at,
            "remote_role": self.remote_role.value if self.remote_role else None,
            "activation_transfers": self.stats.activation_transfers,
            "total_bytes": self.stats.total_bytes,
        }


class SessionRegistry:
    """
    Реестр сессий с TTL и ограничением размера.

    [EVICTION]
    - Завершённые сессии живут completed_ttl секунд после ended_at
    - Незавершённые удаляются после idle_ttl секунд без активности
    - При переполнении вытесняется самая старая завершённая сессия,
      а если таких нет - наименее активная
    """

    def __init__(
        self,
        max_sessions: int = 1024,
        completed_ttl: float = 300.0,
        idle_ttl: float = 3600.0,
    ):
        self.max_sessions = max_sessions
        self.completed_ttl = completed_ttl
        self.idle_ttl = idle_ttl
        self._sessions: "OrderedDict[str, Session]" = OrderedDict()
        self.evicted = 0

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def add(self, session: Session) -> Session:
        """
        Зарегистрировать сессию.

        Raises:
            ValueError: ID уже зарегистрирован
        """
        if session.id in self._sessions:
            raise ValueError(f"duplicate session id: {session.id}")

        while len(self._sessions) >= self.max_sessions and self._sessions:
            self._evict_one()

        self._sessions[session.id] = session
        return session

    def create(
        self,
        session_id: Optional[str] = None,
        state: SessionState = SessionState.STARTED,
        **kwargs: Any,
    ) -> Session:
        """Создать и зарегистрировать сессию."""
        session_id = session_id or generate_session_id()
        while session_id in self._sessions:
            session_id = generate_session_id()
        return self.add(Session(id=session_id, state=state, **kwargs))

    def close(self, session_id: str) -> bool:
        """Явно удалить сессию из реестра."""
        return self._sessions.pop(session_id, None) is not None

    def _evict_one(self) -> None:
        victim = None
        for session in self._sessions.values():
            if session.is_completed:
                victim = session
                break

        if victim is None:
            victim = min(self._sessions.values(), key=lambda s: s.last_activity)

        del self._sessions[victim.id]
        self.evicted += 1
        logger.debug(f"[SESSION] Evicted {victim.id[:8]} ({victim.state.value})")

    def cleanup_expired(self, now: Optional[float] = None) -> int:
        """Удалить сессии с истёкшим TTL."""
        now = now if now is not None else time.time()
        expired = []
        for session in self._sessions.values():
            if session.is_completed:
                if now - (session.ended_at or session.last_activity) > self.completed_ttl:
                    expired.append(session.id)
            elif now - session.last_activity > self.idle_ttl:
                expired.append(session.id)

        for session_id in expired:
            del self._sessions[session_id]

        self.evicted += len(expired)
        if expired:
            logger.info(f"[SESSION] Expired {len(expired)} sessions")
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        completed = sum(1 for s in self._sessions.values() if s.is_completed)
        return {
            "sessions": len(self._sessions),
            "active": len(self._sessions) - completed,
            "completed": completed,
            "pending_activations": sum(len(s.pending_activations) for s in self._sessions.values()),
            "evicted": self.evicted,
            "max_sessions": self.max_sessions,
        }
