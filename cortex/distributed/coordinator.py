"""
Split Inference Coordinator
===========================

[NEURAL] Координация инференса модели, разрезанной между двумя пирами.

Архитектура:
============

┌──────────────┐   infer_start / infer_act   ┌──────────────┐
│ FIRST_HALF   │ ─────────────────────────►  │ SECOND_HALF  │
│ Layers       │                             │ Layers       │
│ [0:split]    │  ◄─────────────────────────  │ [split+1:N]  │
│              │   infer_token / infer_done  │ + engine     │
└──────────────┘                             └──────────────┘

[PROTOCOL]
1. configure_first_half() -> layer_assign -> пир становится SECOND_HALF
2. start_session(prompt) -> infer_start -> пир ждёт активацию
3. send_activation() -> infer_act -> handle_activation -> continue_inference
4. engine.step() -> emit_token -> infer_token -> handle_token на первой половине
5. end_session() -> infer_done

[CONCURRENCY] Координатор однопоточный и не блокирует: все операции
синхронные, peer.send() только ставит сообщение в очередь. Поле state
общее для узла; состояние каждой сессии хранится в Session.state.

[ERROR STATE] Координатор переходит в ERROR если:
- подряд max_parse_failures активаций не удалось разобрать
- хост сообщил об обрыве соединения (handle_peer_disconnected)
- inference engine бросил исключение
Выход из ERROR: configure_*, handle_layer_assign, end_session,
handle_infer_done.
"""

import logging
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple, Callable, Union, Sequence

import numpy as np

from config import ModelConfig, CoordinatorConfig
from . import codec
from .codec import CodecError, TensorPayload
from .engine import InferenceEngine
from .protocol import (
    ProtocolError,
    Role,
    InferMessageType,
    LayerAssign,
    InferStart,
    InferToken,
    InferDone,
    Token,
    message_type,
)
from .session import (
    Activation,
    Session,
    SessionRegistry,
    SessionState,
)

logger = logging.getLogger(__name__)


class CoordinatorState(str, Enum):
    """Состояние координатора."""
    IDLE = "idle"
    CONFIGURING = "configuring"
    READY = "ready"
    INFERRING = "inferring"
    WAITING_ACTIVATION = "waiting_activation"
    ERROR = "error"


class CoordinatorErrorCode(str, Enum):
    ROLE_VIOLATION = "role_violation"
    UNKNOWN_SESSION = "unknown_session"
    PARSE_ERROR = "parse_error"
    CODEC_ERROR = "codec_error"
    SEND_FAILED = "send_failed"
    ENGINE_ERROR = "engine_error"
    NO_ENGINE = "no_engine"
    MALFORMED_MESSAGE = "malformed_message"
    ROLE_CONFLICT = "role_conflict"


@dataclass
class SendResult:
    """
    Результат прямого вызова координатора.

    [RESULT] success=False всегда сопровождается error и code.
    bytes - учтённый размер активации (даже при неудачной отправке).
    """
    success: bool
    error: str = ""
    code: Optional[CoordinatorErrorCode] = None
    bytes: int = 0

    def __bool__(self) -> bool:
        return self.success


@dataclass
class CoordinatorStats:
    activations_sent: int = 0
    activations_received: int = 0
    bytes_transferred: int = 0
    tokens_generated: int = 0
    inference_count: int = 0
    parse_errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


ActivationData = Union[bytes, bytearray, np.ndarray]


class Coordinator:
    """
    Координатор распределённого инференса для одной пары пиров.

    [USAGE]
        coordinator = Coordinator(peer=channel, engine=MockInferenceEngine())
        channel.on_message = coordinator.handle_message

        coordinator.configure_first_half()
        session = coordinator.start_session([1, 2, 3])
        coordinator.send_activation(session.id, layer=15, activation_data=hidden)

    [HOOKS] Вызываются синхронно, все опциональны:
    - on_token(session_id, token)
    - on_activation_received(session_id, layer, tensor)
    - on_state_change(new_state, old_state)
    - on_error(message)
    """

    def __init__(
        self,
        peer: Optional[Any] = None,
        engine: Optional[InferenceEngine] = None,
        model_config: Optional[ModelConfig] = None,
        settings: Optional[CoordinatorConfig] = None,
        node_id: Optional[str] = None,
        on_token: Optional[Callable[[str, Token], Any]] = None,
        on_activation_received: Optional[Callable[[str, int, TensorPayload], Any]] = None,
        on_state_change: Optional[Callable[[CoordinatorState, CoordinatorState], Any]] = None,
        on_error: Optional[Callable[[str], Any]] = None,
    ):
        """
        Args:
            peer: Peer канал с методом send(dict) -> bool (None = локально)
            engine: Движок для генерации токенов из активаций
            model_config: Параметры модели (total_layers, hidden_dim, split_layer)
            settings: Настройки координатора и реестра сессий
            node_id: ID узла для разрешения конфликта ролей
        """
        model_config = model_config or ModelConfig()
        settings = settings or CoordinatorConfig()

        self.peer = peer
        self.engine = engine
        self.node_id = node_id

        # Model configuration
        self.total_layers = model_config.total_layers
        self.hidden_dim = model_config.hidden_dim
        self.split_layer = model_config.split_layer

        self.activation_dtype = settings.activation_dtype
        self.max_parse_failures = settings.max_parse_failures
        self.info_seq_len = settings.info_seq_len

        # Role and layer assignment
        self.role = Role.FULL
        self.state = CoordinatorState.IDLE
        self.local_layers: Optional[Tuple[int, int]] = None
        self.remote_layers: Optional[Tuple[int, int]] = None

        self.sessions = SessionRegistry(
            max_sessions=settings.max_sessions,
            completed_ttl=settings.completed_session_ttl,
            idle_ttl=settings.idle_session_ttl,
        )

        # Callbacks
        self.on_token = on_token
        self.on_activation_received = on_activation_received
        self.on_state_change = on_state_change
        self.on_error = on_error

        self.stats = CoordinatorStats()
        self.last_error: Optional[Tuple[CoordinatorErrorCode, str]] = None
        self._parse_failures = 0

        self._handlers: Dict[InferMessageType, Callable[[Dict[str, Any]], None]] = {
            InferMessageType.LAYER_ASSIGN: self.handle_layer_assign,
            InferMessageType.INFER_START: self.handle_infer_start,
            InferMessageType.INFER_ACT: self.handle_activation,
            InferMessageType.INFER_TOKEN: self.handle_token,
            InferMessageType.INFER_DONE: self.handle_infer_done,
        }
        missing = set(InferMessageType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for message types: {sorted(m.value for m in missing)}")

    # ------------------------------------------------------------------
    # State & helpers
    # ------------------------------------------------------------------

    def set_state(self, new_state: CoordinatorState) -> None:
        old_state = self.state
        self.state = new_state
        if self.on_state_change:
            self.on_state_change(new_state, old_state)

    def _send(self, message: Dict[str, Any]) -> bool:
        if self.peer is None:
            return True
        ok = bool(self.peer.send(message))
        if not ok:
            logger.warning(f"[COORD] Failed to send {message.get('type')} to peer")
        return ok

    def _report_error(self, message: str, code: CoordinatorErrorCode) -> None:
        self.last_error = (code, message)
        logger.warning(f"[COORD] {message}")
        if self.on_error:
            self.on_error(message)

    def _enter_error(self, reason: str) -> None:
        logger.error(f"[COORD] Entering ERROR state: {reason}")
        self.set_state(CoordinatorState.ERROR)

    def _layer_ranges(self, role: Role) -> Tuple[Tuple[int, int], Tuple[int, int]]:
        first = (0, self.split_layer)
        second = (self.split_layer + 1, self.total_layers - 1)
        if role == Role.FIRST_HALF:
            return first, second
        return second, first

    def _model_config(self) -> Dict[str, int]:
        return {
            "total_layers": self.total_layers,
            "hidden_dim": self.hidden_dim,
            "split_layer": self.split_layer,
        }

    def _merge_model_config(self, model_config: Dict[str, Any]) -> None:
        """
        Принять параметры модели от пира.

        Поля отсутствующие в сообщении сохраняют локальные значения.
        Расхождения только логируются: пир-FIRST_HALF авторитетен.
        """
        for key in ("total_layers", "hidden_dim", "split_layer"):
            value = model_config.get(key)
            if value is None:
                continue
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning(f"[COORD] Ignoring invalid peer {key}={value!r}")
                continue
            current = getattr(self, key)
            if value != current:
                logger.warning(f"[COORD] Peer {key}={value} differs from local {current}, adopting")
                setattr(self, key, value)

    # ------------------------------------------------------------------
    # Role & layer configuration
    # ------------------------------------------------------------------

    def _configure(self, role: Role, announce: bool = True) -> "Coordinator":
        self.set_state(CoordinatorState.CONFIGURING)
        self.role = role
        self.local_layers, self.remote_layers = self._layer_ranges(role)
        self._parse_failures = 0
        self.set_state(CoordinatorState.READY)

        logger.info(
            f"[COORD] Configured as {role.value}: local={list(self.local_layers)} "
            f"remote={list(self.remote_layers)}"
        )

        if announce:
            assign = LayerAssign(
                role=role,
                local_layers=self.local_layers,
                remote_layers=self.remote_layers,
                model_config=self._model_config() if role == Role.FIRST_HALF else None,
                node_id=self.node_id,
            )
            self._send(assign.to_dict())
        return self

    def configure_first_half(self) -> "Coordinator":
        """Слои [0, split_layer]; отправляет layer_assign с model_config."""
        return self._configure(Role.FIRST_HALF)

    def configure_second_half(self) -> "Coordinator":
        """Слои [split_layer + 1, total_layers - 1]; layer_assign без model_config."""
        return self._configure(Role.SECOND_HALF)

    def handle_layer_assign(self, msg: Dict[str, Any]) -> None:
        """
        Принять роль, дополняющую роль пира.

        [RECONCILIATION]
        - model_config принимается только от пира, чья заявка FIRST_HALF
          остаётся в силе, и до вычисления диапазонов слоёв
        - роль уже дополняет роль пира: пересчитываем слои без ответа
        - обе стороны заявили одну роль: меньший node_id становится
          FIRST_HALF, победитель сохраняет роль и конфигурацию молча
        - конфликт без node_id: принимаем дополняющую роль без ответа
          и сообщаем ROLE_CONFLICT через on_error
        """
        assign = LayerAssign.from_dict(msg)

        if assign.role == Role.FULL:
            logger.info("[COORD] Peer runs the full model, keeping local role")
            return

        desired = assign.role.complement
        # only the first half is authoritative for model parameters
        peer_config = assign.model_config if assign.role == Role.FIRST_HALF else None

        if self.role == desired:
            if peer_config:
                self._merge_model_config(peer_config)
            self.local_layers, self.remote_layers = self._layer_ranges(self.role)
            if self.state in (CoordinatorState.IDLE, CoordinatorState.ERROR):
                self.set_state(CoordinatorState.READY)
            logger.debug(f"[COORD] Peer confirmed {assign.role.value}, roles consistent")
            return

        if self.role == assign.role:
            if self.node_id and assign.node_id and self.node_id != assign.node_id:
                first_owner = min(self.node_id, assign.node_id)
                resolved = Role.FIRST_HALF if self.node_id == first_owner else Role.SECOND_HALF
                logger.warning(
                    f"[COORD] Role conflict: both sides claim {assign.role.value}, "
                    f"resolved to {resolved.value}"
                )
                if resolved == self.role:
                    if self.state in (CoordinatorState.IDLE, CoordinatorState.ERROR):
                        self.set_state(CoordinatorState.READY)
                    return
                if resolved == Role.SECOND_HALF and peer_config:
                    self._merge_model_config(peer_config)
                self._configure(resolved)
                return

            # no identities to order by: yield once and stay silent
            self._report_error(
                f"Role conflict: both sides claim {assign.role.value} and node ids "
                f"cannot be compared, adopting {desired.value}",
                CoordinatorErrorCode.ROLE_CONFLICT,
            )
            if peer_config:
                self._merge_model_config(peer_config)
            self._configure(desired, announce=False)
            return

        if peer_config:
            self._merge_model_config(peer_config)
        self._configure(desired)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_session(self, prompt_tokens: Optional[Sequence[Any]] = None) -> Session:
        """Открыть сессию и уведомить пира (infer_start)."""
        session = self.sessions.create(
            state=SessionState.STARTED,
            prompt_tokens=list(prompt_tokens or []),
        )
        self.stats.inference_count += 1

        self._send(InferStart(
            session_id=session.id,
            prompt_tokens=session.prompt_tokens,
            role=self.role,
        ).to_dict())

        logger.info(f"[COORD] Session {session.id[:8]} started ({len(session.prompt_tokens)} prompt tokens)")
        return session

    def handle_infer_start(self, msg: Dict[str, Any]) -> None:
        start = InferStart.from_dict(msg)

        session = self.sessions.get(start.session_id)
        if session is None:
            session = self.sessions.create(
                session_id=start.session_id,
                state=SessionState.STARTED_REMOTE,
                prompt_tokens=start.prompt_tokens,
                remote_role=start.role,
            )
        else:
            # an early activation already created a stub: keep its queue
            session.prompt_tokens = start.prompt_tokens
            session.remote_role = start.role
            if session.state == SessionState.RECEIVING:
                session.state = SessionState.STARTED_REMOTE
            session.touch()

        logger.info(f"[COORD] Session {session.id[:8]} started by peer")

        if self.role == Role.SECOND_HALF:
            self.set_state(CoordinatorState.WAITING_ACTIVATION)

    def end_session(self, session_id: str) -> bool:
        """Завершить сессию и уведомить пира (infer_done)."""
        session = self.sessions.get(session_id)
        if session is None:
            return False

        session.complete()
        self._send(InferDone(
            session_id=session_id,
            tokens_generated=len(session.generated_tokens),
        ).to_dict())

        self.set_state(CoordinatorState.READY)
        logger.info(f"[COORD] Session {session_id[:8]} completed ({len(session.generated_tokens)} tokens)")
        return True

    def handle_infer_done(self, msg: Dict[str, Any]) -> None:
        done = InferDone.from_dict(msg)
        session = self.sessions.get(done.session_id)
        if session is not None:
            session.complete()
        self.set_state(CoordinatorState.READY)

    def close_session(self, session_id: str) -> bool:
        """Удалить сессию из реестра."""
        return self.sessions.close(session_id)

    def cleanup_sessions(self) -> int:
        return self.sessions.cleanup_expired()

    def handle_peer_disconnected(self) -> None:
        self._enter_error("peer disconnected")

    # ------------------------------------------------------------------
    # Activation transfer
    # ------------------------------------------------------------------

    def _default_shape(self, nbytes: int) -> Tuple[int, int, int]:
        per_token = int(self.hidden_dim * codec.DTYPE_SIZE.get(self.activation_dtype, 4))
        return (1, nbytes // per_token, self.hidden_dim)

    def send_activation(
        self,
        session_id: str,
        layer: int,
        activation_data: ActivationData,
        shape: Optional[Sequence[int]] = None,
    ) -> SendResult:
        """
        Отправить активацию пиру (только FIRST_HALF).

        [ACCOUNTING] Счётчики обновляются до отправки: неудачная запись в
        канал всё равно учитывается как попытка передачи.

        Args:
            session_id: ID зарегистрированной сессии
            layer: Индекс слоя, выход которого передаётся
            activation_data: Сырые байты или numpy массив
            shape: Shape; по умолчанию (1, seq_len, hidden_dim)
        """
        if self.role != Role.FIRST_HALF:
            return SendResult(
                False, "only first_half sends activations", CoordinatorErrorCode.ROLE_VIOLATION,
            )

        session = self.sessions.get(session_id)
        if session is None:
            return SendResult(
                False, f"unknown session: {session_id}", CoordinatorErrorCode.UNKNOWN_SESSION,
            )

        if shape is None and not isinstance(activation_data, np.ndarray):
            shape = self._default_shape(len(activation_data))

        try:
            msg = codec.create_activation_message(
                session_id, layer, activation_data, shape, self.activation_dtype,
            )
        except CodecError as e:
            return SendResult(False, f"activation encode error: {e}", CoordinatorErrorCode.CODEC_ERROR)

        size = codec.calc_size(msg["tensor"]["shape"], msg["tensor"]["dtype"])
        self.stats.activations_sent += 1
        self.stats.bytes_transferred += size
        session.stats.activation_transfers += 1
        session.stats.total_bytes += size
        session.touch()

        if not self._send(msg):
            return SendResult(False, "send failed", CoordinatorErrorCode.SEND_FAILED, size)

        logger.debug(f"[COORD] Sent activation layer={layer} ({codec.format_size(size)}) for {session_id[:8]}")
        return SendResult(True, bytes=size)

    def handle_activation(self, msg: Dict[str, Any]) -> None:
        """
        Принять активацию, поставить в очередь и сразу обработать.

        Неразбираемые сообщения отбрасываются с уведомлением on_error.
        """
        try:
            parsed = codec.parse_activation_message(msg)
        except CodecError as e:
            self.stats.parse_errors += 1
            self._parse_failures += 1
            self._report_error(f"activation parse error: {e}", CoordinatorErrorCode.PARSE_ERROR)
            if self._parse_failures >= self.max_parse_failures:
                self._enter_error(f"{self._parse_failures} consecutive activation parse failures")
            return

        self._parse_failures = 0

        session = self.sessions.get(parsed.session_id)
        if session is None:
            # activation overtook infer_start
            session = self.sessions.create(session_id=parsed.session_id, state=SessionState.RECEIVING)

        session.enqueue_activation(Activation(layer=parsed.layer, tensor=parsed.tensor))
        self.stats.activations_received += 1

        if self.on_activation_received:
            self.on_activation_received(parsed.session_id, parsed.layer, parsed.tensor)

        self.continue_inference(parsed.session_id)

    def continue_inference(self, session_id: str) -> Optional[Token]:
        """
        Обработать самую старую активацию сессии.

        Returns:
            Сгенерированный токен или None (очередь пуста / ошибка)
        """
        session = self.sessions.get(session_id)
        if session is None:
            return None

        activation = session.pop_activation()
        if activation is None:
            return None

        if self.engine is None:
            session.requeue_activation(activation)
            self._report_error(
                f"no inference engine to process session {session_id}", CoordinatorErrorCode.NO_ENGINE,
            )
            return None

        previous = session.state
        self.set_state(CoordinatorState.INFERRING)
        session.state = SessionState.INFERRING

        try:
            token = self.engine.step(activation)
        except Exception as e:
            session.state = previous
            self._report_error(
                f"inference failed for session {session_id} at layer {activation.layer}: {e}",
                CoordinatorErrorCode.ENGINE_ERROR,
            )
            self._enter_error("inference engine failure")
            return None

        if self.role == Role.SECOND_HALF:
            session.state = SessionState.WAITING_ACTIVATION
        else:
            session.state = previous

        self.emit_token(session_id, token)
        return token

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def emit_token(self, session_id: str, token: Union[Token, Dict[str, Any]]) -> bool:
        """Добавить токен локально и переслать пиру (infer_token)."""
        session = self.sessions.get(session_id)
        if session is None:
            return False

        token = Token.from_value(token)
        session.add_token(token)
        self.stats.tokens_generated += 1

        if self.on_token:
            self.on_token(session_id, token)

        self._send(InferToken(session_id=session_id, token=token).to_dict())
        return True

    def handle_token(self, msg: Dict[str, Any]) -> None:
        infer_token = InferToken.from_dict(msg)

        session = self.sessions.get(infer_token.session_id)
        if session is not None:
            session.add_token(infer_token.token)

        if self.on_token:
            self.on_token(infer_token.session_id, infer_token.token)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def handle_message(self, msg: Dict[str, Any]) -> bool:
        """
        Обработать входящее сообщение.

        Returns:
            True если сообщение принадлежит протоколу координатора
        """
        kind = message_type(msg)
        if kind is None:
            return False

        try:
            self._handlers[kind](msg)
        except ProtocolError as e:
            self._report_error(f"malformed {kind.value} message: {e}", CoordinatorErrorCode.MALFORMED_MESSAGE)
        return True

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "role": self.role.value,
            "state": self.state.value,
            "local_layers": list(self.local_layers) if self.local_layers else None,
            "remote_layers": list(self.remote_layers) if self.remote_layers else None,
            "sessions": len(self.sessions),
            "registry": self.sessions.get_stats(),
            "stats": self.stats.to_dict(),
        }

    def info(self) -> str:
        layer_info = ""
        if self.local_layers and self.remote_layers:
            layer_info = (
                f"local={self.local_layers[0]}-{self.local_layers[1]}, "
                f"remote={self.remote_layers[0]}-{self.remote_layers[1]}"
            )

        activation_size = codec.calc_size(
            (1, self.info_seq_len, self.hidden_dim), self.activation_dtype,
        )

        return (
            "Distributed Coordinator\n"
            f"  Role: {self.role.value}\n"
            f"  State: {self.state.value}\n"
            f"  Model: {self.total_layers} layers, hidden_dim={self.hidden_dim}\n"
            f"  Split: layer {self.split_layer} ({layer_info})\n"
            f"  Activation size ({self.info_seq_len // 1024}k seq): {codec.format_size(activation_size)}\n"
            f"  Transferred: {self.stats.activations_sent} sent, "
            f"{self.stats.activations_received} received, "
            f"{codec.format_size(self.stats.bytes_transferred)}"
        )
