"""
Split Inference Protocol - Сообщения координатора
=================================================

[PROTOCOL] Пять типов сообщений между половинами модели:
- layer_assign: распределение ролей и слоёв
- infer_start: открытие сессии
- infer_act: активация (формат принадлежит codec)
- infer_token: сгенерированный токен
- infer_done: закрытие сессии

[MESSAGE FORMAT]
layer_assign  {type, role, local_layers:[start,end], remote_layers:[start,end],
               model_config?:{total_layers,hidden_dim,split_layer}, node_id?}
infer_start   {type, session_id, prompt_tokens:[...], role}
infer_act     {type, session_id, layer, tensor:{...}, timestamp}
infer_token   {type, session_id, token:{id, text}}
infer_done    {type, session_id, tokens_generated}
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple, Union


class ProtocolError(ValueError):
    """Malformed message of a known type."""
    pass


class Role(str, Enum):
    """Роль узла в распределённом инференсе."""
    FIRST_HALF = "first_half"    # Слои 0..split (отправляет активации)
    SECOND_HALF = "second_half"  # Слои split+1..end (генерирует токены)
    FULL = "full"                # Без распределения

    @property
    def complement(self) -> "Role":
        if self == Role.FIRST_HALF:
            return Role.SECOND_HALF
        if self == Role.SECOND_HALF:
            return Role.FIRST_HALF
        return Role.FULL


class InferMessageType(str, Enum):
    """Закрытый набор типов сообщений протокола."""
    LAYER_ASSIGN = "layer_assign"
    INFER_START = "infer_start"
    INFER_ACT = "infer_act"
    INFER_TOKEN = "infer_token"
    INFER_DONE = "infer_done"


def message_type(msg: Any) -> Optional[InferMessageType]:
    """Тип сообщения протокола или None для чужих сообщений."""
    if not isinstance(msg, dict):
        return None
    try:
        return InferMessageType(msg.get("type"))
    except ValueError:
        return None


def _require(msg: Dict[str, Any], key: str) -> Any:
    if key not in msg or msg[key] is None:
        raise ProtocolError(f"{msg.get('type')}: missing field '{key}'")
    return msg[key]


def _require_session_id(msg: Dict[str, Any]) -> str:
    session_id = _require(msg, "session_id")
    if not isinstance(session_id, str) or not session_id:
        raise ProtocolError(f"{msg.get('type')}: invalid session_id {session_id!r}")
    return session_id


def _parse_range(value: Any, name: str) -> Tuple[int, int]:
    try:
        start, end = value
        return int(start), int(end)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"layer_assign: invalid {name} {value!r}") from e


def _parse_role(value: Any) -> Role:
    try:
        return Role(value)
    except ValueError as e:
        raise ProtocolError(f"unknown role: {value!r}") from e


@dataclass
class Token:
    """Сгенерированный токен."""
    id: int
    text: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "text": self.text}

    @classmethod
    def from_value(cls, value: Union["Token", Dict[str, Any]]) -> "Token":
        if isinstance(value, Token):
            return value
        if not isinstance(value, dict) or "id" not in value:
            raise ProtocolError(f"invalid token: {value!r}")
        try:
            return cls(id=int(value["id"]), text=str(value.get("text", "")))
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"invalid token id: {value.get('id')!r}") from e


@dataclass
class LayerAssign:
    role: Role
    local_layers: Tuple[int, int]
    remote_layers: Tuple[int, int]
    model_config: Optional[Dict[str, Any]] = None
    node_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        msg: Dict[str, Any] = {
            "type": InferMessageType.LAYER_ASSIGN.value,
            "role": self.role.value,
            "local_layers": list(self.local_layers),
            "remote_layers": list(self.remote_layers),
        }
        if self.model_config is not None:
            msg["model_config"] = dict(self.model_config)
        if self.node_id is not None:
            msg["node_id"] = self.node_id
        return msg

    @classmethod
    def from_dict(cls, msg: Dict[str, Any]) -> "LayerAssign":
        model_config = msg.get("model_config")
        if model_config is not None and not isinstance(model_config, dict):
            raise ProtocolError("layer_assign: model_config must be an object")
        return cls(
            role=_parse_role(_require(msg, "role")),
            local_layers=_parse_range(_require(msg, "local_layers"), "local_layers"),
            remote_layers=_parse_range(_require(msg, "remote_layers"), "remote_layers"),
            model_config=model_config,
            node_id=msg.get("node_id"),
        )


@dataclass
class InferStart:
    session_id: str
    prompt_tokens: List[Any] = field(default_factory=list)
    role: Optional[Role] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": InferMessageType.INFER_START.value,
            "session_id": self.session_id,
            "prompt_tokens": list(self.prompt_tokens),
            "role": self.role.value if self.role else None,
        }

    @classmethod
    def from_dict(cls, msg: Dict[str, Any]) -> "InferStart":
        prompt_tokens = msg.get("prompt_tokens") or []
        if not isinstance(prompt_tokens, list):
            raise ProtocolError("infer_start: prompt_tokens must be a list")
        role = msg.get("role")
        return cls(
            session_id=_require_session_id(msg),
            prompt_tokens=prompt_tokens,
            role=_parse_role(role) if role is not None else None,
        )


@dataclass
class InferToken:
    session_id: str
    token: Token

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": InferMessageType.INFER_TOKEN.value,
            "session_id": self.session_id,
            "token": self.token.to_dict(),
        }

    @classmethod
    def from_dict(cls, msg: Dict[str, Any]) -> "InferToken":
        return cls(
            session_id=_require_session_id(msg),
            token=Token.from_value(_require(msg, "token")),
        )


@dataclass
class InferDone:
    session_id: str
    tokens_generated: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": InferMessageType.INFER_DONE.value,
            "session_id": self.session_id,
            "tokens_generated": self.tokens_generated,
        }

    @classmethod
    def from_dict(cls, msg: Dict[str, Any]) -> "InferDone":
        try:
            count = int(msg.get("tokens_generated") or 0)
        except (TypeError, ValueError) as e:
            raise ProtocolError("infer_done: invalid tokens_generated") from e
        return cls(session_id=_require_session_id(msg), tokens_generated=count)
