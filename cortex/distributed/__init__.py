"""
Distributed Neural Computation
==============================

[NEURAL] Распределённый inference LLM, разрезанной между двумя пирами
(pipeline parallelism на две половины).

Components:
- codec: Tensor serialization/deserialization
- protocol: Сообщения layer_assign / infer_* и роли
- session: Сессии и реестр с TTL
- engine: Движок генерации токенов из активаций
- coordinator: Машина состояний координатора
- node: Рантайм узла поверх peer канала

[USAGE]
    from cortex.distributed import Coordinator, MockInferenceEngine
    from cortex.distributed.codec import encode_tensor, decode_tensor
"""

from .codec import (
    DType,
    Encoding,
    TensorPayload,
    ParsedActivation,
    CodecError,
    TensorTooLargeError,
    encode_tensor,
    decode_tensor,
    create_activation_message,
    parse_activation_message,
    calc_size,
    format_size,
    tensor_info,
    MAX_TENSOR_SIZE,
)

from .protocol import (
    ProtocolError,
    Role,
    InferMessageType,
    Token,
    LayerAssign,
    InferStart,
    InferToken,
    InferDone,
)

from .session import (
    Activation,
    Session,
    SessionState,
    SessionRegistry,
)

from .engine import (
    InferenceEngine,
    MockInferenceEngine,
    CallableInferenceEngine,
)

from .coordinator import (
    Coordinator,
    CoordinatorState,
    CoordinatorErrorCode,
    CoordinatorStats,
    SendResult,
)

from .node import SplitInferenceNode, InferenceError

__all__ = [
    # Codec
    "DType",
    "Encoding",
    "TensorPayload",
    "ParsedActivation",
    "CodecError",
    "TensorTooLargeError",
    "encode_tensor",
    "decode_tensor",
    "create_activation_message",
    "parse_activation_message",
    "calc_size",
    "format_size",
    "tensor_info",
    "MAX_TENSOR_SIZE",
    # Protocol
    "ProtocolError",
    "Role",
    "InferMessageType",
    "Token",
    "LayerAssign",
    "InferStart",
    "InferToken",
    "InferDone",
    # Sessions
    "Activation",
    "Session",
    "SessionState",
    "SessionRegistry",
    # Engine
    "InferenceEngine",
    "MockInferenceEngine",
    "CallableInferenceEngine",
    # Coordinator
    "Coordinator",
    "CoordinatorState",
    "CoordinatorErrorCode",
    "CoordinatorStats",
    "SendResult",
    # Node
    "SplitInferenceNode",
    "InferenceError",
]
