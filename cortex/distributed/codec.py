"""
Activation Tensor Codec
=======================

[NEURAL] Сериализация активаций для передачи между половинами модели.

[SECURITY] НЕ используем pickle - только явная структура dict + bytes.

Формат tensor (JSON-совместимый dict):
=====================================

┌────────────┬──────────────────────────────────────────────┐
│ Field      │ Description                                  │
├────────────┼──────────────────────────────────────────────┤
│ shape      │ [d0, d1, ...]                                │
│ dtype      │ float32 | float16 | bfloat16 | int8 | int4   │
│ encoding   │ base64 (сеть) | raw (in-process)             │
│ size       │ длина несжатых данных в байтах               │
│ checksum   │ sha256 несжатых данных (16 hex)              │
│ compressed │ True если данные сжаты LZ4                   │
│ data       │ закодированные байты                         │
└────────────┴──────────────────────────────────────────────┘

Сообщение активации:
    {type: "infer_act", session_id, layer, tensor, timestamp}

[LIMITS]
- MAX_TENSOR_SIZE: 1GB (защита от OOM)
"""

import base64
import binascii
import hashlib
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Dict, Any, Sequence, Union

import numpy as np

logger = logging.getLogger(__name__)

# Lazy import for optional dependency
lz4_frame = None


def _ensure_lz4():
    """Lazy import lz4."""
    global lz4_frame
    if lz4_frame is None:
        try:
            import lz4.frame as _lz4
            lz4_frame = _lz4
        except ImportError:
            lz4_frame = None
    return lz4_frame


# ============================================================================
# Constants
# ============================================================================

ACTIVATION_MESSAGE_TYPE = "infer_act"
MAX_TENSOR_SIZE = 1024 * 1024 * 1024  # 1 GB max


class DType(str, Enum):
    """Поддерживаемые dtype активаций."""
    FLOAT32 = "float32"
    FLOAT16 = "float16"
    BFLOAT16 = "bfloat16"
    INT8 = "int8"
    INT4 = "int4"


class Encoding(str, Enum):
    BASE64 = "base64"
    RAW = "raw"


# Bytes per element
DTYPE_SIZE: Dict[str, float] = {
    DType.FLOAT32.value: 4,
    DType.FLOAT16.value: 2,
    DType.BFLOAT16.value: 2,
    DType.INT8.value: 1,
    DType.INT4.value: 0.5,
}

# dtypes that have a numpy equivalent
_NUMPY_DTYPES: Dict[str, Any] = {
    DType.FLOAT32.value: np.float32,
    DType.FLOAT16.value: np.float16,
    DType.INT8.value: np.int8,
}


class CodecError(Exception):
    """Tensor codec error."""
    pass


class TensorTooLargeError(CodecError):
    """Tensor exceeds maximum size."""
    pass


def _dtype_name(dtype: Union[str, DType]) -> str:
    value = dtype.value if isinstance(dtype, DType) else str(dtype)
    if value not in DTYPE_SIZE:
        raise CodecError(f"Unsupported dtype: {value}")
    return value


def _normalize_shape(shape: Sequence[Any]) -> Tuple[int, ...]:
    try:
        dims = tuple(int(d) for d in shape)
    except (TypeError, ValueError) as e:
        raise CodecError(f"Invalid shape: {shape!r}") from e
    if any(d < 0 for d in dims):
        raise CodecError(f"Negative dimension in shape: {dims}")
    return dims


# ============================================================================
# Size helpers
# ============================================================================

def calc_size(shape: Sequence[int], dtype: Union[str, DType]) -> int:
    """
    Размер тензора в байтах.

    Неизвестный dtype считается как 4 байта на элемент.
    """
    elements = 1
    for dim in shape:
        elements *= int(dim)
    name = dtype.value if isinstance(dtype, DType) else str(dtype)
    return math.ceil(elements * DTYPE_SIZE.get(name, 4))


def estimate_transfer_ms(
    shape: Sequence[int],
    dtype: Union[str, DType],
    bandwidth_gbps: float,
) -> float:
    """Оценка времени передачи в миллисекундах."""
    gbits = calc_size(shape, dtype) * 8 / 1e9
    return (gbits / bandwidth_gbps) * 1000


def checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()[:16]


def format_size(num_bytes: float) -> str:
    """Человекочитаемый размер."""
    if num_bytes < 1024:
        return f"{int(num_bytes)} B"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f} KB"
    if num_bytes < 1024 * 1024 * 1024:
        return f"{num_bytes / (1024 * 1024):.1f} MB"
    return f"{num_bytes / (1024 * 1024 * 1024):.2f} GB"


def tensor_info(shape: Sequence[int], dtype: Union[str, DType]) -> str:
    name = dtype.value if isinstance(dtype, DType) else str(dtype)
    shape_str = " x ".join(str(d) for d in shape)
    return f"[{shape_str}] {name} = {format_size(calc_size(shape, name))}"


# ============================================================================
# Tensor payload
# ============================================================================

@dataclass
class TensorPayload:
    """
    Декодированный тензор: сырые байты + shape + dtype.
    """
    data: bytes
    shape: Tuple[int, ...]
    dtype: str

    @property
    def numel(self) -> int:
        result = 1
        for s in self.shape:
            result *= s
        return result

    @property
    def nbytes(self) -> int:
        return len(self.data)

    def to_numpy(self) -> np.ndarray:
        """
        Представить как numpy массив.

        Raises:
            CodecError: dtype без numpy эквивалента или неверный размер
        """
        np_dtype = _NUMPY_DTYPES.get(self.dtype)
        if np_dtype is None:
            raise CodecError(f"dtype {self.dtype} has no numpy equivalent")
        try:
            return np.frombuffer(self.data, dtype=np_dtype).reshape(self.shape)
        except ValueError as e:
            raise CodecError(f"Cannot view {len(self.data)} bytes as {self.shape}: {e}") from e


@dataclass
class ParsedActivation:
    session_id: str
    layer: int
    tensor: TensorPayload
    timestamp: Optional[float] = None


# ============================================================================
# Encode / Decode
# ============================================================================

def encode_tensor(
    data: Union[bytes, bytearray, np.ndarray],
    shape: Optional[Sequence[int]] = None,
    dtype: Optional[Union[str, DType]] = None,
    encoding: Union[str, Encoding] = Encoding.BASE64,
    compress: bool = False,
) -> Dict[str, Any]:
    """
    Закодировать тензор в wire dict.

    Args:
        data: Сырые байты или numpy массив
        shape: Shape (для numpy берётся из массива если не указан)
        dtype: dtype (для numpy берётся из массива если не указан)
        encoding: base64 или raw
        compress: LZ4 сжатие (требует lz4)

    Raises:
        TensorTooLargeError: данные > MAX_TENSOR_SIZE
        CodecError: неверные аргументы
    """
    if isinstance(data, np.ndarray):
        if dtype is None:
            dtype = data.dtype.name
        dtype_name = _dtype_name(dtype)
        np_dtype = _NUMPY_DTYPES.get(dtype_name)
        if np_dtype is not None and data.dtype != np_dtype:
            data = data.astype(np_dtype)
        if shape is None:
            shape = data.shape
        raw = np.ascontiguousarray(data).tobytes()
    elif isinstance(data, (bytes, bytearray)):
        dtype_name = _dtype_name(dtype or DType.FLOAT16)
        if shape is None:
            raise CodecError("shape is required for raw bytes")
        raw = bytes(data)
    else:
        raise CodecError(f"Unsupported tensor data type: {type(data).__name__}")

    if len(raw) > MAX_TENSOR_SIZE:
        raise TensorTooLargeError(f"Tensor too large: {len(raw)} > {MAX_TENSOR_SIZE}")

    body = raw
    if compress:
        lz4 = _ensure_lz4()
        if lz4 is None:
            raise CodecError("LZ4 not available for compression")
        body = lz4.compress(raw)

    encoding_name = encoding.value if isinstance(encoding, Encoding) else str(encoding)
    if encoding_name == Encoding.BASE64.value:
        encoded: Union[str, bytes] = base64.b64encode(body).decode("ascii")
    elif encoding_name == Encoding.RAW.value:
        encoded = body
    else:
        raise CodecError(f"unknown encoding: {encoding_name}")

    return {
        "shape": list(_normalize_shape(shape)),
        "dtype": dtype_name,
        "encoding": encoding_name,
        "size": len(raw),
        "checksum": checksum(raw),
        "compressed": compress,
        "data": encoded,
    }


def decode_tensor(tensor: Dict[str, Any]) -> TensorPayload:
    """
    Декодировать wire dict в TensorPayload.

    [SECURITY] Проверяет encoding, размер и checksum.

    Raises:
        CodecError: если данные повреждены или формат неверный
    """
    if not isinstance(tensor, dict):
        raise CodecError("tensor must be a dict")

    expected_size = tensor.get("size")
    if not isinstance(expected_size, int) or isinstance(expected_size, bool):
        raise CodecError(f"invalid size: {expected_size!r}")
    if expected_size > MAX_TENSOR_SIZE:
        raise TensorTooLargeError(f"Data too large: {expected_size} > {MAX_TENSOR_SIZE}")

    encoding = tensor.get("encoding")
    payload = tensor.get("data")

    if encoding == Encoding.BASE64.value:
        if not isinstance(payload, str):
            raise CodecError("base64 tensor data must be a string")
        try:
            body = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise CodecError(f"invalid base64 data: {e}") from e
    elif encoding == Encoding.RAW.value:
        if not isinstance(payload, (bytes, bytearray)):
            raise CodecError("raw tensor data must be bytes")
        body = bytes(payload)
    else:
        raise CodecError(f"unknown encoding: {encoding}")

    if tensor.get("compressed"):
        lz4 = _ensure_lz4()
        if lz4 is None:
            raise CodecError("LZ4 not available for decompression")
        try:
            body = lz4.decompress(body)
        except RuntimeError as e:
            raise CodecError(f"decompression failed: {e}") from e

    expected_checksum = tensor.get("checksum")
    computed = checksum(body)
    if computed != expected_checksum:
        raise CodecError(f"checksum mismatch: expected {expected_checksum}, got {computed}")

    if len(body) != expected_size:
        raise CodecError(f"size mismatch: expected {expected_size}, got {len(body)}")

    return TensorPayload(
        data=body,
        shape=_normalize_shape(tensor.get("shape") or ()),
        dtype=_dtype_name(tensor.get("dtype", "")),
    )


# ============================================================================
# Activation messages
# ============================================================================

def create_activation_message(
    session_id: str,
    layer: int,
    data: Union[bytes, bytearray, np.ndarray],
    shape: Optional[Sequence[int]] = None,
    dtype: Optional[Union[str, DType]] = None,
    encoding: Union[str, Encoding] = Encoding.BASE64,
    compress: bool = False,
) -> Dict[str, Any]:
    """Собрать сообщение infer_act."""
    return {
        "type": ACTIVATION_MESSAGE_TYPE,
        "session_id": session_id,
        "layer": layer,
        "tensor": encode_tensor(data, shape, dtype, encoding, compress),
        "timestamp": time.time(),
    }


def parse_activation_message(msg: Dict[str, Any]) -> ParsedActivation:
    """
    Разобрать сообщение infer_act.

    Raises:
        CodecError: неверный тип, поля или повреждённый тензор
    """
    if not isinstance(msg, dict) or msg.get("type") != ACTIVATION_MESSAGE_TYPE:
        raise CodecError("not an activation message")

    session_id = msg.get("session_id")
    if not isinstance(session_id, str) or not session_id:
        raise CodecError("missing session_id")

    layer = msg.get("layer")
    if not isinstance(layer, int) or isinstance(layer, bool):
        raise CodecError(f"invalid layer: {layer!r}")

    if "tensor" not in msg:
        raise CodecError("missing tensor")

    return ParsedActivation(
        session_id=session_id,
        layer=layer,
        tensor=decode_tensor(msg["tensor"]),
        timestamp=msg.get("timestamp"),
    )
