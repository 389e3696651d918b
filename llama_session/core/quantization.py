"""
llama-session :: Quantization

GGML block formats, as stored in GGUF tensor data.
Weights are dequantized once at load time; the backend computes in float.

  Type   Block  Bytes  Layout
  F32    1      4      float32
  F16    1      2      float16
  BF16   1      2      bfloat16 (upper half of a float32)
  Q4_0   32     18     d:f16, qs[16]           x = (q - 8) * d
  Q4_1   32     20     d:f16, m:f16, qs[16]    x = q * d + m
  Q5_0   32     22     d:f16, qh:u32, qs[16]   x = (q5 - 16) * d
  Q5_1   32     24     d:f16, m:f16, qh:u32, qs[16]   x = q5 * d + m
  Q8_0   32     34     d:f16, qs[32]:i8        x = q * d

4-bit nibbles: the low nibble of byte j is element j, the high nibble
is element j + 16.

INL - 2025
"""

import numpy as np
from dataclasses import dataclass
from typing import Callable, Dict

QK = 32  # elements per quantized block


@dataclass(frozen=True)
class GGMLType:
    """A GGML tensor type: id, name, block geometry."""
    type_id: int
    name: str
    block_size: int   # elements per block
    type_size: int    # bytes per block

    def nbytes(self, n_elements: int) -> int:
        if n_elements % self.block_size != 0:
            raise ValueError(
                f"{self.name}: {n_elements} elements is not a multiple of block size {self.block_size}"
            )
        return n_elements // self.block_size * self.type_size


F32 = GGMLType(0, "F32", 1, 4)
F16 = GGMLType(1, "F16", 1, 2)
Q4_0 = GGMLType(2, "Q4_0", QK, 18)
Q4_1 = GGMLType(3, "Q4_1", QK, 20)
Q5_0 = GGMLType(6, "Q5_0", QK, 22)
Q5_1 = GGMLType(7, "Q5_1", QK, 24)
Q8_0 = GGMLType(8, "Q8_0", QK, 34)
BF16 = GGMLType(30, "BF16", 1, 2)

GGML_TYPES: Dict[int, GGMLType] = {t.type_id: t for t in (F32, F16, Q4_0, Q4_1, Q5_0, Q5_1, Q8_0, BF16)}
GGML_TYPES_BY_NAME: Dict[str, GGMLType] = {t.name.lower(): t for t in GGML_TYPES.values()}


# =========================================================================
# Dequantization: raw bytes → float32 (flat)
# =========================================================================

def _blocks(raw: np.ndarray, ggml_type: GGMLType) -> np.ndarray:
    return np.frombuffer(raw, dtype=np.uint8).reshape(-1, ggml_type.type_size)


def _f16(blocks: np.ndarray, offset: int) -> np.ndarray:
    """Read a float16 field at `offset` in every block → (n_blocks, 1) float32."""
    return blocks[:, offset:offset + 2].copy().view(np.float16).astype(np.float32)


def _unpack_nibbles(qs: np.ndarray) -> np.ndarray:
    """(n, 16) bytes → (n, 32) values; low nibbles first, then high."""
    return np.concatenate([qs & 0x0F, qs >> 4], axis=1)


def _high_bits(qh: np.ndarray) -> np.ndarray:
    """(n, 4) bytes holding a little-endian u32 → (n, 32) fifth bits shifted to bit 4."""
    bits = qh.copy().view("<u4")  # (n, 1)
    shifts = np.arange(QK, dtype=np.uint32)
    return (((bits >> shifts) & 1) << 4).astype(np.uint8)


def _dequant_f32(raw, n):
    return np.frombuffer(raw, dtype="<f4", count=n).astype(np.float32)


def _dequant_f16(raw, n):
    return np.frombuffer(raw, dtype="<f2", count=n).astype(np.float32)


def _dequant_bf16(raw, n):
    halves = np.frombuffer(raw, dtype="<u2", count=n).astype(np.uint32)
    return (halves << 16).view(np.float32)


def _dequant_q4_0(raw, n):
    blocks = _blocks(raw, Q4_0)
    d = _f16(blocks, 0)
    q = _unpack_nibbles(blocks[:, 2:18]).astype(np.int8) - 8
    return (q * d).reshape(-1)[:n]


def _dequant_q4_1(raw, n):
    blocks = _blocks(raw, Q4_1)
    d = _f16(blocks, 0)
    m = _f16(blocks, 2)
    q = _unpack_nibbles(blocks[:, 4:20]).astype(np.float32)
    return (q * d + m).reshape(-1)[:n]


def _dequant_q5_0(raw, n):
    blocks = _blocks(raw, Q5_0)
    d = _f16(blocks, 0)
    q = (_unpack_nibbles(blocks[:, 6:22]) | _high_bits(blocks[:, 2:6])).astype(np.int8) - 16
    return (q * d).reshape(-1)[:n]


def _dequant_q5_1(raw, n):
    blocks = _blocks(raw, Q5_1)
    d = _f16(blocks, 0)
    m = _f16(blocks, 2)
    q = (_unpack_nibbles(blocks[:, 8:24]) | _high_bits(blocks[:, 4:8])).astype(np.float32)
    return (q * d + m).reshape(-1)[:n]


def _dequant_q8_0(raw, n):
    blocks = _blocks(raw, Q8_0)
    d = _f16(blocks, 0)
    q = blocks[:, 2:34].copy().view(np.int8).astype(np.float32)
    return (q * d).reshape(-1)[:n]


_DEQUANTIZERS: Dict[int, Callable[[bytes, int], np.ndarray]] = {
    F32.type_id: _dequant_f32,
    F16.type_id: _dequant_f16,
    BF16.type_id: _dequant_bf16,
    Q4_0.type_id: _dequant_q4_0,
    Q4_1.type_id: _dequant_q4_1,
    Q5_0.type_id: _dequant_q5_0,
    Q5_1.type_id: _dequant_q5_1,
    Q8_0.type_id: _dequant_q8_0,
}


def dequantize(raw, type_id: int, n_elements: int) -> np.ndarray:
    """Raw tensor bytes of GGML type `type_id` → flat float32 array."""
    if type_id not in _DEQUANTIZERS:
        raise ValueError(f"Unsupported GGML tensor type: {type_id}")
    return _DEQUANTIZERS[type_id](raw, n_elements)


# =========================================================================
# Quantization: float32 → raw bytes (used by the GGUF writer / convert)
# =========================================================================

def quantize_q8_0(x: np.ndarray) -> bytes:
    """
    Per-block symmetric INT8.

    d = amax / 127, q = round(x / d)
    """
    x = np.asarray(x, dtype=np.float32).reshape(-1, QK)
    amax = np.abs(x).max(axis=1, keepdims=True)
    d = amax / 127.0
    inv = np.divide(1.0, d, out=np.zeros_like(d), where=d != 0)
    q = np.round(x * inv).clip(-128, 127).astype(np.int8)

    out = np.empty((x.shape[0], Q8_0.type_size), dtype=np.uint8)
    out[:, 0:2] = d.astype(np.float16).view(np.uint8)
    out[:, 2:34] = q.view(np.uint8)
    return out.tobytes()


def quantize_q4_0(x: np.ndarray) -> bytes:
    """
    Per-block symmetric 4-bit, ggml reference rounding.

    The signed value with the largest magnitude maps to -8:
    d = max / -8, q = min(15, trunc(x / d + 8.5))
    """
    x = np.asarray(x, dtype=np.float32).reshape(-1, QK)
    idx = np.abs(x).argmax(axis=1)
    vmax = x[np.arange(x.shape[0]), idx][:, None]
    d = vmax / -8.0
    inv = np.divide(1.0, d, out=np.zeros_like(d), where=d != 0)
    q = np.minimum(15, np.trunc(x * inv + 8.5)).clip(0, 15).astype(np.uint8)

    packed = q[:, :16] | (q[:, 16:] << 4)
    out = np.empty((x.shape[0], Q4_0.type_size), dtype=np.uint8)
    out[:, 0:2] = d.astype(np.float16).view(np.uint8)
    out[:, 2:18] = packed
    return out.tobytes()


def quantize(x: np.ndarray, type_id: int) -> bytes:
    """float32 array → raw bytes in GGML type `type_id`."""
    x = np.ascontiguousarray(x, dtype=np.float32)
    if type_id == F32.type_id:
        return x.astype("<f4").tobytes()
    if type_id == F16.type_id:
        return x.astype("<f2").tobytes()
    if type_id == Q8_0.type_id:
        return quantize_q8_0(x)
    if type_id == Q4_0.type_id:
        return quantize_q4_0(x)
    name = GGML_TYPES[type_id].name if type_id in GGML_TYPES else str(type_id)
    raise ValueError(f"Quantizing to {name} is not supported")
