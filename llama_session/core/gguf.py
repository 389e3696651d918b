"""
llama-session :: GGUF Container

Reader and writer for GGUF v2/v3 files.

  header:   magic "GGUF" | version u32 | tensor_count u64 | kv_count u64
  metadata: kv_count × (key string | value_type u32 | value)
  tensors:  tensor_count × (name string | n_dims u32 | dims u64[n_dims] | type u32 | offset u64)
  data:     aligned to general.alignment (default 32), per-tensor offsets relative to it

dims are innermost-first (ne[0] is the row length), i.e. reversed
relative to numpy/torch shapes.

Reference: https://github.com/ggerganov/ggml/blob/master/docs/gguf.md

INL - 2025
"""

import mmap
import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from llama_session.core.quantization import GGML_TYPES, F32, dequantize, quantize

GGUF_MAGIC = b"GGUF"
GGUF_SUPPORTED_VERSIONS = (2, 3)
GGUF_DEFAULT_ALIGNMENT = 32

# Legacy single-file formats that predate GGUF (ggml / ggmf / ggjt .bin files).
# Stored as little-endian u32, so the bytes on disk are reversed.
LEGACY_MAGICS = {
    b"lmgg": "ggml (unversioned)",
    b"fmgg": "ggmf",
    b"tjgg": "ggjt",
}

# Metadata value types
GGUF_TYPE_UINT8 = 0
GGUF_TYPE_INT8 = 1
GGUF_TYPE_UINT16 = 2
GGUF_TYPE_INT16 = 3
GGUF_TYPE_UINT32 = 4
GGUF_TYPE_INT32 = 5
GGUF_TYPE_FLOAT32 = 6
GGUF_TYPE_BOOL = 7
GGUF_TYPE_STRING = 8
GGUF_TYPE_ARRAY = 9
GGUF_TYPE_UINT64 = 10
GGUF_TYPE_INT64 = 11
GGUF_TYPE_FLOAT64 = 12

_SCALAR_FORMATS = {
    GGUF_TYPE_UINT8: "<B", GGUF_TYPE_INT8: "<b",
    GGUF_TYPE_UINT16: "<H", GGUF_TYPE_INT16: "<h",
    GGUF_TYPE_UINT32: "<I", GGUF_TYPE_INT32: "<i",
    GGUF_TYPE_FLOAT32: "<f", GGUF_TYPE_BOOL: "<?",
    GGUF_TYPE_UINT64: "<Q", GGUF_TYPE_INT64: "<q",
    GGUF_TYPE_FLOAT64: "<d",
}

_MAX_DIMS = 4


class GGUFError(ValueError):
    """Base class for GGUF parse failures."""


class GGUFUnsupportedError(GGUFError):
    """Not a GGUF file, or a GGUF version / tensor type we cannot read."""


class GGUFCorruptError(GGUFError):
    """Structurally invalid or truncated GGUF file."""


@dataclass
class GGUFTensorInfo:
    name: str
    dims: Tuple[int, ...]    # GGUF order: innermost first
    type_id: int
    data_offset: int         # absolute offset in file
    n_bytes: int

    @property
    def shape(self) -> Tuple[int, ...]:
        """numpy / torch order (outermost first)."""
        return tuple(reversed(self.dims))

    @property
    def n_elements(self) -> int:
        n = 1
        for d in self.dims:
            n *= d
        return n

    @property
    def type_name(self) -> str:
        t = GGML_TYPES.get(self.type_id)
        return t.name if t else f"?{self.type_id}"


def read_magic(path: str, n: int = 8) -> bytes:
    with open(path, "rb") as f:
        return f.read(n)


# =========================================================================
# Reader
# =========================================================================

class GGUFReader:
    """
    Parse a GGUF file: metadata fully decoded, tensor data read on demand.

    With use_mmap the file is mapped read-only; otherwise it is read into
    memory once.
    """

    def __init__(self, path: str, use_mmap: bool = True):
        self.path = path
        self._fd = open(path, "rb")
        try:
            if use_mmap:
                self._buf = mmap.mmap(self._fd.fileno(), 0, access=mmap.ACCESS_READ)
            else:
                self._buf = self._fd.read()
        except ValueError as e:
            # mmap of an empty file
            self._fd.close()
            raise GGUFCorruptError(f"Cannot map {path}: {e}") from e
        self._size = len(self._buf)
        self._pos = 0

        self.version = 0
        self.alignment = GGUF_DEFAULT_ALIGNMENT
        self.metadata: Dict[str, Any] = {}
        self.metadata_types: Dict[str, int] = {}
        self.tensors: Dict[str, GGUFTensorInfo] = {}

        try:
            self._parse()
        except struct.error as e:
            self.close()
            raise GGUFCorruptError(f"Truncated GGUF header in {path}: {e}") from e
        except GGUFError:
            self.close()
            raise

    def close(self):
        if isinstance(self._buf, mmap.mmap) and not self._buf.closed:
            self._buf.close()
        if not self._fd.closed:
            self._fd.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    # ── low-level reads ──

    def _read(self, fmt: str) -> tuple:
        vals = struct.unpack_from(fmt, self._buf, self._pos)
        self._pos += struct.calcsize(fmt)
        return vals

    def _read_string(self) -> str:
        (length,) = self._read("<Q")
        if self._pos + length > self._size:
            raise GGUFCorruptError(f"String of length {length} runs past end of file at offset {self._pos}")
        raw = self._buf[self._pos:self._pos + length]
        self._pos += length
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise GGUFCorruptError(f"Invalid UTF-8 string at offset {self._pos - length}") from e

    def _read_value(self, vtype: int) -> Any:
        if vtype == GGUF_TYPE_STRING:
            return self._read_string()
        if vtype == GGUF_TYPE_ARRAY:
            (elem_type,) = self._read("<I")
            (count,) = self._read("<Q")
            if count > self._size:
                raise GGUFCorruptError(f"Array length {count} exceeds file size")
            if elem_type in _SCALAR_FORMATS and elem_type != GGUF_TYPE_BOOL:
                # Vectorised path for large numeric arrays (token scores, types)
                fmt = _SCALAR_FORMATS[elem_type]
                itemsize = struct.calcsize(fmt)
                if self._pos + count * itemsize > self._size:
                    raise GGUFCorruptError("Numeric array runs past end of file")
                arr = np.frombuffer(self._buf, dtype=np.dtype(fmt), count=count, offset=self._pos)
                self._pos += count * itemsize
                values = arr.tolist()
                del arr
                return values
            return [self._read_value(elem_type) for _ in range(count)]
        if vtype in _SCALAR_FORMATS:
            (val,) = self._read(_SCALAR_FORMATS[vtype])
            return val
        raise GGUFCorruptError(f"Unknown GGUF value type {vtype} at offset {self._pos}")

    # ── structure ──

    def _parse(self):
        magic = bytes(self._buf[0:4])
        if magic != GGUF_MAGIC:
            legacy = LEGACY_MAGICS.get(magic)
            if legacy:
                raise GGUFUnsupportedError(f"Legacy {legacy} file; convert it to GGUF first")
            raise GGUFUnsupportedError(f"Not a GGUF file (magic={magic!r})")
        self._pos = 4

        (self.version,) = self._read("<I")
        if self.version not in GGUF_SUPPORTED_VERSIONS:
            raise GGUFUnsupportedError(f"Unsupported GGUF version {self.version}")

        tensor_count, kv_count = self._read("<QQ")
        if tensor_count > self._size or kv_count > self._size:
            raise GGUFCorruptError(f"Implausible counts: {tensor_count} tensors, {kv_count} keys")

        for _ in range(kv_count):
            key = self._read_string()
            (vtype,) = self._read("<I")
            self.metadata[key] = self._read_value(vtype)
            self.metadata_types[key] = vtype

        alignment = self.metadata.get("general.alignment", GGUF_DEFAULT_ALIGNMENT)
        if not isinstance(alignment, int) or alignment <= 0 or alignment & (alignment - 1):
            raise GGUFCorruptError(f"general.alignment must be a power of two, got {alignment!r}")
        self.alignment = alignment

        infos = []
        for _ in range(tensor_count):
            name = self._read_string()
            (n_dims,) = self._read("<I")
            if n_dims == 0 or n_dims > _MAX_DIMS:
                raise GGUFCorruptError(f"Tensor {name!r} has {n_dims} dims")
            dims = tuple(self._read(f"<{n_dims}Q"))
            (type_id,) = self._read("<I")
            (offset,) = self._read("<Q")
            infos.append((name, dims, type_id, offset))

        data_start = _align_up(self._pos, self.alignment)

        for name, dims, type_id, offset in infos:
            if name in self.tensors:
                raise GGUFCorruptError(f"Duplicate tensor {name!r}")
            n_elements = 1
            for d in dims:
                n_elements *= d
            ggml_type = GGML_TYPES.get(type_id)
            if ggml_type is None:
                # Size unknown: keep the entry, refuse at load time
                n_bytes = 0
            else:
                try:
                    n_bytes = ggml_type.nbytes(n_elements)
                except ValueError as e:
                    raise GGUFCorruptError(f"Tensor {name!r}: {e}") from e
            info = GGUFTensorInfo(
                name=name, dims=dims, type_id=type_id,
                data_offset=data_start + offset, n_bytes=n_bytes,
            )
            if info.data_offset + n_bytes > self._size:
                raise GGUFCorruptError(f"Tensor {name!r} data runs past end of file")
            self.tensors[name] = info

    # ── tensor access ──

    def tensor_names(self) -> List[str]:
        return list(self.tensors.keys())

    def load_tensor(self, name: str) -> np.ndarray:
        """Dequantized float32 array in numpy shape order."""
        info = self.tensors[name]
        if info.type_id not in GGML_TYPES:
            raise GGUFUnsupportedError(f"Tensor {name!r} has unsupported type {info.type_id}")
        raw = self._buf[info.data_offset:info.data_offset + info.n_bytes]
        flat = dequantize(raw, info.type_id, info.n_elements)
        return flat.reshape(info.shape)

    def summary(self) -> str:
        lines = [
            f"GGUF v{self.version}: {len(self.tensors)} tensors, "
            f"{len(self.metadata)} metadata keys, alignment={self.alignment}",
        ]
        for t in self.tensors.values():
            shape_str = "x".join(str(d) for d in t.shape)
            lines.append(f"  {t.name:<40} {t.type_name:>6} {shape_str:>16} {t.n_bytes:>12,} B")
        return "\n".join(lines)


def _align_up(val: int, align: int) -> int:
    return (val + align - 1) & ~(align - 1)


# =========================================================================
# Writer
# =========================================================================

def _infer_value_type(value: Any) -> int:
    if isinstance(value, bool):
        return GGUF_TYPE_BOOL
    if isinstance(value, int):
        if 0 <= value < 2 ** 32:
            return GGUF_TYPE_UINT32
        if -2 ** 31 <= value < 0:
            return GGUF_TYPE_INT32
        return GGUF_TYPE_INT64 if value < 0 else GGUF_TYPE_UINT64
    if isinstance(value, float):
        return GGUF_TYPE_FLOAT32
    if isinstance(value, str):
        return GGUF_TYPE_STRING
    if isinstance(value, (list, tuple)):
        return GGUF_TYPE_ARRAY
    raise TypeError(f"Cannot store {type(value).__name__} in GGUF metadata")


class GGUFWriter:
    """
    Minimal GGUF v3 writer.

    Usage:
        w = GGUFWriter(path)
        w.add_metadata("general.architecture", "llama")
        w.add_tensor("token_embd.weight", emb, type_id=Q8_0.type_id)
        w.write()
    """

    def __init__(self, path: str, alignment: int = GGUF_DEFAULT_ALIGNMENT):
        self.path = path
        self.alignment = alignment
        self._metadata: List[Tuple[str, int, Any, Optional[int]]] = []
        self._tensors: List[Tuple[str, Tuple[int, ...], int, bytes]] = []
        if alignment != GGUF_DEFAULT_ALIGNMENT:
            self.add_metadata("general.alignment", alignment, GGUF_TYPE_UINT32)

    def add_metadata(self, key: str, value: Any, value_type: Optional[int] = None,
                     elem_type: Optional[int] = None):
        vtype = value_type if value_type is not None else _infer_value_type(value)
        if vtype == GGUF_TYPE_ARRAY and elem_type is None:
            elem_type = _infer_value_type(value[0]) if len(value) else GGUF_TYPE_INT32
            if elem_type == GGUF_TYPE_UINT32 and any(v < 0 for v in value):
                elem_type = GGUF_TYPE_INT32
        self._metadata.append((key, vtype, value, elem_type))

    def add_tensor(self, name: str, array: np.ndarray, type_id: int = F32.type_id):
        array = np.asarray(array, dtype=np.float32)
        dims = tuple(reversed(array.shape))
        GGML_TYPES[type_id].nbytes(array.size)  # raises if not block aligned
        self._tensors.append((name, dims, type_id, quantize(array.reshape(-1), type_id)))

    # ── encoding ──

    @staticmethod
    def _string(s: str) -> bytes:
        raw = s.encode("utf-8")
        return struct.pack("<Q", len(raw)) + raw

    def _value(self, vtype: int, value: Any, elem_type: Optional[int]) -> bytes:
        if vtype == GGUF_TYPE_STRING:
            return self._string(value)
        if vtype == GGUF_TYPE_ARRAY:
            out = struct.pack("<IQ", elem_type, len(value))
            return out + b"".join(self._value(elem_type, v, None) for v in value)
        return struct.pack(_SCALAR_FORMATS[vtype], value)

    def write(self):
        header = bytearray()
        header += GGUF_MAGIC
        header += struct.pack("<IQQ", 3, len(self._tensors), len(self._metadata))

        for key, vtype, value, elem_type in self._metadata:
            header += self._string(key)
            header += struct.pack("<I", vtype)
            header += self._value(vtype, value, elem_type)

        offset = 0
        offsets = []
        for name, dims, type_id, data in self._tensors:
            offsets.append(offset)
            header += self._string(name)
            header += struct.pack("<I", len(dims))
            header += struct.pack(f"<{len(dims)}Q", *dims)
            header += struct.pack("<IQ", type_id, offset)
            offset = _align_up(offset + len(data), self.alignment)

        with open(self.path, "wb") as f:
            f.write(header)
            f.write(b"\x00" * (_align_up(len(header), self.alignment) - len(header)))
            for (name, dims, type_id, data), start in zip(self._tensors, offsets):
                f.write(data)
                f.write(b"\x00" * (_align_up(start + len(data), self.alignment) - start - len(data)))
