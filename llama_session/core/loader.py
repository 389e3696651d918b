"""
llama-session :: Weight Loader

Open a model file, validate it, and hand its tensors to a backend.

Containers (detected from magic bytes, not file extension):
  - GGUF v2/v3 (magic "GGUF"), quantized blocks dequantized at load
  - safetensors, with the same GGUF key names JSON-encoded in the
    header metadata
  - legacy ggml / ggmf / ggjt .bin files are recognised and refused

Split models ("name-00001-of-00003.gguf") are resolved from the first
or any part; n_parts = -1 auto-detects the count from the file name.

Every failure surfaces as LoadError with one of
FILE_NOT_FOUND / UNSUPPORTED_FORMAT / OUT_OF_MEMORY / CORRUPT_HEADER.

INL - 2025
"""

import json
import os
import re
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import torch

from llama_session.core.errors import LoadError, LoadErrorKind
from llama_session.core.gguf import (
    GGUF_MAGIC, LEGACY_MAGICS, GGUFReader, GGUFUnsupportedError, GGUFCorruptError, read_magic,
)
from llama_session.core.logging import get_logger

logger = get_logger("llama_session.loader")

FORMAT_GGUF = "gguf"
FORMAT_SAFETENSORS = "safetensors"

SUPPORTED_ARCHITECTURES = ("llama",)

_SPLIT_RE = re.compile(r"^(?P<stem>.+)-(?P<idx>\d{5})-of-(?P<total>\d{5})(?P<ext>\.[A-Za-z0-9]+)$")

# Per-layer tensors (GGUF naming)
LAYER_TENSORS = (
    "attn_norm", "attn_q", "attn_k", "attn_v", "attn_output",
    "ffn_norm", "ffn_gate", "ffn_up", "ffn_down",
)


# =========================================================================
# Hyperparameters + vocabulary
# =========================================================================

@dataclass
class HyperParams:
    """Architecture numbers read from the file header."""
    arch: str = "llama"
    vocab_size: int = 0
    n_embd: int = 0
    n_layer: int = 0
    n_head: int = 0
    n_head_kv: int = 0
    n_ff: int = 0
    n_ctx_train: int = 2048
    rope_freq_base: float = 10000.0
    rope_freq_scale: float = 1.0
    rms_norm_eps: float = 1e-5
    file_type: Optional[int] = None

    @property
    def head_dim(self) -> int:
        return self.n_embd // self.n_head

    @property
    def n_gqa(self) -> int:
        return self.n_head // self.n_head_kv

    def expected_shapes(self, tied_output: bool = False) -> Dict[str, Tuple[int, ...]]:
        """torch-order shape of every tensor the llama graph needs."""
        kv_dim = self.n_head_kv * self.head_dim
        shapes = {
            "token_embd.weight": (self.vocab_size, self.n_embd),
            "output_norm.weight": (self.n_embd,),
        }
        if not tied_output:
            shapes["output.weight"] = (self.vocab_size, self.n_embd)
        per_layer = {
            "attn_norm": (self.n_embd,),
            "attn_q": (self.n_embd, self.n_embd),
            "attn_k": (kv_dim, self.n_embd),
            "attn_v": (kv_dim, self.n_embd),
            "attn_output": (self.n_embd, self.n_embd),
            "ffn_norm": (self.n_embd,),
            "ffn_gate": (self.n_ff, self.n_embd),
            "ffn_up": (self.n_ff, self.n_embd),
            "ffn_down": (self.n_embd, self.n_ff),
        }
        for i in range(self.n_layer):
            for name, shape in per_layer.items():
                shapes[f"blk.{i}.{name}.weight"] = shape
        return shapes


@dataclass
class Vocabulary:
    """Token table stored alongside the weights."""
    tokens: List[str]
    scores: List[float]
    token_types: List[int]
    model: str = "llama"
    bos_token_id: int = 1
    eos_token_id: int = 2
    unk_token_id: int = 0
    add_bos: bool = True

    def __len__(self) -> int:
        return len(self.tokens)


# GGUF token types
TOKEN_TYPE_NORMAL = 1
TOKEN_TYPE_UNKNOWN = 2
TOKEN_TYPE_CONTROL = 3
TOKEN_TYPE_USER_DEFINED = 4
TOKEN_TYPE_UNUSED = 5
TOKEN_TYPE_BYTE = 6


def _corrupt(msg: str, path: str) -> LoadError:
    return LoadError(LoadErrorKind.CORRUPT_HEADER, msg, path)


def _get(meta: Dict[str, Any], key: str, path: str, default: Any = None, required: bool = False):
    if key in meta:
        return meta[key]
    if required:
        raise _corrupt(f"missing required metadata key {key!r}", path)
    return default


def parse_hparams(meta: Dict[str, Any], path: str) -> HyperParams:
    arch = _get(meta, "general.architecture", path, default="llama")
    if arch not in SUPPORTED_ARCHITECTURES:
        raise LoadError(LoadErrorKind.UNSUPPORTED_FORMAT, f"unsupported architecture {arch!r}", path)

    p = f"{arch}."
    try:
        hp = HyperParams(
            arch=arch,
            n_embd=int(_get(meta, p + "embedding_length", path, required=True)),
            n_layer=int(_get(meta, p + "block_count", path, required=True)),
            n_head=int(_get(meta, p + "attention.head_count", path, required=True)),
            n_ff=int(_get(meta, p + "feed_forward_length", path, required=True)),
            n_ctx_train=int(_get(meta, p + "context_length", path, default=2048)),
            rope_freq_base=float(_get(meta, p + "rope.freq_base", path, default=10000.0)),
            rms_norm_eps=float(_get(meta, p + "attention.layer_norm_rms_epsilon", path, default=1e-5)),
            file_type=_get(meta, "general.file_type", path),
        )
        hp.n_head_kv = int(_get(meta, p + "attention.head_count_kv", path, default=hp.n_head))
        scale = _get(meta, p + "rope.scale_linear", path)
        if scale is None:
            scale = _get(meta, p + "rope.scaling.factor", path)
        if scale:
            hp.rope_freq_scale = 1.0 / float(scale)
    except (TypeError, ValueError) as e:
        raise _corrupt(f"malformed hyperparameter: {e}", path) from e

    if min(hp.n_embd, hp.n_layer, hp.n_head, hp.n_head_kv, hp.n_ff) <= 0:
        raise _corrupt(f"non-positive hyperparameter in {hp}", path)
    if hp.n_embd % hp.n_head != 0 or hp.n_head % hp.n_head_kv != 0:
        raise _corrupt(
            f"inconsistent head layout: n_embd={hp.n_embd} n_head={hp.n_head} n_head_kv={hp.n_head_kv}", path
        )
    if hp.head_dim % 2 != 0:
        raise _corrupt(f"rotary embedding needs an even head_dim, got {hp.head_dim}", path)
    return hp


def parse_vocab(meta: Dict[str, Any], path: str) -> Vocabulary:
    tokens = _get(meta, "tokenizer.ggml.tokens", path, required=True)
    if not isinstance(tokens, list) or not tokens or not all(isinstance(t, str) for t in tokens):
        raise _corrupt("tokenizer.ggml.tokens must be a non-empty list of strings", path)
    n = len(tokens)

    scores = _get(meta, "tokenizer.ggml.scores", path, default=None)
    if scores is None:
        scores = [0.0] * n
    types = _get(meta, "tokenizer.ggml.token_type", path, default=None)
    if types is None:
        types = [TOKEN_TYPE_NORMAL] * n
    if len(scores) != n or len(types) != n:
        raise _corrupt(f"vocabulary arrays disagree: {n} tokens, {len(scores)} scores, {len(types)} types", path)

    unk_default = types.index(TOKEN_TYPE_UNKNOWN) if TOKEN_TYPE_UNKNOWN in types else 0
    vocab = Vocabulary(
        tokens=list(tokens),
        scores=[float(s) for s in scores],
        token_types=[int(t) for t in types],
        model=_get(meta, "tokenizer.ggml.model", path, default="llama"),
        bos_token_id=int(_get(meta, "tokenizer.ggml.bos_token_id", path, default=1)),
        eos_token_id=int(_get(meta, "tokenizer.ggml.eos_token_id", path, default=2)),
        unk_token_id=int(_get(meta, "tokenizer.ggml.unknown_token_id", path, default=unk_default)),
        add_bos=bool(_get(meta, "tokenizer.ggml.add_bos_token", path, default=True)),
    )
    for name in ("bos_token_id", "eos_token_id", "unk_token_id"):
        if not 0 <= getattr(vocab, name) < n:
            raise _corrupt(f"{name}={getattr(vocab, name)} outside vocabulary of {n}", path)
    return vocab


# =========================================================================
# Part resolution + format detection
# =========================================================================

def resolve_parts(path: str, n_parts: int = -1) -> List[str]:
    """
    Expand a (possibly split) model path into its ordered part files.

    n_parts = -1 trusts the "-0000i-of-0000N" suffix; a positive value
    must agree with it.
    """
    if not os.path.exists(path):
        raise LoadError(LoadErrorKind.FILE_NOT_FOUND, "model file does not exist", path)
    if os.path.isdir(path):
        raise LoadError(LoadErrorKind.FILE_NOT_FOUND, "model path is a directory, expected a file", path)
    if not os.access(path, os.R_OK):
        raise LoadError(LoadErrorKind.FILE_NOT_FOUND, "model file is not readable", path)

    directory, name = os.path.split(path)
    m = _SPLIT_RE.match(name)
    if m is None:
        if n_parts not in (-1, 1):
            raise _corrupt(f"n_parts={n_parts} but the file name carries no split suffix", path)
        return [path]

    total = int(m.group("total"))
    if n_parts != -1 and n_parts != total:
        raise _corrupt(f"n_parts={n_parts} but the file name declares {total} parts", path)

    parts = []
    for i in range(1, total + 1):
        part = os.path.join(directory, f"{m.group('stem')}-{i:05d}-of-{total:05d}{m.group('ext')}")
        if not os.path.isfile(part):
            raise LoadError(LoadErrorKind.FILE_NOT_FOUND, f"missing split part {i}/{total}", part)
        parts.append(part)
    return parts


def detect_format(path: str) -> str:
    """Identify the container from its first bytes."""
    try:
        head = read_magic(path, 9)
    except OSError as e:
        raise LoadError(LoadErrorKind.FILE_NOT_FOUND, f"cannot read model file: {e}", path) from e

    if len(head) < 4:
        raise _corrupt("file too short to hold a header", path)
    if head[:4] == GGUF_MAGIC:
        return FORMAT_GGUF
    if head[:4] in LEGACY_MAGICS:
        raise LoadError(
            LoadErrorKind.UNSUPPORTED_FORMAT,
            f"legacy {LEGACY_MAGICS[head[:4]]} format; convert the model to GGUF",
            path,
        )
    if len(head) == 9 and head[8:9] == b"{":
        (header_len,) = struct.unpack("<Q", head[:8])
        if 0 < header_len <= os.path.getsize(path) - 8:
            return FORMAT_SAFETENSORS
        raise _corrupt(f"safetensors header length {header_len} exceeds file size", path)
    raise LoadError(LoadErrorKind.UNSUPPORTED_FORMAT, f"unrecognised file magic {head[:4]!r}", path)


# =========================================================================
# Container readers
# =========================================================================

class _GGUFPart:
    def __init__(self, path: str, use_mmap: bool):
        try:
            self.reader = GGUFReader(path, use_mmap=use_mmap)
        except GGUFUnsupportedError as e:
            raise LoadError(LoadErrorKind.UNSUPPORTED_FORMAT, str(e), path) from e
        except GGUFCorruptError as e:
            raise _corrupt(str(e), path) from e
        self.path = path

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.reader.metadata

    def shapes(self) -> Dict[str, Tuple[int, ...]]:
        return {name: info.shape for name, info in self.reader.tensors.items()}

    def type_names(self) -> Dict[str, str]:
        return {name: info.type_name for name, info in self.reader.tensors.items()}

    def read(self, name: str) -> np.ndarray:
        try:
            return self.reader.load_tensor(name)
        except GGUFUnsupportedError as e:
            raise LoadError(LoadErrorKind.UNSUPPORTED_FORMAT, str(e), self.path) from e

    def close(self):
        self.reader.close()


class _SafetensorsPart:
    def __init__(self, path: str, use_mmap: bool):
        from safetensors import safe_open, SafetensorError

        self.path = path
        try:
            self._file = safe_open(path, framework="pt")
            raw_meta = self._file.metadata() or {}
            self._shapes = {k: tuple(self._file.get_slice(k).get_shape()) for k in self._file.keys()}
        except SafetensorError as e:
            raise _corrupt(f"invalid safetensors header: {e}", path) from e

        self.metadata: Dict[str, Any] = {}
        for key, val in raw_meta.items():
            try:
                self.metadata[key] = json.loads(val)
            except ValueError:
                self.metadata[key] = val

    def shapes(self) -> Dict[str, Tuple[int, ...]]:
        return dict(self._shapes)

    def type_names(self) -> Dict[str, str]:
        return {k: "ST" for k in self._shapes}

    def read(self, name: str) -> np.ndarray:
        return self._file.get_tensor(name).float().numpy()

    def close(self):
        self._file = None


@dataclass
class ModelFile:
    """An opened (possibly split) model: header parsed, tensors not yet read."""
    path: str
    parts: List[str]
    format: str
    metadata: Dict[str, Any]
    hparams: HyperParams
    vocab: Vocabulary
    tensor_shapes: Dict[str, Tuple[int, ...]]
    tensor_types: Dict[str, str]
    _readers: list = field(default_factory=list, repr=False)
    _owner: Dict[str, int] = field(default_factory=dict, repr=False)

    @property
    def tied_output(self) -> bool:
        return "output.weight" not in self.tensor_shapes

    def validate_tensors(self):
        """Check presence and shape of every tensor before reading any data."""
        expected = self.hparams.expected_shapes(tied_output=self.tied_output)
        for name, shape in expected.items():
            if name not in self.tensor_shapes:
                raise _corrupt(f"missing tensor {name!r}", self.path)
            if tuple(self.tensor_shapes[name]) != shape:
                raise _corrupt(
                    f"tensor {name!r} has shape {tuple(self.tensor_shapes[name])}, expected {shape}", self.path
                )
        extra = set(self.tensor_shapes) - set(expected)
        if extra:
            logger.debug(f"ignoring {len(extra)} unused tensors")

    def read_tensors(self, dtype: torch.dtype = torch.float32) -> Dict[str, torch.Tensor]:
        """Dequantize every required tensor into CPU torch tensors."""
        self.validate_tensors()
        wanted = self.hparams.expected_shapes(tied_output=self.tied_output)
        tensors = {}
        try:
            for name in wanted:
                arr = self._readers[self._owner[name]].read(name)
                tensors[name] = torch.from_numpy(np.ascontiguousarray(arr)).to(dtype)
        except MemoryError as e:
            raise LoadError(LoadErrorKind.OUT_OF_MEMORY, f"allocating weights: {e}", self.path) from e
        except (ValueError, struct.error) as e:
            raise _corrupt(f"tensor data: {e}", self.path) from e
        except RuntimeError as e:
            if _is_oom(e):
                raise LoadError(LoadErrorKind.OUT_OF_MEMORY, f"allocating weights: {e}", self.path) from e
            raise
        return tensors

    def close(self):
        for r in self._readers:
            r.close()
        self._readers = []


def _is_oom(e: BaseException) -> bool:
    msg = str(e).lower()
    return "out of memory" in msg or "can't allocate" in msg or "not enough memory" in msg


def open_model_file(path: str, n_parts: int = -1, use_mmap: bool = True) -> ModelFile:
    """
    Resolve parts, detect the container, parse hyperparameters and
    vocabulary from the first part, and index tensors across all parts.
    """
    parts = resolve_parts(path, n_parts)
    fmt = detect_format(parts[0])
    part_cls = _GGUFPart if fmt == FORMAT_GGUF else _SafetensorsPart

    readers = []
    try:
        for part in parts:
            if detect_format(part) != fmt:
                raise LoadError(LoadErrorKind.UNSUPPORTED_FORMAT, "split parts use different containers", part)
            readers.append(part_cls(part, use_mmap))

        metadata = dict(readers[0].metadata)
        hparams = parse_hparams(metadata, parts[0])
        vocab = parse_vocab(metadata, parts[0])
        hparams.vocab_size = int(metadata.get(f"{hparams.arch}.vocab_size", len(vocab)))
        if hparams.vocab_size != len(vocab):
            raise _corrupt(f"vocab_size={hparams.vocab_size} but {len(vocab)} tokens are stored", parts[0])

        shapes, types, owner = {}, {}, {}
        for idx, reader in enumerate(readers):
            for name, shape in reader.shapes().items():
                if name in owner:
                    raise _corrupt(f"tensor {name!r} appears in more than one part", reader.path)
                shapes[name] = shape
                owner[name] = idx
            types.update(reader.type_names())
    except BaseException:
        for r in readers:
            r.close()
        raise

    return ModelFile(
        path=path, parts=parts, format=fmt, metadata=metadata,
        hparams=hparams, vocab=vocab,
        tensor_shapes=shapes, tensor_types=types,
        _readers=readers, _owner=owner,
    )
