"""
llama-session :: Configuration

Two dataclasses:

  ModelConfig        : fixed at load time, frozen for the session's lifetime
  GenerationRequest  : transient, built per call

Both accept the binding's camelCase wire names (nCtx, topK, ...) via
from_dict(), and snake_case keyword arguments directly. Invalid values
raise ValidationError before anything is loaded or computed.

INL - 2025
"""

import json
import math
import re
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Mapping, Optional

from llama_session.core.errors import ValidationError


def _snake_case(key: str) -> str:
    """nCtx → n_ctx, f16Kv → f16_kv, nTokPredict → n_tok_predict."""
    return re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", key).lower()


def _normalize_keys(cls, data: Mapping[str, Any], aliases: Dict[str, str]) -> Dict[str, Any]:
    known = {f.name for f in fields(cls)}
    out = {}
    for key, val in data.items():
        name = aliases.get(key, _snake_case(key))
        if name not in known:
            raise ValidationError(f"{cls.__name__}: unknown option {key!r}")
        out[name] = val
    return out


def _require(cond: bool, msg: str):
    if not cond:
        raise ValidationError(msg)


def _is_int(val) -> bool:
    return isinstance(val, int) and not isinstance(val, bool)


def _is_number(val) -> bool:
    return (_is_int(val) or isinstance(val, float)) and math.isfinite(val)


# =========================================================================
# ModelConfig
# =========================================================================

@dataclass(frozen=True)
class ModelConfig:
    """Load-time configuration. Immutable once the session exists."""
    path: str = ""
    enable_logging: bool = False
    n_ctx: int = 2048
    n_parts: int = -1             # -1 = auto-detect from file name
    seed: int = 0                 # < 0 = random seed drawn at load
    f16_kv: bool = True
    logits_all: bool = False
    vocab_only: bool = False
    use_mlock: bool = False
    embedding: bool = False

    # Supplementary load options
    use_mmap: bool = True
    n_batch: int = 512            # prompt tokens per prefill forward pass
    rope_freq_base: float = 0.0   # 0 = from file
    rope_freq_scale: float = 1.0
    rms_norm_eps: float = 0.0     # 0 = from file
    device: str = "cpu"

    _ALIASES = {"modelPath": "path", "model_path": "path"}

    def __post_init__(self):
        self.validate()

    def validate(self):
        _require(isinstance(self.path, str) and self.path != "", "path is required")
        _require(_is_int(self.n_ctx) and self.n_ctx > 0, f"n_ctx must be an int > 0, got {self.n_ctx!r}")
        _require(
            _is_int(self.n_parts) and (self.n_parts == -1 or self.n_parts >= 1),
            f"n_parts must be -1 (auto) or >= 1, got {self.n_parts!r}",
        )
        _require(_is_int(self.seed), f"seed must be an int, got {self.seed!r}")
        _require(_is_int(self.n_batch) and self.n_batch > 0, f"n_batch must be an int > 0, got {self.n_batch!r}")
        _require(
            _is_number(self.rope_freq_base) and self.rope_freq_base >= 0,
            f"rope_freq_base must be >= 0, got {self.rope_freq_base!r}",
        )
        _require(
            _is_number(self.rope_freq_scale) and self.rope_freq_scale > 0,
            f"rope_freq_scale must be > 0, got {self.rope_freq_scale!r}",
        )
        _require(
            _is_number(self.rms_norm_eps) and self.rms_norm_eps >= 0,
            f"rms_norm_eps must be >= 0, got {self.rms_norm_eps!r}",
        )
        for name in ("enable_logging", "f16_kv", "logits_all", "vocab_only", "use_mlock", "embedding", "use_mmap"):
            _require(isinstance(getattr(self, name), bool), f"{name} must be a bool")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ModelConfig":
        """Build from snake_case or camelCase keys (nCtx, f16Kv, useMlock, ...)."""
        return cls(**_normalize_keys(cls, data, cls._ALIASES))

    @classmethod
    def from_json(cls, path: str) -> "ModelConfig":
        """Load from a JSON file holding the same keys as from_dict()."""
        with open(path, "r") as f:
            data = json.load(f)
        return cls.from_dict(data)

    def with_overrides(self, **kwargs) -> "ModelConfig":
        return replace(self, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


# =========================================================================
# GenerationRequest
# =========================================================================

@dataclass(frozen=True)
class GenerationRequest:
    """One generation (or embedding) call. Not persisted."""
    prompt: str = ""
    n_threads: int = 4
    n_tok_predict: int = 128
    top_k: int = 40
    top_p: float = 0.95
    temp: float = 0.8
    repeat_penalty: float = 1.1

    # Supplementary sampling controls
    logit_bias: Optional[Dict[int, float]] = None
    repeat_last_n: int = 64       # 0 = off, -1 = whole context
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    tfs_z: float = 1.0            # 1.0 = off
    typical_p: float = 1.0        # 1.0 = off
    mirostat: int = 0             # 0 = off, 1 = v1, 2 = v2
    mirostat_tau: float = 5.0
    mirostat_eta: float = 0.1
    stop_sequence: Optional[str] = None
    penalize_nl: bool = True
    timeout_s: Optional[float] = None

    def __post_init__(self):
        if self.logit_bias is not None:
            object.__setattr__(self, "logit_bias", _coerce_logit_bias(self.logit_bias))
        self.validate()

    def validate(self):
        _require(isinstance(self.prompt, str), "prompt must be a string")
        _require(_is_int(self.n_threads) and self.n_threads > 0, f"n_threads must be > 0, got {self.n_threads!r}")
        _require(
            _is_int(self.n_tok_predict) and self.n_tok_predict >= 0,
            f"n_tok_predict must be >= 0, got {self.n_tok_predict!r}",
        )
        _require(_is_int(self.top_k) and self.top_k > 0, f"top_k must be > 0, got {self.top_k!r}")
        _require(_is_number(self.top_p) and 0.0 <= self.top_p <= 1.0, f"top_p must be in [0, 1], got {self.top_p!r}")
        _require(_is_number(self.temp) and self.temp >= 0.0, f"temp must be >= 0, got {self.temp!r}")
        _require(
            _is_number(self.repeat_penalty) and self.repeat_penalty >= 1.0,
            f"repeat_penalty must be >= 1, got {self.repeat_penalty!r}",
        )
        _require(
            _is_int(self.repeat_last_n) and self.repeat_last_n >= -1,
            f"repeat_last_n must be >= -1, got {self.repeat_last_n!r}",
        )
        _require(_is_number(self.frequency_penalty), "frequency_penalty must be a finite number")
        _require(_is_number(self.presence_penalty), "presence_penalty must be a finite number")
        _require(_is_number(self.tfs_z) and 0.0 < self.tfs_z <= 1.0, f"tfs_z must be in (0, 1], got {self.tfs_z!r}")
        _require(
            _is_number(self.typical_p) and 0.0 < self.typical_p <= 1.0,
            f"typical_p must be in (0, 1], got {self.typical_p!r}",
        )
        _require(self.mirostat in (0, 1, 2), f"mirostat must be 0, 1 or 2, got {self.mirostat!r}")
        _require(_is_number(self.mirostat_tau) and self.mirostat_tau > 0, "mirostat_tau must be > 0")
        _require(_is_number(self.mirostat_eta) and self.mirostat_eta > 0, "mirostat_eta must be > 0")
        _require(
            self.stop_sequence is None or (isinstance(self.stop_sequence, str) and self.stop_sequence != ""),
            "stop_sequence must be a non-empty string or None",
        )
        _require(isinstance(self.penalize_nl, bool), "penalize_nl must be a bool")
        _require(
            self.timeout_s is None or (_is_number(self.timeout_s) and self.timeout_s > 0),
            f"timeout_s must be > 0, got {self.timeout_s!r}",
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GenerationRequest":
        """Build from snake_case or camelCase keys (nTokPredict, topK, ...)."""
        return cls(**_normalize_keys(cls, data, {}))

    def with_overrides(self, **kwargs) -> "GenerationRequest":
        return replace(self, **kwargs)


def _coerce_logit_bias(bias) -> Dict[int, float]:
    """Accepts {token: bias} or the binding's [{token, bias}, ...] list."""
    if isinstance(bias, Mapping):
        items = bias.items()
    else:
        try:
            items = [(entry["token"], entry["bias"]) for entry in bias]
        except (TypeError, KeyError) as e:
            raise ValidationError(f"logit_bias must be a mapping or a list of {{token, bias}}: {e}") from e

    out = {}
    for token, value in items:
        _require(_is_int(token) and token >= 0, f"logit_bias token must be an int >= 0, got {token!r}")
        _require(_is_number(value) or value == float("-inf"), f"logit_bias value must be a number, got {value!r}")
        out[token] = float(value)
    return out
